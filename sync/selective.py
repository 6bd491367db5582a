"""Per-property export/import overrides for selective transfers.

A global config applies to every game unless a per-game config is supplied.
Either config may be ``"simple"`` (every property verbatim) or ``"custom"``
with explicit per-property overrides. Each property is resolved on its own:

1. the per-game config's override for that property,
2. the per-game config itself when it is ``"simple"``,
3. the global config's override for that property,
4. the global config itself when it is ``"simple"``,
5. verbatim.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Mapping, TypeVar

from helpers import _normalize_lookup_name
from sync.records import GAME_PROPERTY_COLUMNS, FlatRow

CONFIG_MODE_SIMPLE = "simple"
CONFIG_MODE_CUSTOM = "custom"


class ExportMode(str, Enum):
    AS_STORED = "asStored"
    CLEAN = "clean"


class ImportMode(str, Enum):
    AS_IMPORTED = "asImported"
    CLEAN = "clean"
    CUSTOM = "custom"


ModeT = TypeVar("ModeT", ExportMode, ImportMode)


def _parse_mode(enum_cls: type[ModeT], value: Any) -> ModeT:
    text = _normalize_lookup_name(value).casefold()
    for member in enum_cls:
        if member.value.casefold() == text:
            return member
    return next(iter(enum_cls))


def _lookup(mapping: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    folded = {str(key).casefold(): value for key, value in mapping.items()}
    for key in keys:
        if key.casefold() in folded:
            return folded[key.casefold()]
    return default


def _canonical_property(name: Any) -> str | None:
    text = _normalize_lookup_name(name).casefold()
    for column in GAME_PROPERTY_COLUMNS:
        if column.casefold() == text:
            return column
    return None


@dataclass
class PropertyOverride(Generic[ModeT]):
    mode: ModeT
    custom_value: str | None = None


@dataclass
class TransferConfig(Generic[ModeT]):
    mode: str = CONFIG_MODE_SIMPLE
    properties: dict[str, PropertyOverride[ModeT]] = field(default_factory=dict)

    @property
    def is_custom(self) -> bool:
        return self.mode == CONFIG_MODE_CUSTOM


ExportConfig = TransferConfig[ExportMode]
ImportConfig = TransferConfig[ImportMode]


def _parse_config(enum_cls: type[ModeT], payload: Any) -> TransferConfig[ModeT]:
    if isinstance(payload, TransferConfig):
        return payload
    if not isinstance(payload, Mapping):
        return TransferConfig()
    mode_text = _normalize_lookup_name(_lookup(payload, "mode")).casefold()
    mode = CONFIG_MODE_CUSTOM if mode_text == CONFIG_MODE_CUSTOM else CONFIG_MODE_SIMPLE
    properties: dict[str, PropertyOverride[ModeT]] = {}
    raw_properties = _lookup(payload, "properties", default={}) or {}
    if isinstance(raw_properties, Mapping):
        for raw_name, raw_override in raw_properties.items():
            column = _canonical_property(raw_name)
            if column is None:
                continue
            if isinstance(raw_override, Mapping):
                override_mode = _parse_mode(enum_cls, _lookup(raw_override, "mode"))
                custom = _lookup(raw_override, "customValue", "custom_value")
            else:
                override_mode = _parse_mode(enum_cls, raw_override)
                custom = None
            properties[column] = PropertyOverride(
                mode=override_mode,
                custom_value=None if custom is None else str(custom),
            )
    return TransferConfig(mode=mode, properties=properties)


def parse_export_config(payload: Any) -> ExportConfig:
    """Build an :data:`ExportConfig` from a JSON-like mapping."""

    return _parse_config(ExportMode, payload)


def parse_import_config(payload: Any) -> ImportConfig:
    """Build an :data:`ImportConfig` from a JSON-like mapping."""

    return _parse_config(ImportMode, payload)


def _parse_config_map(enum_cls, payload: Any) -> dict[str, TransferConfig]:
    if not isinstance(payload, Mapping):
        return {}
    return {str(key): _parse_config(enum_cls, value) for key, value in payload.items()}


def parse_per_game_export_configs(payload: Any) -> dict[int, ExportConfig]:
    """Return per-game export configs keyed by game id; bad keys are ignored."""

    parsed: dict[int, ExportConfig] = {}
    for key, config in _parse_config_map(ExportMode, payload).items():
        try:
            parsed[int(key)] = config
        except ValueError:
            continue
    return parsed


def parse_per_game_import_configs(payload: Any) -> dict[str, ImportConfig]:
    """Return per-game import configs keyed by case-folded game name."""

    return {
        key.strip().casefold(): config
        for key, config in _parse_config_map(ImportMode, payload).items()
        if key.strip()
    }


def resolve_property(
    property_name: str,
    global_config: TransferConfig[ModeT],
    entity_config: TransferConfig[ModeT] | None,
    default: ModeT,
) -> PropertyOverride[ModeT]:
    """Return the effective treatment of ``property_name`` for one record.

    An entity config replaces the global config for its record entirely:
    properties it does not list keep ``default`` rather than the global
    override.
    """

    config = entity_config if entity_config is not None else global_config
    if not config.is_custom:
        return PropertyOverride(mode=default)
    return config.properties.get(property_name) or PropertyOverride(mode=default)


def apply_export_config(
    row: FlatRow,
    global_config: ExportConfig,
    entity_config: ExportConfig | None = None,
) -> FlatRow:
    """Return a copy of a game ``row`` with cleaned properties emptied."""

    result = dict(row)
    for column in GAME_PROPERTY_COLUMNS:
        treatment = resolve_property(
            column, global_config, entity_config, ExportMode.AS_STORED
        )
        if treatment.mode is ExportMode.CLEAN:
            result[column] = ""
    return result


def apply_import_config(
    row: FlatRow,
    global_config: ImportConfig,
    entity_config: ImportConfig | None = None,
) -> FlatRow:
    """Return a copy of a game ``row`` rewritten per property import mode."""

    result = dict(row)
    for column in GAME_PROPERTY_COLUMNS:
        treatment = resolve_property(
            column, global_config, entity_config, ImportMode.AS_IMPORTED
        )
        if treatment.mode is ImportMode.CLEAN:
            result[column] = ""
        elif treatment.mode is ImportMode.CUSTOM:
            result[column] = treatment.custom_value or ""
    return result


__all__ = [
    "CONFIG_MODE_CUSTOM",
    "CONFIG_MODE_SIMPLE",
    "ExportConfig",
    "ExportMode",
    "ImportConfig",
    "ImportMode",
    "PropertyOverride",
    "TransferConfig",
    "apply_export_config",
    "apply_import_config",
    "parse_export_config",
    "parse_import_config",
    "parse_per_game_export_configs",
    "parse_per_game_import_configs",
    "resolve_property",
]
