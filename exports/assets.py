"""Image download helpers for bundled exports.

Downloads are attempted once per run. Failures are logged and reported in the
returned :class:`AssetResult`; nothing raises past :class:`AssetFetcher`.
Retrying happens on the next export through the export cache.
"""

from __future__ import annotations

import logging
import posixpath
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Mapping, Sequence
from urllib.parse import unquote, urlparse
from urllib.request import Request, urlopen

import config

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = ".png"
BUDGET_EXCEEDED = "budget exceeded"
_MAX_EXTENSION_LENGTH = 5


@dataclass(frozen=True)
class AssetRequest:
    key: Hashable
    url: str


@dataclass(frozen=True)
class AssetResult:
    url: str
    ok: bool
    data: bytes = b""
    extension: str = DEFAULT_EXTENSION
    error: str | None = None


def extension_from_url(url: str, default: str = DEFAULT_EXTENSION) -> str:
    """Return the lowercase file extension of ``url``'s path or ``default``."""

    try:
        path = unquote(urlparse(url).path or "")
    except ValueError:
        return default
    extension = posixpath.splitext(posixpath.basename(path))[1].lower()
    if len(extension) < 2 or len(extension) > _MAX_EXTENSION_LENGTH:
        return default
    if not extension[1:].isalnum():
        return default
    return extension


class AssetFetcher:
    """Download asset URLs with an optional worker pool and time budget."""

    def __init__(
        self,
        *,
        timeout: float = 15.0,
        user_agent: str | None = None,
        max_workers: int = 1,
        budget_seconds: float | None = None,
        request_factory: Callable[..., Any] | None = None,
        opener: Callable[..., Any] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._timeout = timeout if timeout and timeout > 0 else 15.0
        self._user_agent = (user_agent or "").strip()
        try:
            workers = int(max_workers)
        except (TypeError, ValueError):
            workers = 1
        self._max_workers = workers if workers > 0 else 1
        self._budget_seconds = budget_seconds if budget_seconds and budget_seconds > 0 else None
        self._request_factory = request_factory or Request
        self._opener = opener or urlopen
        self._clock = clock or time.monotonic

    def fetch(self, url: str) -> AssetResult:
        """Return the downloaded bytes of ``url`` or a failed result."""

        text = (url or "").strip()
        extension = extension_from_url(text)
        if not text:
            return AssetResult(url=text, ok=False, extension=extension, error="empty url")
        try:
            headers = {"User-Agent": self._user_agent} if self._user_agent else {}
            request = self._request_factory(text, headers=headers)
            with self._opener(request, timeout=self._timeout) as response:
                data = response.read()
        except Exception as exc:  # network, HTTP and URL errors all count as a miss
            logger.warning("Failed to download asset %s: %s", text, exc)
            return AssetResult(url=text, ok=False, extension=extension, error=str(exc))
        if not data:
            logger.warning("Asset %s returned no data", text)
            return AssetResult(url=text, ok=False, extension=extension, error="empty response")
        return AssetResult(url=text, ok=True, data=data, extension=extension)

    def fetch_many(self, requests: Sequence[AssetRequest]) -> dict[Hashable, AssetResult]:
        """Download every request, returning results keyed by request key.

        Requests that have not started when the budget runs out are reported
        as failed without being attempted.
        """

        if not requests:
            return {}
        deadline = (
            self._clock() + self._budget_seconds
            if self._budget_seconds is not None
            else None
        )

        def run(request: AssetRequest) -> AssetResult:
            if deadline is not None and self._clock() >= deadline:
                logger.warning("Skipping asset %s: time budget exceeded", request.url)
                return AssetResult(
                    url=request.url,
                    ok=False,
                    extension=extension_from_url(request.url),
                    error=BUDGET_EXCEEDED,
                )
            return self.fetch(request.url)

        if self._max_workers <= 1 or len(requests) == 1:
            return {request.key: run(request) for request in requests}

        results: dict[Hashable, AssetResult] = {}
        worker_count = min(self._max_workers, len(requests))
        with ThreadPoolExecutor(max_workers=worker_count) as executor:
            futures = {executor.submit(run, request): request for request in requests}
            for future in as_completed(futures):
                request = futures[future]
                results[request.key] = future.result()
        return results


def build_asset_fetcher(settings: Mapping[str, Any] | None = None) -> AssetFetcher:
    """Return an :class:`AssetFetcher` configured from application settings."""

    settings = settings or {}
    return AssetFetcher(
        timeout=settings.get("timeout", config.ASSET_FETCH_TIMEOUT_SECONDS),
        user_agent=settings.get("user_agent", config.ASSET_USER_AGENT),
        max_workers=settings.get("max_workers", config.ASSET_FETCH_WORKERS),
        budget_seconds=settings.get("budget_seconds", config.ASSET_FETCH_BUDGET_SECONDS),
    )


__all__ = [
    "AssetFetcher",
    "AssetRequest",
    "AssetResult",
    "BUDGET_EXCEEDED",
    "DEFAULT_EXTENSION",
    "build_asset_fetcher",
    "extension_from_url",
]
