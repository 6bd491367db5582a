"""WSGI entrypoint for the game catalog sync service."""

from __future__ import annotations

from web.app_factory import create_app

app = create_app()


if __name__ == '__main__':
    app.run(debug=True)
