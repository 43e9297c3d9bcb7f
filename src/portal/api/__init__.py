"""aiohttp shell exposing the access pipeline."""

from portal.api.server import create_app, run_server

__all__ = ["create_app", "run_server"]
