"""HTTP surface (aiohttp)."""

from circle.web.app import Services, create_app, run_server

__all__ = ["Services", "create_app", "run_server"]
