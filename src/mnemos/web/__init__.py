"""HTTP surface for Mnemos."""

from mnemos.web.health import create_health_app, create_health_router, serve_health

__all__ = ["create_health_app", "create_health_router", "serve_health"]
