"""REST and WebSocket API."""

from .endpoints import router, init_dependencies

__all__ = ["router", "init_dependencies"]
