"""kdash HTTP API layer."""
from .auth import require_api_key
from .routes import router

__all__ = ["require_api_key", "router"]
