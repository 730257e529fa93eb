"""API v2 routers."""
from dojo_console.backend.api.v2 import bulk, roles

__all__ = ["bulk", "roles"]
