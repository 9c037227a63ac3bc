"""API routes package."""

from syncd.routes.kv_routes import router as kv_router

__all__ = ["kv_router"]
