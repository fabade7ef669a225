"""
API Routes Module
"""
from .health import router as health_router
from .auth import router as auth_router
from .analytics import router as analytics_router
from .catalog import router as catalog_router
from .export import router as export_router

__all__ = [
    "health_router",
    "auth_router",
    "analytics_router",
    "catalog_router",
    "export_router",
]
