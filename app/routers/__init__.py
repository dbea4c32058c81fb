# API Routers
from app.routers.api import router as api_router
from app.routers.admin import router as admin_router

__all__ = ["api_router", "admin_router"]
