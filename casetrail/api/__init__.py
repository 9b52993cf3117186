from .errors import register_exception_handlers
from .routes_actors import router as actors_router
from .routes_admin import router as admin_router
from .routes_cases import router as cases_router

__all__ = [
    "register_exception_handlers",
    "actors_router",
    "admin_router",
    "cases_router",
]
