# api/routers/__init__.py
from api.routers import access, admin, checkout, notifications

__all__ = [
    "access",
    "admin",
    "checkout",
    "notifications",
]
