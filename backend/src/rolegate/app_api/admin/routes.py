"""Aggregate router for the admin API."""

from fastapi import APIRouter

from .menus.routes import router as menus_router
from .permissions.routes import router as permissions_router
from .roles.routes import router as roles_router
from .users.routes import router as users_router

router = APIRouter(prefix="/admin")
router.include_router(roles_router)
router.include_router(permissions_router)
router.include_router(menus_router)
router.include_router(users_router)
