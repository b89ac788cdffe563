"""rolegate FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from rolegate.shared.audit import drain_audit
from rolegate.shared.config import RbacSettings, get_settings
from rolegate.shared.rbac.seeder import bootstrap_admin, ensure_system_roles
from rolegate.shared.rbac.store import RbacStore, get_rbac_store

from .admin.routes import router as admin_router
from .me.routes import router as me_router

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[RbacSettings] = None,
    store: Optional[RbacStore] = None,
) -> FastAPI:
    """
    Create and configure the rolegate FastAPI application.

    Args:
        settings: Settings to use instead of the environment
        store: Store to use instead of the one built from settings
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Seed system roles and the bootstrap admin, then drain audit writes on shutdown."""
        active_settings = settings or get_settings()
        active_store = store or get_rbac_store()

        await ensure_system_roles(active_store)
        if active_settings.bootstrap_admin_id:
            await bootstrap_admin(active_store, active_settings.bootstrap_admin_id)
        logger.info("rolegate API started")
        yield
        await drain_audit()
        logger.info("rolegate API stopped")

    app = FastAPI(title="rolegate", lifespan=lifespan)

    if settings is not None:
        app.dependency_overrides[get_settings] = lambda: settings
    if store is not None:
        app.dependency_overrides[get_rbac_store] = lambda: store

    app.include_router(admin_router)
    app.include_router(me_router)

    @app.get("/health", include_in_schema=False)
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
