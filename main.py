"""
Allotment - FastAPI Application Entry Point

Serves entitlement checks, usage recording, billing hooks and entitlement
webhook management. Scheduled sweeps run in Celery (see app/celery_app.py).
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import close_db, database_reachable, get_async_session, init_db
from app.routers import entitlement_webhooks, entitlements
from app.services.cache_service import close_cache_service, get_cache_service
from app.utils.error_handling import setup_exception_handlers

API_VERSION = "0.1.0"

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.app_name} ({settings.app_env})")

    # Tables are created on boot only for local and SQLite setups
    if settings.is_development or settings.uses_sqlite:
        await init_db()
        logger.info("Entitlement tables ensured")

    cache = await get_cache_service().health_check()
    if not cache["connected"]:
        # Checks still work without Redis, every lookup just hits the database
        logger.warning(f"Entitlement cache unavailable at startup: {cache.get('error')}")

    yield

    logger.info(f"Shutting down {settings.app_name}")
    await close_cache_service()
    await close_db()


app = FastAPI(
    title=settings.app_name,
    description="Feature entitlements, usage metering and limit alerts for multi-tenant SaaS products",
    version=API_VERSION,
    docs_url="/api/docs" if settings.is_development else None,
    redoc_url="/api/redoc" if settings.is_development else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

setup_exception_handlers(app)

app.include_router(entitlements.router, prefix="/api/v1/entitlements", tags=["Entitlements"])
app.include_router(
    entitlement_webhooks.router,
    prefix="/api/v1/entitlement-webhooks",
    tags=["Entitlement Webhooks"],
)


@app.get("/health")
async def health_check(db: AsyncSession = Depends(get_async_session)):
    """Liveness plus backing store status; a cache outage only degrades."""
    database_ok = await database_reachable(db)
    cache = await get_cache_service().health_check()

    if not database_ok:
        status = "unhealthy"
    elif not cache["connected"]:
        status = "degraded"
    else:
        status = "healthy"

    return {
        "status": status,
        "database": "connected" if database_ok else "unavailable",
        "cache": cache["status"],
    }


@app.get("/api/v1")
async def api_root():
    return {
        "name": settings.app_name,
        "version": API_VERSION,
        "environment": settings.app_env,
        "api_docs": "/api/docs" if settings.is_development else "disabled",
        "endpoints": {
            "workspace_check": "/api/v1/entitlements/workspaces/{workspace_id}/check/{feature_code}",
            "namespace_check": "/api/v1/entitlements/namespaces/{namespace_id}/check/{feature_code}",
            "usage": "/api/v1/entitlements/workspaces/{workspace_id}/usage",
            "summary": "/api/v1/entitlements/workspaces/{workspace_id}/summary",
            "webhooks": "/api/v1/entitlement-webhooks",
        },
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
    )
