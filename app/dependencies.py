"""
Allotment - FastAPI Dependencies

Shared dependencies for database sessions, service authentication and
principal lookup.

This module provides dependency injection for:
1. Database sessions
2. Service-to-service API key authentication
3. Entitlement and webhook services bound to the request session
4. Workspace / namespace principals resolved from path parameters
"""

import hmac
import uuid
from typing import Optional

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_async_session
from app.models.entitlement_enums import Principal
from app.services.cache_service import CacheService, get_cache_service
from app.services.entitlement_service import EntitlementService
from app.services.tenant_directory import TenantDirectory
from app.services.webhook_service import EntitlementWebhookService


# X-API-Key header security
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_service_key(
    api_key: Optional[str] = Security(api_key_header),
) -> None:
    """
    Authenticate the calling service.

    Raises:
        HTTPException: If a key is configured and the request does not carry it
    """
    if not settings.internal_api_key:
        return

    if not api_key or not hmac.compare_digest(api_key, settings.internal_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )


def get_cache() -> CacheService:
    return get_cache_service()


async def get_webhook_service(
    db: AsyncSession = Depends(get_async_session),
) -> EntitlementWebhookService:
    return EntitlementWebhookService(db)


async def get_entitlement_service(
    db: AsyncSession = Depends(get_async_session),
    cache: CacheService = Depends(get_cache),
    webhooks: EntitlementWebhookService = Depends(get_webhook_service),
) -> EntitlementService:
    return EntitlementService(db, cache, webhooks)


async def get_workspace_principal(
    workspace_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_session),
) -> Principal:
    """Resolve the workspace in the path, 404 when it does not exist."""
    principal = Principal.workspace(workspace_id)
    await TenantDirectory(db).require(principal)
    return principal


async def get_namespace_principal(
    namespace_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_session),
) -> Principal:
    """Resolve the namespace in the path, 404 when it does not exist."""
    principal = Principal.namespace(namespace_id)
    await TenantDirectory(db).require(principal)
    return principal
