"""
Allotment - Entitlement Webhooks Router

API endpoints for managing entitlement webhooks: registration, test
deliveries, delivery history, manual retries and circuit breaker resets.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_async_session
from app.dependencies import get_webhook_service, verify_service_key
from app.models.entitlement_enums import Principal, PrincipalType
from app.schemas.entitlement import MessageResponse
from app.schemas.webhook import (
    AvailableEventResponse,
    DeliveryResponse,
    WebhookCreateRequest,
    WebhookCreatedResponse,
    WebhookResponse,
    WebhookUpdateRequest,
)
from app.services.tenant_directory import TenantDirectory
from app.services.webhook_service import EntitlementWebhookService


router = APIRouter(dependencies=[Depends(verify_service_key)])


@router.get(
    "/events",
    response_model=List[AvailableEventResponse],
    summary="List subscribable events",
)
async def list_events():
    return EntitlementWebhookService.available_events()


@router.get(
    "",
    response_model=List[WebhookResponse],
    summary="List webhooks for a principal",
)
async def list_webhooks(
    principal_id: UUID = Query(...),
    principal_type: PrincipalType = Query(PrincipalType.WORKSPACE),
    service: EntitlementWebhookService = Depends(get_webhook_service),
):
    return await service.webhooks_for(Principal(principal_type, principal_id))


@router.post(
    "",
    response_model=WebhookCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a webhook",
    description="The signing secret is only returned in this response.",
)
async def create_webhook(
    request: WebhookCreateRequest,
    db: AsyncSession = Depends(get_async_session),
    service: EntitlementWebhookService = Depends(get_webhook_service),
):
    principal = Principal(request.principal_type, request.principal_id)
    await TenantDirectory(db).require(principal)

    webhook = await service.register(
        principal,
        name=request.name,
        url=str(request.url),
        events=request.events,
        secret=request.secret,
        max_attempts=request.max_attempts,
    )
    await db.commit()
    return webhook


@router.get(
    "/{webhook_id}",
    response_model=WebhookResponse,
    summary="Get a webhook",
)
async def get_webhook(
    webhook_id: UUID,
    service: EntitlementWebhookService = Depends(get_webhook_service),
):
    return await service.get_webhook(webhook_id)


@router.patch(
    "/{webhook_id}",
    response_model=WebhookResponse,
    summary="Update a webhook",
)
async def update_webhook(
    webhook_id: UUID,
    request: WebhookUpdateRequest,
    db: AsyncSession = Depends(get_async_session),
    service: EntitlementWebhookService = Depends(get_webhook_service),
):
    changes = request.model_dump(exclude_unset=True)
    if changes.get("url") is not None:
        changes["url"] = str(changes["url"])

    webhook = await service.update(webhook_id, **changes)
    await db.commit()
    return webhook


@router.delete(
    "/{webhook_id}",
    response_model=MessageResponse,
    summary="Delete a webhook",
)
async def delete_webhook(
    webhook_id: UUID,
    db: AsyncSession = Depends(get_async_session),
    service: EntitlementWebhookService = Depends(get_webhook_service),
):
    await service.unregister(webhook_id)
    await db.commit()
    return MessageResponse(message="Webhook deleted")


@router.post(
    "/{webhook_id}/test",
    response_model=DeliveryResponse,
    summary="Send a test event",
)
async def test_webhook(
    webhook_id: UUID,
    db: AsyncSession = Depends(get_async_session),
    service: EntitlementWebhookService = Depends(get_webhook_service),
):
    delivery = await service.test_webhook(webhook_id)
    await db.commit()
    return delivery


@router.get(
    "/{webhook_id}/deliveries",
    response_model=List[DeliveryResponse],
    summary="Delivery history",
)
async def list_deliveries(
    webhook_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    service: EntitlementWebhookService = Depends(get_webhook_service),
):
    await service.get_webhook(webhook_id)
    return await service.delivery_history(webhook_id, limit)


@router.post(
    "/deliveries/{delivery_id}/retry",
    response_model=DeliveryResponse,
    summary="Resend a delivery",
    description="Refused with 422 when the webhook's circuit is open.",
)
async def retry_delivery(
    delivery_id: UUID,
    db: AsyncSession = Depends(get_async_session),
    service: EntitlementWebhookService = Depends(get_webhook_service),
):
    delivery = await service.retry_delivery(delivery_id)
    await db.commit()
    return delivery


@router.post(
    "/{webhook_id}/reset-circuit",
    response_model=WebhookResponse,
    summary="Re-enable a webhook after failures",
)
async def reset_circuit(
    webhook_id: UUID,
    db: AsyncSession = Depends(get_async_session),
    service: EntitlementWebhookService = Depends(get_webhook_service),
):
    webhook = await service.reset_circuit_breaker(webhook_id)
    await db.commit()
    return webhook
