"""
Allotment - Entitlements Router

API endpoints for entitlement checks, usage recording, usage summaries and
alerts, plus the hooks the billing system uses to provision grants.
"""

from typing import Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_async_session
from app.dependencies import (
    get_entitlement_service,
    get_namespace_principal,
    get_workspace_principal,
    verify_service_key,
)
from app.models.entitlement_enums import LogSource, Principal
from app.schemas.entitlement import (
    BoostProvisionRequest,
    BoostResponse,
    EntitlementLogResponse,
    EntitlementResultResponse,
    PackageAssignmentResponse,
    PackageProvisionRequest,
    RecordUsageResponse,
    UsageAlertResponse,
    UsageRecordRequest,
    UsageRecordResponse,
    UsageStatusEntry,
    UsageSummaryResponse,
)
from app.services.entitlement_service import EntitlementService
from app.services.usage_alert_service import UsageAlertService
from app.utils.error_handling import NotFoundException, ErrorCode


router = APIRouter(dependencies=[Depends(verify_service_key)])


# ===========================================
# HELPERS
# ===========================================

async def _record(
    principal: Principal,
    request: UsageRecordRequest,
    db: AsyncSession,
    service: EntitlementService,
):
    """Check, then record. Denied checks return 403 with the decision body."""
    result = await service.check(principal, request.feature_code, request.quantity)
    if not result.allowed:
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content=result.to_dict())

    record = await service.record_usage(
        principal,
        request.feature_code,
        quantity=request.quantity,
        user_id=request.user_id,
        context=request.context,
    )
    await db.commit()

    return RecordUsageResponse(
        result=EntitlementResultResponse(**result.to_dict()),
        record=UsageRecordResponse.model_validate(record),
    )


async def _summary(principal: Principal, service: EntitlementService) -> UsageSummaryResponse:
    categories = await service.usage_summary(principal)
    snapshot = await service.status_snapshot(principal)
    return UsageSummaryResponse(
        principal_type=principal.kind.value,
        principal_id=principal.id,
        categories=categories,
        packages=snapshot["packages"],
        boosts=snapshot["boosts"],
    )


# ===========================================
# ENTITLEMENT CHECKS
# ===========================================

@router.get(
    "/workspaces/{workspace_id}/check/{feature_code}",
    response_model=EntitlementResultResponse,
    summary="Check workspace entitlement",
    description="Whether the workspace may use `quantity` of the feature right now. Never consumes usage.",
)
async def check_workspace(
    feature_code: str,
    quantity: int = Query(1, ge=1),
    principal: Principal = Depends(get_workspace_principal),
    service: EntitlementService = Depends(get_entitlement_service),
):
    result = await service.can(principal.id, feature_code, quantity)
    return EntitlementResultResponse(**result.to_dict())


@router.get(
    "/namespaces/{namespace_id}/check/{feature_code}",
    response_model=EntitlementResultResponse,
    summary="Check namespace entitlement",
    description="Checks the namespace, then its workspace, then the owner's tier.",
)
async def check_namespace(
    feature_code: str,
    quantity: int = Query(1, ge=1),
    principal: Principal = Depends(get_namespace_principal),
    service: EntitlementService = Depends(get_entitlement_service),
):
    result = await service.can_for_namespace(principal.id, feature_code, quantity)
    return EntitlementResultResponse(**result.to_dict())


# ===========================================
# USAGE
# ===========================================

@router.post(
    "/workspaces/{workspace_id}/usage",
    response_model=RecordUsageResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record workspace usage",
    responses={403: {"model": EntitlementResultResponse, "description": "Not entitled or limit reached"}},
)
async def record_workspace_usage(
    request: UsageRecordRequest,
    principal: Principal = Depends(get_workspace_principal),
    db: AsyncSession = Depends(get_async_session),
    service: EntitlementService = Depends(get_entitlement_service),
):
    return await _record(principal, request, db, service)


@router.post(
    "/namespaces/{namespace_id}/usage",
    response_model=RecordUsageResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record namespace usage",
    responses={403: {"model": EntitlementResultResponse, "description": "Not entitled or limit reached"}},
)
async def record_namespace_usage(
    request: UsageRecordRequest,
    principal: Principal = Depends(get_namespace_principal),
    db: AsyncSession = Depends(get_async_session),
    service: EntitlementService = Depends(get_entitlement_service),
):
    return await _record(principal, request, db, service)


@router.get(
    "/workspaces/{workspace_id}/summary",
    response_model=UsageSummaryResponse,
    summary="Workspace usage summary",
)
async def workspace_summary(
    principal: Principal = Depends(get_workspace_principal),
    service: EntitlementService = Depends(get_entitlement_service),
):
    return await _summary(principal, service)


@router.get(
    "/namespaces/{namespace_id}/summary",
    response_model=UsageSummaryResponse,
    summary="Namespace usage summary",
)
async def namespace_summary(
    principal: Principal = Depends(get_namespace_principal),
    service: EntitlementService = Depends(get_entitlement_service),
):
    return await _summary(principal, service)


# ===========================================
# ALERTS
# ===========================================

@router.get(
    "/workspaces/{workspace_id}/usage-status",
    response_model=List[UsageStatusEntry],
    summary="Metered features with their open alert",
)
async def workspace_usage_status(
    principal: Principal = Depends(get_workspace_principal),
    db: AsyncSession = Depends(get_async_session),
    service: EntitlementService = Depends(get_entitlement_service),
):
    return await UsageAlertService(db, entitlements=service).usage_status(principal)


@router.get(
    "/workspaces/{workspace_id}/alerts",
    response_model=List[UsageAlertResponse],
    summary="Unresolved usage alerts",
)
async def workspace_alerts(
    principal: Principal = Depends(get_workspace_principal),
    db: AsyncSession = Depends(get_async_session),
    service: EntitlementService = Depends(get_entitlement_service),
):
    return await UsageAlertService(db, entitlements=service).active_alerts(principal)


@router.get(
    "/workspaces/{workspace_id}/alerts/history",
    response_model=List[UsageAlertResponse],
    summary="Usage alert history",
)
async def workspace_alert_history(
    days: Optional[int] = Query(None, ge=1, le=365),
    principal: Principal = Depends(get_workspace_principal),
    db: AsyncSession = Depends(get_async_session),
    service: EntitlementService = Depends(get_entitlement_service),
):
    return await UsageAlertService(db, entitlements=service).alert_history(principal, days)


@router.post(
    "/alerts/{alert_id}/resolve",
    summary="Manually resolve a usage alert",
)
async def resolve_alert(
    alert_id: UUID,
    db: AsyncSession = Depends(get_async_session),
    service: EntitlementService = Depends(get_entitlement_service),
) -> Dict[str, bool]:
    resolved = await UsageAlertService(db, entitlements=service).resolve_alert(alert_id)
    await db.commit()
    return {"resolved": resolved}


# ===========================================
# GRANTS (billing collaborator hooks)
# ===========================================

@router.post(
    "/workspaces/{workspace_id}/packages",
    response_model=PackageAssignmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Provision a package",
    description="Assigning a base package cancels the workspace's current base package.",
)
async def provision_package(
    request: PackageProvisionRequest,
    principal: Principal = Depends(get_workspace_principal),
    db: AsyncSession = Depends(get_async_session),
    service: EntitlementService = Depends(get_entitlement_service),
):
    assignment = await service.grants.provision_package(
        principal,
        request.package_code,
        starts_at=request.starts_at,
        expires_at=request.expires_at,
        billing_cycle_anchor=request.billing_cycle_anchor,
        source=request.source,
    )
    await db.commit()
    return assignment


@router.delete(
    "/workspaces/{workspace_id}/packages/{package_code}",
    response_model=PackageAssignmentResponse,
    summary="Revoke a package",
)
async def revoke_package(
    package_code: str,
    principal: Principal = Depends(get_workspace_principal),
    db: AsyncSession = Depends(get_async_session),
    service: EntitlementService = Depends(get_entitlement_service),
):
    assignment = await service.grants.revoke_package(principal, package_code, source=LogSource.API)
    if assignment is None:
        raise NotFoundException(
            message=f"No active '{package_code}' package on this workspace",
            resource_type="PackageAssignment",
            resource_id=package_code,
            code=ErrorCode.PACKAGE_NOT_FOUND,
        )
    await db.commit()
    return assignment


@router.post(
    "/workspaces/{workspace_id}/suspend",
    response_model=List[PackageAssignmentResponse],
    summary="Suspend all active packages (non-payment)",
)
async def suspend_workspace(
    principal: Principal = Depends(get_workspace_principal),
    db: AsyncSession = Depends(get_async_session),
    service: EntitlementService = Depends(get_entitlement_service),
):
    assignments = await service.grants.suspend(principal)
    await db.commit()
    return assignments


@router.post(
    "/workspaces/{workspace_id}/reactivate",
    response_model=List[PackageAssignmentResponse],
    summary="Reactivate suspended packages",
)
async def reactivate_workspace(
    principal: Principal = Depends(get_workspace_principal),
    db: AsyncSession = Depends(get_async_session),
    service: EntitlementService = Depends(get_entitlement_service),
):
    assignments = await service.grants.reactivate(principal)
    await db.commit()
    return assignments


@router.post(
    "/workspaces/{workspace_id}/boosts",
    response_model=BoostResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Provision a boost",
)
async def provision_boost(
    request: BoostProvisionRequest,
    principal: Principal = Depends(get_workspace_principal),
    db: AsyncSession = Depends(get_async_session),
    service: EntitlementService = Depends(get_entitlement_service),
):
    boost = await service.grants.provision_boost(
        principal,
        request.feature_code,
        boost_type=request.boost_type,
        duration_type=request.duration_type,
        limit_value=request.limit_value,
        starts_at=request.starts_at,
        expires_at=request.expires_at,
        source=request.source,
    )
    await db.commit()
    return boost


@router.get(
    "/workspaces/{workspace_id}/history",
    response_model=List[EntitlementLogResponse],
    summary="Grant audit trail",
)
async def workspace_history(
    limit: int = Query(50, ge=1, le=500),
    principal: Principal = Depends(get_workspace_principal),
    service: EntitlementService = Depends(get_entitlement_service),
):
    return await service.grants.history(principal, limit)
