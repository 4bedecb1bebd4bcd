"""Admin endpoints for key inventory, assignment and revocation."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from secure_key_vault.models.api_models import (
    AssignKeyRequest,
    AssignmentResponse,
    KeyDetailsResponse,
    KeyListResponse,
    KeySummary,
    RevokeKeyRequest,
)
from secure_key_vault.models.key_models import CallerIdentity, CredentialStatus, InventoryReport, KeySearchFilters
from secure_key_vault.routes.dependencies import get_admin_caller, get_key_admin_service
from secure_key_vault.services.key_admin import KeyAdministrationService

router = APIRouter(prefix="/admin", tags=["Key Administration"])


@router.get("/keys", response_model=KeyListResponse)
async def list_keys(
    status: Optional[CredentialStatus] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    caller: CallerIdentity = Depends(get_admin_caller),
    service: KeyAdministrationService = Depends(get_key_admin_service),
):
    keys, total = await service.search_keys(caller, KeySearchFilters(status=status, search=search), limit, skip)
    return KeyListResponse(keys=[KeySummary.from_credential(k) for k in keys], total=total, limit=limit, skip=skip)


@router.get("/keys/count")
async def count_keys(
    status: Optional[CredentialStatus] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    caller: CallerIdentity = Depends(get_admin_caller),
    service: KeyAdministrationService = Depends(get_key_admin_service),
):
    return {"count": await service.count_keys(caller, KeySearchFilters(status=status, search=search))}


@router.get("/keys/{key_id}", response_model=KeyDetailsResponse)
async def get_key_details(
    key_id: str,
    caller: CallerIdentity = Depends(get_admin_caller),
    service: KeyAdministrationService = Depends(get_key_admin_service),
):
    details = await service.key_details(caller, key_id)
    return KeyDetailsResponse(
        key=KeySummary.from_credential(details.key),
        current_assignment=(
            AssignmentResponse.from_assignment(details.current_assignment) if details.current_assignment else None
        ),
        history=[AssignmentResponse.from_assignment(a) for a in details.history],
    )


@router.post("/keys/assign", response_model=AssignmentResponse)
async def assign_key(
    request: AssignKeyRequest,
    caller: CallerIdentity = Depends(get_admin_caller),
    service: KeyAdministrationService = Depends(get_key_admin_service),
):
    """Assign an available key to the user with the given email."""
    assignment = await service.assign_key(caller, request.key_id, request.email)
    return AssignmentResponse.from_assignment(assignment)


@router.post("/keys/revoke", response_model=AssignmentResponse)
async def revoke_key(
    request: RevokeKeyRequest,
    caller: CallerIdentity = Depends(get_admin_caller),
    service: KeyAdministrationService = Depends(get_key_admin_service),
):
    """Revoke the key's current assignment and return it to the pool."""
    assignment = await service.revoke_key(caller, request.key_id)
    return AssignmentResponse.from_assignment(assignment)


@router.get("/reports/inventory", response_model=InventoryReport)
async def inventory_report(
    caller: CallerIdentity = Depends(get_admin_caller),
    service: KeyAdministrationService = Depends(get_key_admin_service),
):
    return await service.inventory_report(caller)
