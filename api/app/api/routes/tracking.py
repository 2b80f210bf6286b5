from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, status

from app.api.errors import http_error_from
from app.core.auth import Principal, resolve_query_scope
from app.core.ratelimit import rate_limited_principal
from app.core.security import get_human_principal
from app.schemas.tracking import (
    TrackingCreateRequest,
    TrackingEntryOut,
    TrackingHistoryOut,
    TrackingRedirectRequest,
    TrackingStatusOut,
)
from app.services.errors import RepositoryError, RepositoryNotFoundError
from app.services.grievance_repository import get_grievance_repository
from app.services.tracking_service import get_tracking_service

router = APIRouter()


@router.post("", response_model=TrackingEntryOut, status_code=status.HTTP_201_CREATED)
async def create_tracking_entry(
    payload: TrackingCreateRequest,
    principal: Principal = Depends(rate_limited_principal),
    service=Depends(get_tracking_service),
    grievances=Depends(get_grievance_repository),
) -> TrackingEntryOut:
    acting_admin_id = _require_admin(principal, {"tracking:write"})
    await _ensure_visible(grievances, payload.grievance_id, principal)

    try:
        entry = await service.create_tracking_entry(payload.to_draft(), acting_admin_id)
    except RepositoryError as exc:
        raise http_error_from(exc) from exc

    return TrackingEntryOut(**asdict(entry))


@router.get("/{grievance_id}", response_model=TrackingHistoryOut)
async def get_tracking_history(
    grievance_id: str,
    principal: Principal = Depends(get_human_principal),
    service=Depends(get_tracking_service),
    grievances=Depends(get_grievance_repository),
) -> TrackingHistoryOut:
    _require_admin(principal, {"tracking:read"})
    await _ensure_visible(grievances, grievance_id, principal)

    try:
        history = await service.get_history(grievance_id)
    except RepositoryError as exc:
        raise http_error_from(exc) from exc

    return TrackingHistoryOut(**asdict(history))


@router.get("/{grievance_id}/status", response_model=TrackingStatusOut)
async def get_current_status(
    grievance_id: str,
    principal: Principal = Depends(get_human_principal),
    service=Depends(get_tracking_service),
    grievances=Depends(get_grievance_repository),
) -> TrackingStatusOut:
    _require_admin(principal, {"tracking:read"})
    await _ensure_visible(grievances, grievance_id, principal)

    try:
        entry = await service.get_current_status(grievance_id)
    except RepositoryError as exc:
        raise http_error_from(exc) from exc

    return TrackingStatusOut(
        grievance_id=grievance_id,
        entry=TrackingEntryOut(**asdict(entry)) if entry else None,
    )


@router.post(
    "/{grievance_id}/redirect",
    response_model=TrackingEntryOut,
    status_code=status.HTTP_201_CREATED,
)
async def redirect_grievance(
    grievance_id: str,
    payload: TrackingRedirectRequest,
    principal: Principal = Depends(rate_limited_principal),
    service=Depends(get_tracking_service),
    grievances=Depends(get_grievance_repository),
) -> TrackingEntryOut:
    from_admin_id = _require_admin(principal, {"tracking:write"})
    await _ensure_visible(grievances, grievance_id, principal)

    try:
        entry = await service.redirect_grievance(
            grievance_id,
            from_admin_id,
            payload.redirect_to,
            payload.comment,
        )
    except RepositoryError as exc:
        raise http_error_from(exc) from exc

    return TrackingEntryOut(**asdict(entry))


def _require_admin(principal: Principal, scopes: set[str]) -> str:
    try:
        principal.require_scopes(scopes)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")
    return principal.actor_id


async def _ensure_visible(grievances, grievance_id: str, principal: Principal) -> None:
    try:
        scope = resolve_query_scope(principal)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if scope.unrestricted:
        return

    try:
        visible = await grievances.exists_in_scope(grievance_id, scope)
    except RepositoryError as exc:
        raise http_error_from(exc) from exc

    # Out-of-scope grievances are reported as missing rather than forbidden.
    if not visible:
        raise http_error_from(RepositoryNotFoundError(f"grievance {grievance_id} not found"))
