from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.errors import http_error_from
from app.api.routes.tracking import _ensure_visible, _require_admin
from app.core.auth import Principal, resolve_query_scope
from app.core.ratelimit import rate_limited_principal
from app.core.security import get_human_principal
from app.schemas.grievances import (
    GrievanceCreatedOut,
    GrievanceCreateRequest,
    GrievanceListOut,
    GrievanceOut,
    GrievanceOverviewOut,
)
from app.schemas.tracking import TrackingEntryOut
from app.services.errors import RepositoryError
from app.services.grievance_repository import GrievanceDraft, GrievanceOverview, get_grievance_repository
from app.services.history import AdminStatus
from app.services.tracking_service import get_tracking_service

router = APIRouter()

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


@router.post("", response_model=GrievanceCreatedOut, status_code=status.HTTP_201_CREATED)
async def create_grievance(
    payload: GrievanceCreateRequest,
    principal: Principal = Depends(rate_limited_principal),
    repository=Depends(get_grievance_repository),
) -> GrievanceCreatedOut:
    try:
        principal.require_scopes({"grievance:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        grievance, initial_entry = await repository.create(
            GrievanceDraft(roll_no=principal.actor_id, **payload.model_dump())
        )
    except RepositoryError as exc:
        raise http_error_from(exc) from exc

    return GrievanceCreatedOut(
        grievance=GrievanceOut(**asdict(grievance)),
        tracking=TrackingEntryOut(**asdict(initial_entry)),
    )


@router.get("", response_model=GrievanceListOut)
async def list_grievances(
    principal: Principal = Depends(get_human_principal),
    repository=Depends(get_grievance_repository),
    admin_status: AdminStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
) -> GrievanceListOut:
    _require_admin(principal, {"grievance:read"})
    try:
        scope = resolve_query_scope(principal)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        overviews = await repository.list_in_scope(scope, limit=limit, offset=offset, admin_status=admin_status)
    except RepositoryError as exc:
        raise http_error_from(exc) from exc

    return _page(overviews, limit=limit, offset=offset)


@router.get("/my-grievances", response_model=GrievanceListOut)
async def list_my_grievances(
    principal: Principal = Depends(get_human_principal),
    repository=Depends(get_grievance_repository),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
) -> GrievanceListOut:
    try:
        principal.require_scopes({"grievance:read-own"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        overviews = await repository.list_by_roll_no(principal.actor_id, limit=limit, offset=offset)
    except RepositoryError as exc:
        raise http_error_from(exc) from exc

    return _page(overviews, limit=limit, offset=offset)


@router.get("/{grievance_id}", response_model=GrievanceOut)
async def get_grievance(
    grievance_id: str,
    principal: Principal = Depends(get_human_principal),
    repository=Depends(get_grievance_repository),
) -> GrievanceOut:
    _require_admin(principal, {"grievance:read"})
    await _ensure_visible(repository, grievance_id, principal)

    try:
        grievance = await repository.get(grievance_id)
    except RepositoryError as exc:
        raise http_error_from(exc) from exc

    return GrievanceOut(**asdict(grievance))


@router.delete("/{grievance_id}", response_model=TrackingEntryOut)
async def close_grievance(
    grievance_id: str,
    principal: Principal = Depends(rate_limited_principal),
    service=Depends(get_tracking_service),
    repository=Depends(get_grievance_repository),
    reason: str | None = Query(default=None, max_length=5000),
) -> TrackingEntryOut:
    acting_admin_id = _require_admin(principal, {"grievance:close"})
    await _ensure_visible(repository, grievance_id, principal)

    try:
        entry = await service.close_grievance(grievance_id, acting_admin_id, reason=reason)
    except RepositoryError as exc:
        raise http_error_from(exc) from exc

    return TrackingEntryOut(**asdict(entry))


def _page(overviews: list[GrievanceOverview], *, limit: int, offset: int) -> GrievanceListOut:
    return GrievanceListOut(
        items=[GrievanceOverviewOut(**asdict(overview)) for overview in overviews],
        limit=limit,
        offset=offset,
    )
