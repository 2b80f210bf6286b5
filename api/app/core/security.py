from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from app.core.auth import STUDENT_ROLE, AdminRole, Principal
from app.core.config import Settings, get_settings

ADMIN_SCOPES = {"tracking:read", "tracking:write", "grievance:read"}

ROLE_SCOPES: dict[str, set[str]] = {
    STUDENT_ROLE: {"grievance:write", "grievance:read-own"},
    AdminRole.DEPT_ADMIN.value: ADMIN_SCOPES,
    AdminRole.CAMPUS_ADMIN.value: ADMIN_SCOPES | {"grievance:close"},
    AdminRole.SUPER_ADMIN.value: ADMIN_SCOPES | {"grievance:close"},
}


async def get_human_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="human auth requires bearer token",
        )

    token = authorization.split(" ", maxsplit=1)[1].strip()
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="empty bearer token")

    if not settings.supabase_url or not settings.supabase_anon_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth is not configured",
        )

    user = await _fetch_supabase_user(
        supabase_url=settings.supabase_url,
        supabase_anon_key=settings.supabase_anon_key,
        token=token,
        timeout_seconds=settings.auth_timeout_seconds,
    )
    user_id = user.get("id")
    if not isinstance(user_id, str) or not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")

    metadata = _app_metadata(user)
    role = _resolve_human_role(user)

    return Principal(
        subject=user_id,
        role=role,
        scopes=set(ROLE_SCOPES.get(role, ROLE_SCOPES[STUDENT_ROLE])),
        actor_id=_resolve_actor_id(metadata, role=role, default=user_id),
        campus_id=_as_int(metadata.get("campus_id")),
        department=_as_text(metadata.get("department")),
    )


async def _fetch_supabase_user(
    *,
    supabase_url: str,
    supabase_anon_key: str,
    token: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    headers = {
        "Authorization": f"Bearer {token}",
        "apikey": supabase_anon_key,
    }
    url = f"{supabase_url.rstrip('/')}/auth/v1/user"

    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.get(url, headers=headers)
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification unavailable",
        ) from exc

    if response.status_code in {401, 403}:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")
    if response.status_code != 200:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification failed",
        )

    return response.json()


def _app_metadata(user: dict[str, Any]) -> dict[str, Any]:
    app_metadata = user.get("app_metadata")
    return app_metadata if isinstance(app_metadata, dict) else {}


def _resolve_human_role(user: dict[str, Any]) -> str:
    # Only app_metadata is trusted for admin roles; users can edit user_metadata.
    role = _app_metadata(user).get("role")
    if isinstance(role, str) and role in ROLE_SCOPES:
        return role
    return STUDENT_ROLE


def _resolve_actor_id(metadata: dict[str, Any], *, role: str, default: str) -> str:
    key = "roll_no" if role == STUDENT_ROLE else "admin_id"
    return _as_text(metadata.get(key)) or default


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
