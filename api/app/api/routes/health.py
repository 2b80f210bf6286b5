from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.services.database import get_pool_manager

router = APIRouter()


@router.get("/")
async def root() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz/db")
async def healthz_db(db=Depends(get_pool_manager)) -> JSONResponse:
    healthy = await db.health_check()
    body: dict[str, Any] = {"status": "ok" if healthy else "unavailable", "pool": asdict(db.pool_status())}
    return JSONResponse(status_code=200 if healthy else 503, content=body)
