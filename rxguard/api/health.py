"""Health check endpoint."""
from fastapi import APIRouter

from rxguard import __version__

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthz() -> dict:
    return {"ok": True, "service": "rxguard", "version": __version__}
