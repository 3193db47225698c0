"""
Health endpoints.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from providerhub.core.database import check_connection

logger = logging.getLogger("providerhub")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity."""
    if not check_connection():
        logger.error("[readyz] database unreachable")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
    return {"status": "ok"}
