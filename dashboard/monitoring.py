"""
Health check and readiness endpoints for the RLS scanner web service.
"""
import sqlite3
import time
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel

from rlsguard.errors import RlsGuardError

router = APIRouter(tags=["monitoring"])

# Application start time
START_TIME = time.time()
VERSION = "0.1.0"


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    timestamp: str
    uptime_seconds: float
    version: str
    component: str


class ReadinessResponse(BaseModel):
    """Readiness check response model."""

    ready: bool
    checks: Dict[str, Dict[str, Any]]


@router.get("/health", response_model=HealthResponse, status_code=status.HTTP_200_OK)
async def health_check() -> HealthResponse:
    """
    Basic health check endpoint.
    Returns 200 OK if the service is running.
    """
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=round(time.time() - START_TIME, 2),
        version=VERSION,
        component="dashboard",
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request, response: Response) -> ReadinessResponse:
    """
    Readiness check endpoint.
    Verifies the database answers and the OAuth client and vault are configured.
    """
    checks: Dict[str, Dict[str, Any]] = {}
    all_ready = True
    components = request.app.state.components

    try:
        conn = sqlite3.connect(components.settings.db_path)
        try:
            conn.execute("SELECT 1 FROM integrations LIMIT 1")
        finally:
            conn.close()
        checks["database"] = {"status": "ok"}
    except sqlite3.Error as exc:
        checks["database"] = {"status": "error", "error": str(exc)}
        all_ready = False

    oauth = components.settings.oauth
    if oauth.client_id and oauth.client_secret:
        checks["oauth"] = {"status": "ok"}
    else:
        checks["oauth"] = {"status": "error", "message": "OAuth client is not configured"}
        all_ready = False

    try:
        components.vault.self_test()
        checks["vault"] = {"status": "ok"}
    except RlsGuardError as exc:
        checks["vault"] = {"status": "error", "error": str(exc)}
        all_ready = False

    checks["classifier"] = {"status": "ok" if components.classifier is not None else "disabled"}

    if not all_ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return ReadinessResponse(ready=all_ready, checks=checks)
