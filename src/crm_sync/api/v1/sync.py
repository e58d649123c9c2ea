"""REST entry point for the RD Station reconciliation engine.

POST /api/v1/integrations/rdstation/sync runs one budgeted invocation and
returns its counters plus the continuation cursor. Callers resume a logical sync
by posting the returned next_cursor back until has_more is false.

Failure mapping:
- Missing token -> 400 {error: "missing_rdstation_credentials"}
- CRM auth/client failure (400, 401, 403) -> 200 {error: "rdstation_sync_failed", ...}
  so that the caller can re-prompt for credentials
- Any other fatal failure -> 500 with the same body
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Body, HTTPException, Request, status
from fastapi.responses import JSONResponse

from src.crm_sync.sync.errors import SyncJobFailed
from src.crm_sync.sync.orchestrator import SyncOrchestrator
from src.crm_sync.sync.schemas import SyncRequest

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/integrations/rdstation", tags=["rdstation"])


def _get_sync_orchestrator(request: Request) -> SyncOrchestrator:
    """Retrieve SyncOrchestrator from app.state, 503 if not available."""
    orchestrator = getattr(request.app.state, "sync_orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="RD Station sync not initialized",
        )
    return orchestrator


@router.post("/sync")
async def run_rdstation_sync(
    request: Request,
    payload: dict[str, Any] = Body(default_factory=dict),
) -> JSONResponse:
    """Run one invocation of the RD Station sync.

    Accepts snake_case or camelCase keys (access_token / accessToken, ...).
    Out-of-range numeric options are clamped, never rejected.
    """
    orchestrator = _get_sync_orchestrator(request)
    sync_request = SyncRequest.model_validate(payload)

    if not sync_request.access_token:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "missing_rdstation_credentials",
                "message": "Provide the RD Station CRM access token.",
            },
        )

    try:
        result = await orchestrator.run(sync_request)
    except SyncJobFailed as exc:
        logger.warning(
            "rdstation_sync.failed",
            sync_job_id=exc.sync_job_id,
            client_error=exc.is_client_error,
            error=str(exc),
        )
        return JSONResponse(
            status_code=(
                status.HTTP_200_OK
                if exc.is_client_error
                else status.HTTP_500_INTERNAL_SERVER_ERROR
            ),
            content={
                "error": "rdstation_sync_failed",
                "message": str(exc),
                "sync_job_id": exc.sync_job_id,
            },
        )

    return JSONResponse(status_code=status.HTTP_200_OK, content=result.model_dump(mode="json"))
