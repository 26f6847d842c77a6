"""
Session API routes.

Endpoints for session management and interactions, scoped by tenant.
The WebSocket transport in ``websocket.py`` exposes the same operations
as events.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
import structlog

from src.api.dependencies import RegistryDep, SessionRepoDep, get_registry
from src.api.schemas import (
    InitSessionRequest,
    InteractionRequest,
    InteractionResponse,
    SessionListResponse,
    SessionResponse,
    SessionSummary,
)
from src.domain.models.session import SessionStatus
from src.services.export_service import ExportService
from src.services.session_registry import SessionRegistry

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/tenants/{tenant_id}/sessions", tags=["sessions"])


# ============ SESSION LIFECYCLE ============


@router.post("", response_model=SessionResponse)
async def init_session(
    tenant_id: str,
    registry: RegistryDep,
    request: Optional[InitSessionRequest] = None,
):
    """Create a session, or resume one by reference code.

    An unknown ref_code is not an error: a fresh session is returned and
    ``resumed`` is false.
    """
    ref_code = request.ref_code if request else None
    session, resumed = await registry.init_session(tenant_id, ref_code)
    return SessionResponse.from_session(session, resumed=resumed)


@router.get("", response_model=SessionListResponse)
async def list_sessions(
    tenant_id: str,
    session_repo: SessionRepoDep,
    status_filter: Optional[SessionStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
):
    """List stored sessions for a tenant, most recently updated first."""
    rows = await session_repo.list_by_tenant(tenant_id, status=status_filter, limit=limit)
    return SessionListResponse(
        sessions=[SessionSummary(**row) for row in rows],
        total=len(rows),
    )


@router.get("/{ref_code}", response_model=SessionResponse)
async def get_session(tenant_id: str, ref_code: str, registry: RegistryDep):
    """Current session snapshot (thread, collected data, metrics)."""
    session = await registry.get_session(tenant_id, ref_code)
    return SessionResponse.from_session(session, resumed=True)


@router.post("/{ref_code}/interactions", response_model=InteractionResponse)
async def interact(
    tenant_id: str,
    ref_code: str,
    request: InteractionRequest,
    registry: RegistryDep,
):
    """Process one interaction and return the thread items it appended.

    A turn aborted by an upstream failure still returns 200: the response
    holds a single error notification and ``persisted`` is false.
    """
    result = await registry.interact(tenant_id, ref_code, request.interaction)
    return InteractionResponse.from_result(result)


@router.post("/{ref_code}/close", response_model=SessionResponse)
async def close_session(tenant_id: str, ref_code: str, registry: RegistryDep):
    """Close the session; further interactions are rejected with 409."""
    session = await registry.close_session(tenant_id, ref_code)
    return SessionResponse.from_session(session, resumed=True)


# ============ EXPORT ============


def get_export_service(
    session_repo: SessionRepoDep,
    registry: SessionRegistry = Depends(get_registry),
) -> ExportService:
    """FastAPI dependency injection for ExportService.

    Live sessions are exported from memory, others from the store.
    """
    return ExportService(session_repo, live_lookup=registry.live_session)


EXPORT_MEDIA = {
    "json": ("application/json", "json"),
    "markdown": ("text/markdown", "md"),
    "csv": ("text/csv", "csv"),
}


@router.get(
    "/{ref_code}/export",
    response_class=Response,
    summary="Export session transcript",
    description="Export the raw thread to JSON, Markdown, or CSV format",
)
async def export_session(
    tenant_id: str,
    ref_code: str,
    registry: RegistryDep,
    format: str = Query(
        "json",
        description="Export format: json, markdown, or csv",
        pattern="^(json|markdown|csv)$",
    ),
    service: ExportService = Depends(get_export_service),
) -> Response:
    """Export a session transcript for audit or replay."""
    log_ctx = log.bind(ref_code=ref_code, format=format)
    log_ctx.info("export_session_requested")

    await registry.get_session(tenant_id, ref_code)
    data = await service.export_session(ref_code, format)

    content_type, extension = EXPORT_MEDIA[format]
    return Response(
        content=data,
        media_type=content_type,
        headers={
            "Content-Disposition": f'attachment; filename="session_{ref_code}.{extension}"',
        },
    )
