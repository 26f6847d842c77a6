"""
API request/response schemas.

Pydantic models for API validation and serialization. The WebSocket
transport uses the same payload shapes inside its events.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from src.domain.models.interaction import Interaction
from src.domain.models.session import Session
from src.services.turn_pipeline import TurnResult


# ============ SESSION SCHEMAS ============


class InitSessionRequest(BaseModel):
    """Request to create or resume a session."""

    ref_code: Optional[str] = Field(
        default=None, description="Reference code to resume; omitted or unknown creates a new session"
    )


class SessionResponse(BaseModel):
    """Session snapshot returned by init and get."""

    ref_code: str
    tenant_id: str
    session_type: str
    status: str
    state: str
    resumed: bool = False
    thread: List[Dict[str, Any]]
    session_data: Dict[str, Any]
    reports: Dict[str, Dict[str, Any]]
    metrics: Dict[str, Any]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_session(cls, session: Session, resumed: bool = False) -> "SessionResponse":
        return cls(
            ref_code=session.ref_code,
            tenant_id=session.tenant_id,
            session_type=session.session_type,
            status=session.status.value,
            state=session.state.value,
            resumed=resumed,
            thread=[item.model_dump(mode="json") for item in session.thread],
            session_data=session.session_data,
            reports=session.reports,
            metrics=session.metrics.summary(),
            created_at=session.created_at,
            updated_at=session.updated_at,
        )


class SessionSummary(BaseModel):
    ref_code: str
    tenant_id: str
    session_type: str
    status: str
    thread_length: int
    created_at: datetime
    updated_at: datetime


class SessionListResponse(BaseModel):
    """List of sessions response."""

    sessions: List[SessionSummary]
    total: int


# ============ INTERACTION SCHEMAS ============


class InteractionRequest(BaseModel):
    """One interaction: message, form submission or button click."""

    interaction: Interaction


class InteractionResponse(BaseModel):
    """Thread items appended by the interaction."""

    ref_code: str
    new_items: List[Dict[str, Any]]
    state: str
    persisted: bool
    completion_rounds: int = 0
    latency_ms: int = 0
    error: Optional[str] = None

    @classmethod
    def from_result(cls, result: TurnResult) -> "InteractionResponse":
        return cls(**result.to_payload())


# ============ WEBSOCKET EVENTS ============


class InitSessionEvent(BaseModel):
    event: Literal["init_session"]
    ref_code: Optional[str] = None


class InteractionEvent(BaseModel):
    event: Literal["interaction"]
    interaction: Interaction
