"""Session domain models for conversation lifecycle management.

Core Models:
    - Session: root aggregate owning the thread, collected fields,
      template variables, reports, metrics and delivery markers
    - DeliveryState: side-effect bookkeeping (e.g. report_emailed) and the
      set of completed at-most-once effect keys

Session Lifecycle:
    1. Created on first connection, or resumed by ref_code
    2. Mutated only inside its SessionWorker, one turn at a time
    3. Persisted after every completed turn (whole-document upsert)
    4. Status: active -> closed (explicit) or archived (idle eviction)

ConversationState tracks where the current turn is:
    idle -> moderating -> completing -> dispatching -> persisting -> idle
    (terminal: closed)
"""

import secrets
import string
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, Field

from src.domain.models.metrics import SessionMetrics
from src.domain.models.thread import ThreadItem, utc_now

REF_CODE_ALPHABET = string.ascii_uppercase + string.digits
REF_CODE_LENGTH = 8
REF_CODE_PATTERN = rf"^[A-Z0-9]{{{REF_CODE_LENGTH}}}$"


def generate_ref_code() -> str:
    """Random 8-character uppercase alphanumeric reference code."""
    return "".join(secrets.choice(REF_CODE_ALPHABET) for _ in range(REF_CODE_LENGTH))


class SessionStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    ARCHIVED = "archived"


class ConversationState(str, Enum):
    IDLE = "idle"
    MODERATING = "moderating"
    COMPLETING = "completing"
    DISPATCHING = "dispatching"
    PERSISTING = "persisting"
    CLOSED = "closed"


class DeliveryState(BaseModel):
    """Side-effect markers for a session.

    ``markers`` holds user-visible flags written by update_session actions
    (e.g. ``report_emailed``). ``completed_effects`` holds rendered
    once_key values of actions that already succeeded.
    """

    markers: Dict[str, Any] = Field(default_factory=dict)
    completed_effects: List[str] = Field(default_factory=list)

    def has_completed(self, key: str) -> bool:
        return key in self.completed_effects

    def mark_completed(self, key: str) -> None:
        if key not in self.completed_effects:
            self.completed_effects.append(key)


class Session(BaseModel):
    """One end-to-end conversation instance, keyed by ref_code.

    ``ref_code`` is immutable once assigned and is the only client-facing
    resumption key.
    """

    ref_code: str = Field(
        default_factory=generate_ref_code, pattern=REF_CODE_PATTERN, frozen=True
    )
    tenant_id: str
    session_type: str = "default"
    mode_tags: List[str] = Field(default_factory=list)
    status: SessionStatus = SessionStatus.ACTIVE
    state: ConversationState = ConversationState.IDLE

    session_data: Dict[str, Any] = Field(
        default_factory=dict, description="Fields collected from the user"
    )
    variables: Dict[str, Any] = Field(
        default_factory=dict, description="Mutable template variables"
    )
    thread: List[ThreadItem] = Field(default_factory=list)
    reports: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    metrics: SessionMetrics = Field(default_factory=SessionMetrics)
    delivery: DeliveryState = Field(default_factory=DeliveryState)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_closed(self) -> bool:
        return self.status != SessionStatus.ACTIVE

    def recompute_metrics(self) -> None:
        self.metrics = SessionMetrics.from_thread(self.thread)
