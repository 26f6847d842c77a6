"""
Result object for the turn processing pipeline.

Returned to the transport for every interaction, whether the turn was
committed or aborted.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from src.domain.models.session import ConversationState
from src.domain.models.thread import ThreadItem


@dataclass
class TurnResult:
    """Outcome of one interaction.

    ``new_items`` are the thread items appended by the turn, in order. For
    an aborted turn they hold only the transient error notification, which
    is shown to the user but not part of the persisted thread.

    ``error`` names the exception type that ended the turn early: the
    transient failure of an aborted turn, or ``ModerationFlagged`` for a
    committed turn whose input was flagged.
    """

    ref_code: str
    new_items: List[ThreadItem]
    state: ConversationState
    persisted: bool = True
    completion_rounds: int = 0
    latency_ms: int = 0
    error: Optional[str] = None
    stage_timings: Dict[str, float] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "ref_code": self.ref_code,
            "new_items": [item.model_dump(mode="json") for item in self.new_items],
            "state": self.state.value,
            "persisted": self.persisted,
            "completion_rounds": self.completion_rounds,
            "latency_ms": self.latency_ms,
            "error": self.error,
        }
