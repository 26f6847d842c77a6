"""
Turn context carried through the pipeline stages.

The context holds the working copy of the session for this turn. Stages
mutate only the working copy; the engine commits it when the pipeline
finishes and discards it when a transient failure aborts the turn, so the
live session never sees a partial turn.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from src.core.exceptions import ModerationFlagged
from src.domain.models.interaction import Interaction
from src.domain.models.session import Session
from src.domain.models.thread import ToolCall
from src.llm.client import CompletionResponse
from src.services.actions import ActionRuntime, ExecutionReport
from src.services.thread_store import ThreadStore
from src.services.tool_dispatcher import DispatchReport


@dataclass
class TurnContext:
    """Mutable state for one turn.

    Flow control:
        completion_requested: CompletionStage should call the model
        pending_tool_calls: DispatchStage has calls to run
        rewind_to: stage name the pipeline jumps back to after this stage
    """

    session: Session
    interaction: Interaction
    runtime: ActionRuntime
    thread_start: int

    completion_requested: bool = False
    completion_rounds: int = 0
    pending_tool_calls: List[ToolCall] = field(default_factory=list)
    rewind_to: Optional[str] = None

    completions: List[CompletionResponse] = field(default_factory=list)
    dispatch_reports: List[DispatchReport] = field(default_factory=list)
    action_reports: List[ExecutionReport] = field(default_factory=list)
    flagged: Optional[ModerationFlagged] = None

    stage_timings: Dict[str, float] = field(default_factory=dict)

    @property
    def thread(self) -> ThreadStore:
        return self.runtime.thread

    @property
    def ref_code(self) -> str:
        return self.session.ref_code
