"""
Dispatch stage: run the tool calls from the last completion.

When any action asked for another model turn, the stage rewinds the
pipeline to CompletionStage, up to ``max_completion_rounds`` completion
calls per turn.
"""

from typing import TYPE_CHECKING

import structlog

from src.domain.models.session import ConversationState
from src.services.tool_dispatcher import ToolCallDispatcher
from ..base import TurnStage

if TYPE_CHECKING:
    from ..context import TurnContext

log = structlog.get_logger(__name__)


class DispatchStage(TurnStage):
    state = ConversationState.DISPATCHING

    def __init__(self, dispatcher: ToolCallDispatcher, max_completion_rounds: int):
        self.dispatcher = dispatcher
        self.max_completion_rounds = max_completion_rounds

    def applies(self, context: "TurnContext") -> bool:
        return bool(context.pending_tool_calls)

    async def process(self, context: "TurnContext") -> "TurnContext":
        calls = context.pending_tool_calls
        context.pending_tool_calls = []

        report = await self.dispatcher.dispatch(calls, context.runtime)
        context.dispatch_reports.append(report)
        context.runtime.next_turn_requested = False

        if report.next_turn_requested:
            if context.completion_rounds < self.max_completion_rounds:
                context.completion_requested = True
                context.rewind_to = "CompletionStage"
            else:
                log.warning(
                    "max_completion_rounds_reached",
                    ref_code=context.ref_code,
                    rounds=context.completion_rounds,
                )
        return context
