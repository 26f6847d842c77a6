"""
Moderation stage: pre-check free-text user input.

Flagged input is recorded as a ``flagged`` item holding the offending text
and the verdict, and the turn ends without a completion call. Passing
input is appended as a ``user`` item and requests a completion.
"""

from typing import TYPE_CHECKING, Optional

import structlog

from src.core.config import RetryConfig
from src.core.exceptions import ModerationFlagged
from src.core.retry import Sleep, retry_async
from src.domain.models.interaction import MessageInteraction
from src.domain.models.session import ConversationState
from src.domain.models.thread import ChatMessage, FlaggedItem, UserItem
from src.llm.moderation import ModerationClient
from ..base import TurnStage

if TYPE_CHECKING:
    from ..context import TurnContext

log = structlog.get_logger(__name__)


class ModerationStage(TurnStage):
    state = ConversationState.MODERATING

    def __init__(
        self,
        moderation: ModerationClient,
        retry: RetryConfig,
        enabled: bool = True,
        sleep: Optional[Sleep] = None,
    ):
        self.moderation = moderation
        self.retry = retry
        self.enabled = enabled
        self.sleep = sleep

    def applies(self, context: "TurnContext") -> bool:
        return isinstance(context.interaction, MessageInteraction)

    async def process(self, context: "TurnContext") -> "TurnContext":
        text = context.interaction.text

        if self.enabled:
            result = await retry_async(
                lambda: self.moderation.moderate(text),
                policy=self.retry,
                operation_name="moderation",
                sleep=self.sleep,
            )
            if result.flagged:
                verdict = result.verdict()
                context.thread.append(FlaggedItem(content=text, verdict=verdict))
                context.flagged = ModerationFlagged(
                    "User input flagged by moderation", verdict=verdict
                )
                context.completion_requested = False
                log.warning(
                    "user_input_flagged",
                    ref_code=context.ref_code,
                    categories=verdict["categories"],
                )
                return context

        context.thread.append(UserItem(message=ChatMessage(role="user", content=text)))
        context.completion_requested = True
        return context
