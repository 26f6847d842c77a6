"""
Persistence stage: save the completed turn.

The session is saved in its post-turn state (idle), so a stored document
always corresponds to a fully completed turn.
"""

from typing import TYPE_CHECKING, Optional

from src.core.config import RetryConfig
from src.core.retry import Sleep, retry_async
from src.domain.models.session import ConversationState
from src.domain.models.thread import utc_now
from src.services.protocols import ISessionStore
from ..base import TurnStage

if TYPE_CHECKING:
    from ..context import TurnContext


class PersistenceStage(TurnStage):
    state = ConversationState.PERSISTING

    def __init__(self, store: ISessionStore, retry: RetryConfig, sleep: Optional[Sleep] = None):
        self.store = store
        self.retry = retry
        self.sleep = sleep

    async def process(self, context: "TurnContext") -> "TurnContext":
        session = context.session
        session.state = ConversationState.IDLE
        session.updated_at = utc_now()
        await retry_async(
            lambda: self.store.save(session),
            policy=self.retry,
            operation_name="persist_session",
            sleep=self.sleep,
        )
        return context
