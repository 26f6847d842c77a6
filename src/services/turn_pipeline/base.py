"""
Base stage class for the turn processing pipeline.

All pipeline stages inherit from TurnStage.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from src.domain.models.session import ConversationState

if TYPE_CHECKING:
    from src.services.turn_pipeline.context import TurnContext


class TurnStage(ABC):
    """
    Abstract base class for pipeline stages.

    Each stage implements process(), which takes the TurnContext, performs
    its operation, updates the context and returns it. ``applies`` lets a
    stage opt out for interactions it does not handle; skipped stages do
    not change the session state.
    """

    #: Conversation state the session is in while this stage runs
    state: ConversationState = ConversationState.IDLE

    @abstractmethod
    async def process(self, context: "TurnContext") -> "TurnContext":
        """
        Process this stage, update context, return modified context.

        Args:
            context: Current turn context with all accumulated state

        Returns:
            Modified context with stage results added
        """
        pass

    def applies(self, context: "TurnContext") -> bool:
        return True

    @property
    def stage_name(self) -> str:
        """Return the stage name for logging."""
        return self.__class__.__name__
