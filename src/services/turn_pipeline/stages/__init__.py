"""
Pipeline stages for turn processing.

Each stage encapsulates one step of a turn. Stages execute sequentially in
the TurnPipeline orchestrator; interaction-specific stages opt out through
``applies`` for interactions they do not handle.
"""

from .moderation_stage import ModerationStage
from .form_submission_stage import FormSubmissionStage
from .button_action_stage import ButtonActionStage
from .completion_stage import CompletionStage
from .dispatch_stage import DispatchStage
from .persistence_stage import PersistenceStage

__all__ = [
    "ModerationStage",
    "FormSubmissionStage",
    "ButtonActionStage",
    "CompletionStage",
    "DispatchStage",
    "PersistenceStage",
]
