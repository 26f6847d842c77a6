"""
Turn processing pipeline.

A turn is a sequence of stages over a working copy of the session:
moderation, form submission, button actions, completion, dispatch and
persistence. Dispatch may rewind to completion when actions request
another model turn.
"""

from .base import TurnStage
from .context import TurnContext
from .pipeline import TurnPipeline
from .result import TurnResult

__all__ = [
    "TurnStage",
    "TurnContext",
    "TurnPipeline",
    "TurnResult",
]
