"""Declarative action execution."""

from typing import Iterable, Optional

from src.core.config import RetryConfig
from src.core.retry import Sleep
from src.services.actions.base import ActionHandler, ActionRuntime
from src.services.actions.executor import ActionExecutor, ActionOutcome, ExecutionReport
from src.services.actions.external_actions import InvokeExternalHandler, SendNotificationHandler
from src.services.actions.session_actions import (
    AppendThreadItemHandler,
    TriggerNextTurnHandler,
    UpdateSessionHandler,
)
from src.services.protocols import ICollaboratorGateway, INotifier
from src.services.template_renderer import TemplateRenderer


def build_executor(
    renderer: TemplateRenderer,
    notifier: INotifier,
    gateway: ICollaboratorGateway,
    notification_retry: RetryConfig,
    sensitive_fields: Iterable[str] = (),
    sleep: Optional[Sleep] = None,
) -> ActionExecutor:
    """Executor with every built-in action kind registered."""
    handlers = [
        UpdateSessionHandler(),
        AppendThreadItemHandler(renderer.render),
        SendNotificationHandler(notifier, notification_retry, sleep=sleep),
        InvokeExternalHandler(gateway),
        InvokeExternalHandler(gateway, as_resource=True),
        TriggerNextTurnHandler(),
    ]
    return ActionExecutor(handlers, renderer, sensitive_fields)


__all__ = [
    "ActionExecutor",
    "ActionHandler",
    "ActionOutcome",
    "ActionRuntime",
    "ExecutionReport",
    "build_executor",
]
