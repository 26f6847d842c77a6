"""
Action executor: runs an ordered action list against one session.

Actions run strictly left to right. Before each action the template
context is rebuilt and the action's parameter tree resolved against it, so
an action sees every mutation made by the actions before it.

Failure policy:
- A failed non-gating action is recorded and the list continues
- A failed gating action halts the remaining list; the report carries the
  ActionExecutionError for the caller to surface

At-most-once: an action with ``once_key`` is skipped when the rendered key
is already in ``session.delivery.completed_effects``. The key is recorded
only after the action succeeds.

Every action emits one ``action_executed`` audit event with its name,
kind, redacted parameters, status and error.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import structlog

from src.core.exceptions import ActionExecutionError, ConfigurationError
from src.core.redaction import audit_params
from src.domain.models.actions import Action
from src.services.actions.base import ActionHandler, ActionRuntime
from src.services.template_renderer import TemplateRenderer

log = structlog.get_logger(__name__)


@dataclass
class ActionOutcome:
    """Result of one action."""

    action: str
    kind: str
    status: str  # "succeeded" | "failed" | "skipped"
    error: Optional[str] = None
    result: Any = None
    duration_ms: float = 0.0


@dataclass
class ExecutionReport:
    """Result of one action list."""

    outcomes: List[ActionOutcome] = field(default_factory=list)
    halted: bool = False
    error: Optional[ActionExecutionError] = None

    @property
    def failures(self) -> List[ActionOutcome]:
        return [o for o in self.outcomes if o.status == "failed"]

    @property
    def succeeded(self) -> bool:
        return not self.halted and not self.failures


class ActionExecutor:
    """Interprets declarative actions with a registry of handlers by kind."""

    def __init__(
        self,
        handlers: Iterable[ActionHandler],
        renderer: TemplateRenderer,
        sensitive_fields: Iterable[str] = (),
    ):
        self.handlers: Dict[str, ActionHandler] = {}
        for handler in handlers:
            self.register(handler)
        self.renderer = renderer
        self.sensitive_fields = list(sensitive_fields)

    def register(self, handler: ActionHandler) -> None:
        if not handler.kind:
            raise ConfigurationError(f"{handler.handler_name} does not declare a kind")
        self.handlers[handler.kind] = handler

    def validate(self, actions: Iterable[Action]) -> None:
        """Fail fast at startup on actions with no registered handler."""
        unknown = sorted({a.kind for a in actions if a.kind not in self.handlers})
        if unknown:
            raise ConfigurationError(f"Unknown action kinds: {unknown}")

    async def run(self, actions: List[Action], runtime: ActionRuntime) -> ExecutionReport:
        report = ExecutionReport()

        for position, action in enumerate(actions):
            outcome = await self._run_one(action, runtime)
            report.outcomes.append(outcome)

            if outcome.status == "failed" and action.gating:
                report.halted = True
                report.error = ActionExecutionError(
                    f"Gating action '{action.label}' failed: {outcome.error}",
                    action.label,
                )
                skipped = [a.label for a in actions[position + 1:]]
                log.warning(
                    "action_sequence_halted",
                    action=action.label,
                    skipped_actions=skipped,
                )
                break

        return report

    async def _run_one(self, action: Action, runtime: ActionRuntime) -> ActionOutcome:
        start = time.perf_counter()
        context = runtime.context()

        once_key = None
        if action.once_key:
            once_key = self.renderer.render(action.once_key, context).strip()
            if once_key and runtime.session.delivery.has_completed(once_key):
                outcome = ActionOutcome(action.label, action.kind, "skipped")
                self._audit(action, {}, outcome, once_key=once_key)
                return outcome

        params = action.param_tree.resolve(self.renderer, context)
        handler = self.handlers.get(action.kind)

        try:
            if handler is None:
                raise ActionExecutionError(f"No handler for kind '{action.kind}'", action.label)
            result = await handler.run(action, params, runtime)
        except Exception as e:
            # Isolation boundary: any handler failure becomes a failed outcome
            outcome = ActionOutcome(
                action.label,
                action.kind,
                "failed",
                error=getattr(e, "message", None) or str(e),
                duration_ms=(time.perf_counter() - start) * 1000,
            )
            self._audit(action, params, outcome, once_key=once_key, error_type=type(e).__name__)
            return outcome

        if action.result_key:
            runtime.store_result(action.result_key, result)
        if once_key:
            runtime.session.delivery.mark_completed(once_key)

        outcome = ActionOutcome(
            action.label,
            action.kind,
            "succeeded",
            result=result,
            duration_ms=(time.perf_counter() - start) * 1000,
        )
        self._audit(action, params, outcome, once_key=once_key)
        return outcome

    def _audit(
        self,
        action: Action,
        params: Dict[str, Any],
        outcome: ActionOutcome,
        once_key: Optional[str] = None,
        error_type: Optional[str] = None,
    ) -> None:
        event = dict(
            action=action.label,
            kind=action.kind,
            gating=action.gating,
            status=outcome.status,
            params=audit_params(params, self.sensitive_fields),
            duration_ms=round(outcome.duration_ms, 2),
        )
        if once_key:
            event["once_key"] = once_key
        if outcome.error:
            event["error"] = outcome.error
            event["error_type"] = error_type
            log.warning("action_executed", **event)
        else:
            log.info("action_executed", **event)
