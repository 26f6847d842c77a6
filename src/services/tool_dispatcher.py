"""
Tool call dispatcher.

Each call proposed in one completion response moves through:

    Proposed -> Validated -> Executed -> Reported

Validation rejects calls to unknown tools, to tools whose ``enabled_when``
condition is currently false, and calls whose arguments are not JSON or
fail the tool's JSON schema. Rejected calls skip execution and go straight
to Reported with an error result.

Calls execute one at a time in the order the model returned them, since a
later call may depend on state mutated by an earlier one. Every call ends
with exactly one ``tool_output`` item correlated by ``tool_call_id``.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import jsonschema
import structlog

from src.core.exceptions import UnknownToolError, ValidationError
from src.domain.models.actions import ToolHandler
from src.domain.models.session import Session
from src.domain.models.tenant import TenantConfig
from src.domain.models.thread import ChatMessage, ToolCall, ToolOutputItem
from src.services.actions import ActionExecutor, ActionRuntime, ExecutionReport
from src.services.template_context import TemplateContextBuilder
from src.services.template_renderer import TemplateRenderer

log = structlog.get_logger(__name__)


@dataclass
class ToolCallResult:
    call: ToolCall
    status: str  # "rejected" | "succeeded" | "failed"
    output: str
    execution: Optional[ExecutionReport] = None


@dataclass
class DispatchReport:
    results: List[ToolCallResult] = field(default_factory=list)
    next_turn_requested: bool = False


class ToolCallDispatcher:
    """Validates and executes model-proposed function calls for one tenant."""

    def __init__(
        self,
        tenant: TenantConfig,
        executor: ActionExecutor,
        renderer: TemplateRenderer,
        context_builder: TemplateContextBuilder,
    ):
        self.tenant = tenant
        self.executor = executor
        self.renderer = renderer
        self.context_builder = context_builder

    def available_tools(self, session: Session) -> List[ToolHandler]:
        """Tool handlers enabled for the session's current state."""
        context = self.context_builder.build(session)
        return [
            handler
            for handler in self.tenant.tools
            if self.renderer.is_truthy(handler.enabled_when, context)
        ]

    def tool_schemas(self, session: Session) -> List[Dict[str, Any]]:
        return [handler.to_openai() for handler in self.available_tools(session)]

    def validate(self, call: ToolCall, session: Session) -> tuple[ToolHandler, Dict[str, Any]]:
        """
        Resolve the handler and parsed arguments for a call.

        Raises:
            UnknownToolError: Tool not configured or not currently enabled
            ValidationError: Arguments are not a JSON object or fail the schema
        """
        handler = self.tenant.tool(call.name)
        if handler is None:
            raise UnknownToolError(f"Unknown tool '{call.name}'")
        if call.name not in {h.name for h in self.available_tools(session)}:
            raise UnknownToolError(f"Tool '{call.name}' is not available right now")

        try:
            arguments = json.loads(call.arguments or "{}")
        except json.JSONDecodeError as e:
            raise ValidationError(f"Arguments for '{call.name}' are not valid JSON: {e.msg}") from e
        if not isinstance(arguments, dict):
            raise ValidationError(f"Arguments for '{call.name}' must be a JSON object")

        try:
            jsonschema.validate(arguments, handler.parameters)
        except jsonschema.ValidationError as e:
            raise ValidationError(f"Schema validation failed: {e.message}") from e

        return handler, arguments

    async def dispatch(self, calls: List[ToolCall], runtime: ActionRuntime) -> DispatchReport:
        report = DispatchReport()

        for call in calls:
            try:
                handler, arguments = self.validate(call, runtime.session)
            except ValidationError as e:
                log.warning("tool_call_rejected", tool=call.name, call_id=call.id, reason=e.message)
                result = ToolCallResult(
                    call=call,
                    status="rejected",
                    output=json.dumps({"status": "error", "error": e.message}),
                )
                self._report(result, runtime)
                report.results.append(result)
                continue

            runtime.extra["tool"] = {"name": call.name, "call_id": call.id, "arguments": arguments}
            execution = await self.executor.run(self.tenant.actions_for(handler), runtime)
            result = ToolCallResult(
                call=call,
                status="succeeded" if execution.succeeded else "failed",
                output=self._render_output(handler, execution, runtime),
                execution=execution,
            )
            runtime.extra.pop("tool", None)

            self._report(result, runtime)
            report.results.append(result)
            log.info(
                "tool_call_executed",
                tool=call.name,
                call_id=call.id,
                status=result.status,
                actions=len(execution.outcomes),
                halted=execution.halted,
            )

        report.next_turn_requested = runtime.next_turn_requested
        return report

    def _render_output(
        self, handler: ToolHandler, execution: ExecutionReport, runtime: ActionRuntime
    ) -> str:
        if execution.halted and execution.error is not None:
            return json.dumps({"status": "error", "error": execution.error.message})

        if handler.output:
            context = runtime.context()
            context["execution"] = {
                "succeeded": execution.succeeded,
                "failures": [o.action for o in execution.failures],
            }
            return self.renderer.render(handler.output, context)

        summary: Dict[str, Any] = {"status": "ok" if execution.succeeded else "partial"}
        if execution.failures:
            summary["failed_actions"] = [
                {"action": o.action, "error": o.error} for o in execution.failures
            ]
        return json.dumps(summary)

    @staticmethod
    def _report(result: ToolCallResult, runtime: ActionRuntime) -> None:
        runtime.thread.append(
            ToolOutputItem(
                message=ChatMessage(
                    role="tool",
                    content=result.output,
                    tool_call_id=result.call.id,
                    name=result.call.name,
                ),
                tool_name=result.call.name,
                success=result.status == "succeeded",
            )
        )
