"""
Completion stage: one call to the completion service.

Sends the rendered tenant instructions followed by the thread's model
projection, with the tool schemas currently enabled for the session.
Transient failures are retried with bounded exponential backoff; only the
successful attempt appends anything, so retries never duplicate items.
"""

from typing import TYPE_CHECKING, Optional

import structlog

from src.core.config import RetryConfig
from src.core.exceptions import LLMInvalidResponseError
from src.core.retry import Sleep, retry_async
from src.domain.models.session import ConversationState
from src.domain.models.tenant import TenantConfig
from src.domain.models.thread import AssistantItem, ChatMessage, TokenUsage, ToolCallItem
from src.llm.client import CompletionClient
from src.services.template_context import TemplateContextBuilder
from src.services.template_renderer import TemplateRenderer
from src.services.tool_dispatcher import ToolCallDispatcher
from ..base import TurnStage

if TYPE_CHECKING:
    from ..context import TurnContext

log = structlog.get_logger(__name__)


class CompletionStage(TurnStage):
    state = ConversationState.COMPLETING

    def __init__(
        self,
        tenant: TenantConfig,
        client: CompletionClient,
        dispatcher: ToolCallDispatcher,
        renderer: TemplateRenderer,
        context_builder: TemplateContextBuilder,
        retry: RetryConfig,
        sleep: Optional[Sleep] = None,
    ):
        self.tenant = tenant
        self.client = client
        self.dispatcher = dispatcher
        self.renderer = renderer
        self.context_builder = context_builder
        self.retry = retry
        self.sleep = sleep

    def applies(self, context: "TurnContext") -> bool:
        return context.completion_requested

    def build_messages(self, context: "TurnContext") -> list:
        messages = []
        instructions = self.renderer.render(
            self.tenant.instructions, self.context_builder.build(context.session)
        )
        if instructions:
            messages.append({"role": "system", "content": instructions})
        messages.extend(context.thread.model_projection())
        return messages

    async def process(self, context: "TurnContext") -> "TurnContext":
        messages = self.build_messages(context)
        tools = self.dispatcher.tool_schemas(context.session)
        model_params = self.tenant.model.model_dump(exclude_none=True)

        response = await retry_async(
            lambda: self.client.complete(messages, tools=tools or None, model_params=model_params),
            policy=self.retry,
            operation_name="completion",
            sleep=self.sleep,
        )

        if not response.content and not response.tool_calls:
            raise LLMInvalidResponseError("Completion returned neither content nor tool calls")

        usage = TokenUsage(
            input_tokens=response.usage.get("input_tokens", 0),
            output_tokens=response.usage.get("output_tokens", 0),
        )
        message = ChatMessage(
            role="assistant", content=response.content, tool_calls=response.tool_calls
        )
        if response.tool_calls:
            context.thread.append(
                ToolCallItem(message=message, usage=usage, latency_ms=response.latency_ms)
            )
            context.pending_tool_calls = list(response.tool_calls)
        else:
            context.thread.append(
                AssistantItem(message=message, usage=usage, latency_ms=response.latency_ms)
            )

        context.completions.append(response)
        context.completion_rounds += 1
        context.completion_requested = False

        log.info(
            "completion_round_complete",
            ref_code=context.ref_code,
            round=context.completion_rounds,
            tool_calls=[tc.name for tc in response.tool_calls],
        )
        return context
