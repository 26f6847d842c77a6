"""Thread item domain models: the ordered conversation timeline.

A session's thread is a list of ThreadItem values, a closed tagged union
discriminated by ``meta_role``. Insertion order is the only ordering
authority; ``timestamp`` is advisory (near-simultaneous appends are common).

Variants:
    - system / assistant / user / tool_call / tool_output: carry a
      role-tagged ChatMessage consumed by the completion service, plus an
      optional display ``content`` distinct from the model-facing text
    - form: UI form embedded in the thread (form_key, submitted)
    - report: rendered report with optional interactive buttons
    - notification: system-to-user information, never sent to the model
    - flagged: user text that failed moderation, with the verdict

Mutation:
    Items are never reordered or deleted. The only in-place changes are the
    ``disabled`` flag (all variants) and ``submitted`` (form, report),
    applied through ThreadStore.mutate.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MetaRole(str, Enum):
    """Discriminator values for ThreadItem variants."""

    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL_CALL = "tool_call"
    TOOL_OUTPUT = "tool_output"
    FORM = "form"
    REPORT = "report"
    NOTIFICATION = "notification"
    FLAGGED = "flagged"


# =============================================================================
# Completion-service message shapes
# =============================================================================


class ToolCall(BaseModel):
    """One function call proposed by the completion service.

    ``arguments`` is the raw JSON string as returned by the provider; the
    dispatcher parses and validates it.
    """

    id: str
    name: str
    arguments: str = "{}"

    def to_openai(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


class ChatMessage(BaseModel):
    """Role-tagged message in the OpenAI chat format."""

    role: Literal["system", "user", "assistant", "tool"]
    content: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    def to_openai(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [tc.to_openai() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        if self.name is not None and self.role == "tool":
            data["name"] = self.name
        return data


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class ButtonRef(BaseModel):
    """Button rendered on a report, resolved against tenant button config."""

    id: str
    label: str


# =============================================================================
# Thread item variants
# =============================================================================


class _ItemBase(BaseModel):
    timestamp: datetime = Field(default_factory=utc_now)
    disabled: bool = False


class _MessageItem(_ItemBase):
    message: ChatMessage
    content: Optional[str] = Field(
        default=None, description="Display text shown to the user, if different"
    )


class SystemItem(_MessageItem):
    meta_role: Literal["system"] = "system"


class UserItem(_MessageItem):
    meta_role: Literal["user"] = "user"


class AssistantItem(_MessageItem):
    meta_role: Literal["assistant"] = "assistant"
    usage: TokenUsage = Field(default_factory=TokenUsage)
    latency_ms: Optional[float] = None


class ToolCallItem(_MessageItem):
    meta_role: Literal["tool_call"] = "tool_call"
    usage: TokenUsage = Field(default_factory=TokenUsage)
    latency_ms: Optional[float] = None


class ToolOutputItem(_MessageItem):
    meta_role: Literal["tool_output"] = "tool_output"
    tool_name: str
    success: bool = True


class FormItem(_ItemBase):
    meta_role: Literal["form"] = "form"
    form_key: str
    submitted: bool = False
    content: Optional[str] = None


class ReportItem(_ItemBase):
    meta_role: Literal["report"] = "report"
    report_key: str
    submitted: bool = False
    content: str = ""
    buttons: List[ButtonRef] = Field(default_factory=list)


class NotificationItem(_ItemBase):
    meta_role: Literal["notification"] = "notification"
    content: str
    level: Literal["info", "warning", "error"] = "info"


class FlaggedItem(_ItemBase):
    meta_role: Literal["flagged"] = "flagged"
    content: str
    verdict: Dict[str, Any] = Field(default_factory=dict)


ThreadItem = Annotated[
    Union[
        SystemItem,
        UserItem,
        AssistantItem,
        ToolCallItem,
        ToolOutputItem,
        FormItem,
        ReportItem,
        NotificationItem,
        FlaggedItem,
    ],
    Field(discriminator="meta_role"),
]

thread_item_adapter: TypeAdapter = TypeAdapter(ThreadItem)


def parse_thread_item(data: Dict[str, Any]) -> ThreadItem:
    """Build a ThreadItem variant from a plain mapping keyed by meta_role."""
    return thread_item_adapter.validate_python(data)
