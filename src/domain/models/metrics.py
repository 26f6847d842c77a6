"""Session metrics derived from the thread.

SessionMetrics is never independently authoritative. ``record`` folds one
appended item into the counters; ``from_thread`` replays a whole thread.
Both must agree for any thread, which is what lets the repository discard
a persisted metrics snapshot and recompute it on load.
"""

from typing import Iterable

from pydantic import BaseModel, Field

from src.domain.models.thread import (
    AssistantItem,
    FlaggedItem,
    FormItem,
    NotificationItem,
    ReportItem,
    SystemItem,
    ThreadItem,
    ToolCallItem,
    ToolOutputItem,
    UserItem,
)


class SessionMetrics(BaseModel):
    """Counters, token totals and completion latency statistics."""

    user_messages: int = 0
    assistant_messages: int = 0
    system_messages: int = 0
    tool_calls: int = Field(default=0, description="Individual function calls proposed")
    tool_outputs: int = 0
    flagged_messages: int = 0
    notifications: int = 0
    forms: int = 0
    reports: int = 0

    input_tokens: int = 0
    output_tokens: int = 0

    response_count: int = Field(
        default=0, description="Completion responses with a recorded latency"
    )
    response_time_total_ms: float = 0.0
    response_time_max_ms: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def mean_response_time_ms(self) -> float:
        if not self.response_count:
            return 0.0
        return self.response_time_total_ms / self.response_count

    def record(self, item: ThreadItem) -> None:
        """Fold one appended thread item into the counters."""
        match item:
            case UserItem():
                self.user_messages += 1
            case SystemItem():
                self.system_messages += 1
            case AssistantItem():
                self.assistant_messages += 1
                self._record_completion(item)
            case ToolCallItem():
                self.tool_calls += len(item.message.tool_calls)
                self._record_completion(item)
            case ToolOutputItem():
                self.tool_outputs += 1
            case FlaggedItem():
                self.flagged_messages += 1
            case NotificationItem():
                self.notifications += 1
            case FormItem():
                self.forms += 1
            case ReportItem():
                self.reports += 1

    def _record_completion(self, item: AssistantItem | ToolCallItem) -> None:
        self.input_tokens += item.usage.input_tokens
        self.output_tokens += item.usage.output_tokens
        if item.latency_ms is not None:
            self.response_count += 1
            self.response_time_total_ms += item.latency_ms
            self.response_time_max_ms = max(self.response_time_max_ms, item.latency_ms)

    @classmethod
    def from_thread(cls, thread: Iterable[ThreadItem]) -> "SessionMetrics":
        metrics = cls()
        for item in thread:
            metrics.record(item)
        return metrics

    def summary(self) -> dict:
        """Flat view including the computed properties, for API responses."""
        data = self.model_dump()
        data["total_tokens"] = self.total_tokens
        data["mean_response_time_ms"] = round(self.mean_response_time_ms, 2)
        return data
