"""Domain models package."""

from .session import (
    ConversationState,
    DeliveryState,
    Session,
    SessionStatus,
    generate_ref_code,
)
from .metrics import SessionMetrics
from .thread import (
    AssistantItem,
    ButtonRef,
    ChatMessage,
    FlaggedItem,
    FormItem,
    MetaRole,
    NotificationItem,
    ReportItem,
    SystemItem,
    ThreadItem,
    TokenUsage,
    ToolCall,
    ToolCallItem,
    ToolOutputItem,
    UserItem,
    parse_thread_item,
)
from .actions import Action, ActionKind, ButtonConfig, FormConfig, ToolHandler
from .interaction import ButtonClick, FormSubmission, Interaction, MessageInteraction
from .tenant import TenantConfig

__all__ = [
    "ConversationState",
    "DeliveryState",
    "Session",
    "SessionStatus",
    "generate_ref_code",
    "SessionMetrics",
    "AssistantItem",
    "ButtonRef",
    "ChatMessage",
    "FlaggedItem",
    "FormItem",
    "MetaRole",
    "NotificationItem",
    "ReportItem",
    "SystemItem",
    "ThreadItem",
    "TokenUsage",
    "ToolCall",
    "ToolCallItem",
    "ToolOutputItem",
    "UserItem",
    "parse_thread_item",
    "Action",
    "ActionKind",
    "ButtonConfig",
    "FormConfig",
    "ToolHandler",
    "ButtonClick",
    "FormSubmission",
    "Interaction",
    "MessageInteraction",
    "TenantConfig",
]
