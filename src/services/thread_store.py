"""Thread store: the only write path into a session's thread.

Growth is append-only. The only in-place change allowed on an existing
item is the ``submitted``/``disabled`` flag pair, and only while the item
has not been finalized (submitted). Every append also folds the item into
the session metrics so counters never drift from the thread.

The model projection is what the completion service sees: enabled items
that carry a chat message, in append order, in OpenAI message format.
Forms, reports, notifications and flagged content stay client-side.
"""

from typing import Any, Dict, List, Optional, Tuple

import structlog

from src.core.exceptions import ThreadItemNotFoundError, ValidationError
from src.domain.models.session import Session
from src.domain.models.thread import (
    AssistantItem,
    ChatMessage,
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

log = structlog.get_logger(__name__)

MUTABLE_FIELDS = frozenset({"submitted", "disabled"})


def model_message(item: ThreadItem) -> Optional[ChatMessage]:
    """Model-consumable message carried by an item, if its variant has one."""
    match item:
        case SystemItem() | UserItem() | AssistantItem() | ToolCallItem() | ToolOutputItem():
            return item.message
        case FormItem() | ReportItem() | NotificationItem() | FlaggedItem():
            return None
    raise TypeError(f"Unhandled thread item variant: {type(item).__name__}")


class ThreadStore:
    """Ordered conversation log bound to one session."""

    def __init__(self, session: Session):
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    def __len__(self) -> int:
        return len(self._session.thread)

    def append(self, item: ThreadItem) -> int:
        """Append an item and return its index."""
        self._session.thread.append(item)
        self._session.metrics.record(item)
        index = len(self._session.thread) - 1
        log.debug("thread_item_appended", index=index, meta_role=item.meta_role)
        return index

    def mutate(self, index: int, patch: Dict[str, Any]) -> None:
        """Set ``submitted``/``disabled`` on an existing item.

        Raises:
            ThreadItemNotFoundError: Index outside [0, len) or item already submitted
            ValidationError: Patch names a field that is not mutable on the item
        """
        thread = self._session.thread
        if not 0 <= index < len(thread):
            raise ThreadItemNotFoundError(
                f"No thread item at index {index} (thread length {len(thread)})"
            )

        illegal = set(patch) - MUTABLE_FIELDS
        if illegal:
            raise ValidationError(f"Thread item fields are not mutable: {sorted(illegal)}")

        item = thread[index]
        if getattr(item, "submitted", False):
            raise ThreadItemNotFoundError(
                f"Thread item at index {index} is already finalized"
            )
        for field_name in patch:
            if field_name not in type(item).model_fields:
                raise ValidationError(
                    f"{item.meta_role} items have no '{field_name}' field"
                )

        for field_name, value in patch.items():
            setattr(item, field_name, bool(value))
        log.debug("thread_item_mutated", index=index, patch=patch)

    def snapshot(self) -> Tuple[ThreadItem, ...]:
        """Items in append order. The tuple does not track later appends."""
        return tuple(self._session.thread)

    def items_since(self, index: int) -> List[ThreadItem]:
        return list(self._session.thread[index:])

    def model_projection(self) -> List[Dict[str, Any]]:
        """Messages for the completion service, in append order."""
        messages = []
        for item in self._session.thread:
            if item.disabled:
                continue
            message = model_message(item)
            if message is not None:
                messages.append(message.to_openai())
        return messages

    def find_open_form(self, form_key: str, index: Optional[int] = None) -> int:
        """Index of the form item a submission targets.

        With ``index`` the item there must be an unsubmitted form with the
        key; otherwise the latest unsubmitted enabled form with the key.

        Raises:
            ThreadItemNotFoundError: No matching open form
        """
        thread = self._session.thread
        if index is not None:
            if 0 <= index < len(thread):
                item = thread[index]
                if isinstance(item, FormItem) and item.form_key == form_key and not item.submitted:
                    return index
            raise ThreadItemNotFoundError(
                f"No open '{form_key}' form at thread index {index}"
            )

        for i in range(len(thread) - 1, -1, -1):
            item = thread[i]
            if (
                isinstance(item, FormItem)
                and item.form_key == form_key
                and not item.submitted
                and not item.disabled
            ):
                return i
        raise ThreadItemNotFoundError(f"No open '{form_key}' form in thread")

    def find_report_with_button(self, button_id: str, index: Optional[int] = None) -> Optional[int]:
        """Index of the report carrying ``button_id``, if any."""
        thread = self._session.thread
        candidates = [index] if index is not None else range(len(thread) - 1, -1, -1)
        for i in candidates:
            if not 0 <= i < len(thread):
                continue
            item = thread[i]
            if isinstance(item, ReportItem) and any(b.id == button_id for b in item.buttons):
                return i
        return None
