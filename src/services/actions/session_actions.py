"""
Local actions: session updates, thread appends and next-turn requests.

None of these suspend; they mutate the session owned by the running turn.
"""

from typing import Any, Dict

from src.core.exceptions import ActionExecutionError
from src.domain.models.actions import Action, ActionKind
from src.domain.models.thread import ButtonRef, ChatMessage, parse_thread_item
from src.services.actions.base import ActionHandler, ActionRuntime

UPDATE_TARGETS = ("variables", "session_data", "reports", "delivery")

# Variants an action may append; tool_call/tool_output only come from the dispatcher
MESSAGE_ROLES = {"system": "system", "assistant": "assistant", "user": "user"}
APPENDABLE_ROLES = set(MESSAGE_ROLES) | {"form", "report", "notification"}


class UpdateSessionHandler(ActionHandler):
    """Shallow-merge ``values`` into one part of the session.

    params:
        target: variables (default) | session_data | reports | delivery
        values: mapping merged key by key, last write wins
        key: report key, required when target is reports
    """

    kind = ActionKind.UPDATE_SESSION

    async def run(self, action: Action, params: Dict[str, Any], runtime: ActionRuntime) -> Any:
        target = params.get("target") or "variables"
        values = params.get("values")
        if target not in UPDATE_TARGETS:
            raise ActionExecutionError(
                f"update_session target must be one of {UPDATE_TARGETS}, got {target!r}",
                action.label,
            )
        if not isinstance(values, dict):
            raise ActionExecutionError("update_session requires a 'values' mapping", action.label)

        session = runtime.session
        if target == "variables":
            session.variables.update(values)
        elif target == "session_data":
            session.session_data.update(values)
        elif target == "delivery":
            session.delivery.markers.update(values)
        else:
            key = params.get("key")
            if not key:
                raise ActionExecutionError(
                    "update_session on reports requires a 'key'", action.label
                )
            session.reports.setdefault(str(key), {}).update(values)
        return None


class AppendThreadItemHandler(ActionHandler):
    """Append a rendered thread item.

    params are the item fields, keyed by ``meta_role``. Message variants
    take ``text`` (model-facing) and optional ``content`` (display). Forms
    without ``content`` render the form's configured template. Report
    ``buttons`` are button ids resolved against tenant configuration.
    """

    kind = ActionKind.APPEND_THREAD_ITEM

    def __init__(self, render):
        self._render = render

    async def run(self, action: Action, params: Dict[str, Any], runtime: ActionRuntime) -> Any:
        fields = dict(params)
        role = fields.get("meta_role")
        if role not in APPENDABLE_ROLES:
            raise ActionExecutionError(
                f"append_thread_item cannot append meta_role {role!r}", action.label
            )

        if role in MESSAGE_ROLES:
            text = fields.pop("text", None)
            if text is None:
                text = fields.get("content")
            fields["message"] = ChatMessage(role=MESSAGE_ROLES[role], content=text)
        elif role == "form":
            form = runtime.tenant.forms.get(fields.get("form_key", ""))
            if form is None:
                raise ActionExecutionError(
                    f"Unknown form {fields.get('form_key')!r}", action.label
                )
            if not fields.get("content") and form.content:
                fields["content"] = self._render(form.content, runtime.context())
        elif role == "report":
            fields["buttons"] = self._button_refs(fields.get("buttons") or [], runtime, action)

        try:
            item = parse_thread_item(fields)
        except ValueError as e:
            raise ActionExecutionError(f"Invalid thread item: {e}", action.label) from e

        index = runtime.thread.append(item)
        if role == "report":
            report = runtime.session.reports.setdefault(item.report_key, {})
            report["content"] = item.content
            report.setdefault("submitted", False)
        return {"index": index, "meta_role": role}

    @staticmethod
    def _button_refs(buttons, runtime: ActionRuntime, action: Action):
        refs = []
        for button in buttons:
            button_id = button.get("id") if isinstance(button, dict) else str(button)
            config = runtime.tenant.buttons.get(button_id)
            if config is None:
                raise ActionExecutionError(f"Unknown button {button_id!r}", action.label)
            refs.append(ButtonRef(id=config.id, label=config.label))
        return refs


class TriggerNextTurnHandler(ActionHandler):
    """Request another completion call without new user input."""

    kind = ActionKind.TRIGGER_NEXT_TURN

    async def run(self, action: Action, params: Dict[str, Any], runtime: ActionRuntime) -> Any:
        runtime.next_turn_requested = True
        return None
