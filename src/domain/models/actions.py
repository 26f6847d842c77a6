"""Declarative action and tool handler configuration.

Actions, tool handlers, forms and buttons are tenant configuration loaded
once at startup and shared read-only by every session of that tenant.
Business behavior lives here as data; the action executor interprets it.

Example (tenant YAML):

    tools:
      - name: submit_report
        description: File the maintenance report once all details are known
        parameters:
          type: object
          properties:
            summary: {type: string}
          required: [summary]
        enabled_when: "not missing_fields"
        sequence: file_report
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, PrivateAttr

from src.domain.models.params import ParamNode, compile_params


class ActionKind:
    """Built-in action kinds. The executor registry may add more."""

    UPDATE_SESSION = "update_session"
    APPEND_THREAD_ITEM = "append_thread_item"
    SEND_NOTIFICATION = "send_notification"
    INVOKE_EXTERNAL_TOOL = "invoke_external_tool"
    INVOKE_EXTERNAL_RESOURCE = "invoke_external_resource"
    TRIGGER_NEXT_TURN = "trigger_next_turn"


class Action(BaseModel):
    """One declarative operation run by the action executor.

    ``params`` may contain template placeholders; they are compiled into a
    parameter tree here and resolved against the template context only
    when the action runs.
    """

    kind: str
    name: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    gating: bool = Field(
        default=False,
        description="Halt the remaining sequence if this action fails",
    )
    once_key: Optional[str] = Field(
        default=None,
        description="Template for an at-most-once marker; the action is skipped "
        "once a rendered key has been recorded for the session",
    )
    result_key: Optional[str] = Field(
        default=None,
        description="Name under results.<key> for external call results",
    )

    _param_tree: ParamNode = PrivateAttr()

    def model_post_init(self, __context: Any) -> None:
        self._param_tree = compile_params(self.params)

    @property
    def label(self) -> str:
        return self.name or self.kind

    @property
    def param_tree(self) -> ParamNode:
        return self._param_tree


class ActionListRef(BaseModel):
    """Inline actions and/or a reference to a named action sequence.

    When both are given the named sequence runs first, then the inline
    actions.
    """

    actions: List[Action] = Field(default_factory=list)
    sequence: Optional[str] = None


class ToolHandler(ActionListRef):
    """Maps a model-exposed function to its schema and action list."""

    name: str = Field(pattern=r"^[a-zA-Z0-9_-]{1,64}$")
    description: str = ""
    parameters: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    enabled_when: Optional[str] = Field(
        default=None,
        description="Expression over the template context; tool is hidden "
        "and rejected while it evaluates falsy",
    )
    output: Optional[str] = Field(
        default=None,
        description="Template for the tool result returned to the model",
    )

    def to_openai(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class FormField(BaseModel):
    name: str
    label: str = ""
    type: str = "text"
    required: bool = False


class FormConfig(ActionListRef):
    """UI form that can be embedded in the thread.

    ``actions``/``sequence`` run after a successful submission.
    """

    form_key: str
    title: str = ""
    content: Optional[str] = Field(
        default=None, description="Template rendered into the form item"
    )
    fields: List[FormField] = Field(default_factory=list)
    system_note: str = Field(
        default="The user submitted the {{ form.form_key }} form: {{ form.fields | tojson }}",
        description="Template for the model-facing note appended on submission",
    )

    @property
    def required_fields(self) -> List[str]:
        return [f.name for f in self.fields if f.required]


class ButtonConfig(ActionListRef):
    """Button shown on report items, bound to a fixed action list."""

    id: str
    label: str
    mark_submitted: bool = Field(
        default=True,
        description="Mark the source report submitted when the actions succeed",
    )
