"""Tenant configuration model.

One TenantConfig per tenant YAML file. It is validated on load, then
treated as immutable and shared by every session of the tenant.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from src.domain.models.actions import (
    Action,
    ActionListRef,
    ButtonConfig,
    FormConfig,
    ToolHandler,
)


class ModelParams(BaseModel):
    """Completion parameters for this tenant (provider defaults otherwise)."""

    model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, ge=1)
    tool_choice: Optional[str] = None


class SessionTypeConfig(BaseModel):
    """Per session-type requirements."""

    required_fields: List[str] = Field(default_factory=list)
    mode_tags: List[str] = Field(default_factory=list)


class CollaboratorOperation(BaseModel):
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    path: str = ""


class CollaboratorConfig(BaseModel):
    """External HTTP collaborator reachable from invoke_external_* actions."""

    base_url: str
    timeout_seconds: float = Field(default=10.0, gt=0)
    headers: Dict[str, str] = Field(default_factory=dict)
    operations: Dict[str, CollaboratorOperation] = Field(default_factory=dict)


class TenantConfig(BaseModel):
    """Complete configuration for one tenant."""

    tenant_id: str
    display_name: str = ""
    constants: Dict[str, Any] = Field(default_factory=dict)
    instructions: str = Field(
        default="", description="System prompt template sent before the thread"
    )
    model: ModelParams = Field(default_factory=ModelParams)
    moderation_enabled: bool = True

    default_session_type: str = "default"
    session_types: Dict[str, SessionTypeConfig] = Field(
        default_factory=lambda: {"default": SessionTypeConfig()}
    )

    tools: List[ToolHandler] = Field(default_factory=list)
    action_sequences: Dict[str, List[Action]] = Field(default_factory=dict)
    forms: Dict[str, FormConfig] = Field(default_factory=dict)
    buttons: Dict[str, ButtonConfig] = Field(default_factory=dict)
    on_start: List[Action] = Field(
        default_factory=list, description="Actions run once when a session is created"
    )
    collaborators: Dict[str, CollaboratorConfig] = Field(default_factory=dict)
    redact_fields: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_references(self) -> "TenantConfig":
        if self.default_session_type not in self.session_types:
            raise ValueError(
                f"default_session_type '{self.default_session_type}' is not defined"
            )

        names = [t.name for t in self.tools]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate tool names: {sorted(duplicates)}")

        refs: List[ActionListRef] = [*self.tools, *self.forms.values(), *self.buttons.values()]
        for ref in refs:
            if ref.sequence and ref.sequence not in self.action_sequences:
                raise ValueError(f"Unknown action sequence '{ref.sequence}'")

        for key, form in self.forms.items():
            if form.form_key != key:
                raise ValueError(f"Form '{key}' declares form_key '{form.form_key}'")
        for key, button in self.buttons.items():
            if button.id != key:
                raise ValueError(f"Button '{key}' declares id '{button.id}'")
        return self

    def tool(self, name: str) -> Optional[ToolHandler]:
        for handler in self.tools:
            if handler.name == name:
                return handler
        return None

    def session_type(self, name: Optional[str]) -> SessionTypeConfig:
        return self.session_types.get(name or self.default_session_type) or SessionTypeConfig()

    def actions_for(self, ref: ActionListRef) -> List[Action]:
        """Expand a sequence reference plus inline actions into one list."""
        actions: List[Action] = []
        if ref.sequence:
            actions.extend(self.action_sequences[ref.sequence])
        actions.extend(ref.actions)
        return actions

    def all_actions(self) -> List[Action]:
        actions = list(self.on_start)
        for sequence in self.action_sequences.values():
            actions.extend(sequence)
        for ref in [*self.tools, *self.forms.values(), *self.buttons.values()]:
            actions.extend(ref.actions)
        return actions

    def sensitive_fields(self, defaults: List[str]) -> List[str]:
        return sorted(set(defaults) | set(self.redact_fields))
