"""Inbound interaction payloads.

An interaction is what a client sends inside an ``interaction`` event:
free text, a form submission, or a report button click. The union is
discriminated by ``type`` so transport layers can validate raw JSON
directly with ``interaction_adapter``.
"""

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class MessageInteraction(BaseModel):
    type: Literal["message"] = "message"
    text: str = Field(min_length=1, max_length=8000)


class FormSubmission(BaseModel):
    type: Literal["form_submission"] = "form_submission"
    form_key: str
    fields: Dict[str, Any] = Field(default_factory=dict)
    item_index: Optional[int] = Field(
        default=None,
        ge=0,
        description="Thread index of the form; latest open form with the key if omitted",
    )


class ButtonClick(BaseModel):
    type: Literal["button_click"] = "button_click"
    button_id: str
    item_index: Optional[int] = Field(
        default=None, ge=0, description="Thread index of the report carrying the button"
    )


Interaction = Annotated[
    Union[MessageInteraction, FormSubmission, ButtonClick],
    Field(discriminator="type"),
]

interaction_adapter: TypeAdapter = TypeAdapter(Interaction)
