"""
Form submission stage.

Merges the submitted fields into ``session_data``, appends a model-facing
system note and runs the form's on-submit actions. The matching ``form``
item is marked submitted only when those actions succeed; a gating
failure leaves the form open, hides the note and appends an error
notification instead of handing over to completion.
"""

from typing import TYPE_CHECKING

import structlog

from src.core.exceptions import InteractionValidationError, NotFoundError
from src.domain.models.actions import FormConfig
from src.domain.models.interaction import FormSubmission
from src.domain.models.session import ConversationState
from src.domain.models.tenant import TenantConfig
from src.domain.models.thread import ChatMessage, NotificationItem, SystemItem
from src.services.actions import ActionExecutor
from src.services.template_renderer import TemplateRenderer
from ..base import TurnStage

if TYPE_CHECKING:
    from ..context import TurnContext

log = structlog.get_logger(__name__)


class FormSubmissionStage(TurnStage):
    state = ConversationState.DISPATCHING

    def __init__(
        self, tenant: TenantConfig, executor: ActionExecutor, renderer: TemplateRenderer
    ):
        self.tenant = tenant
        self.executor = executor
        self.renderer = renderer

    def applies(self, context: "TurnContext") -> bool:
        return isinstance(context.interaction, FormSubmission)

    async def process(self, context: "TurnContext") -> "TurnContext":
        submission: FormSubmission = context.interaction
        form = self.tenant.forms.get(submission.form_key) or FormConfig(
            form_key=submission.form_key
        )

        try:
            index = context.thread.find_open_form(submission.form_key, submission.item_index)
        except NotFoundError as e:
            raise InteractionValidationError(e.message) from e

        missing = [
            name
            for name in form.required_fields
            if submission.fields.get(name) in (None, "")
        ]
        if missing:
            raise InteractionValidationError(
                f"Form '{submission.form_key}' is missing required fields: {missing}"
            )

        context.session.session_data.update(submission.fields)
        context.runtime.extra["form"] = {
            "form_key": submission.form_key,
            "fields": dict(submission.fields),
            "index": index,
        }

        note = self.renderer.render(form.system_note, context.runtime.context())
        note_index = context.thread.append(
            SystemItem(message=ChatMessage(role="system", content=note))
        )

        actions = self.tenant.actions_for(form)
        if actions:
            report = await self.executor.run(actions, context.runtime)
            context.action_reports.append(report)
            if report.halted:
                # Form stays open for a resubmission; the note is hidden from the model
                context.thread.mutate(note_index, {"disabled": True})
                context.thread.append(
                    NotificationItem(content=report.error.message, level="error")
                )
                context.runtime.next_turn_requested = False
                context.completion_requested = False
                return context

        context.thread.mutate(index, {"submitted": True})
        log.info(
            "form_submitted",
            ref_code=context.ref_code,
            form_key=submission.form_key,
            field_count=len(submission.fields),
        )
        context.runtime.next_turn_requested = False
        context.completion_requested = True
        return context
