"""
Button action stage.

Runs the action list bound to a report button directly, without a
completion call unless the list itself requests one. On success the
source report can be marked submitted; a gating failure leaves it open and
appends an error notification.
"""

from typing import TYPE_CHECKING

import structlog

from src.core.exceptions import InteractionValidationError
from src.domain.models.interaction import ButtonClick
from src.domain.models.session import ConversationState
from src.domain.models.tenant import TenantConfig
from src.domain.models.thread import NotificationItem
from src.services.actions import ActionExecutor
from ..base import TurnStage

if TYPE_CHECKING:
    from ..context import TurnContext

log = structlog.get_logger(__name__)


class ButtonActionStage(TurnStage):
    state = ConversationState.DISPATCHING

    def __init__(self, tenant: TenantConfig, executor: ActionExecutor):
        self.tenant = tenant
        self.executor = executor

    def applies(self, context: "TurnContext") -> bool:
        return isinstance(context.interaction, ButtonClick)

    async def process(self, context: "TurnContext") -> "TurnContext":
        click: ButtonClick = context.interaction
        button = self.tenant.buttons.get(click.button_id)
        if button is None:
            raise InteractionValidationError(f"Unknown button '{click.button_id}'")

        report_index = context.thread.find_report_with_button(click.button_id, click.item_index)
        if click.item_index is not None and report_index is None:
            raise InteractionValidationError(
                f"No report with button '{click.button_id}' at index {click.item_index}"
            )

        report_key = None
        if report_index is not None:
            report_item = context.session.thread[report_index]
            if report_item.submitted:
                raise InteractionValidationError(
                    f"Report '{report_item.report_key}' was already submitted"
                )
            report_key = report_item.report_key

        context.runtime.extra["button"] = {"id": button.id, "report_key": report_key}
        report = await self.executor.run(self.tenant.actions_for(button), context.runtime)
        context.action_reports.append(report)

        if report.halted:
            context.thread.append(NotificationItem(content=report.error.message, level="error"))
            context.runtime.next_turn_requested = False
            context.completion_requested = False
            return context

        if button.mark_submitted and report_index is not None:
            context.thread.mutate(report_index, {"submitted": True})
            context.session.reports.setdefault(report_key, {})["submitted"] = True

        log.info(
            "button_actions_complete",
            ref_code=context.ref_code,
            button_id=button.id,
            report_key=report_key,
            next_turn=context.runtime.next_turn_requested,
        )
        context.completion_requested = context.runtime.next_turn_requested
        context.runtime.next_turn_requested = False
        return context
