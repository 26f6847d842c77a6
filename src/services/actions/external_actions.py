"""
Actions that call out of the process: notifications and collaborators.

These are the suspension points inside an action list. Notification
delivery is retried with the configured bounded backoff; collaborator
calls make one attempt with the collaborator's own timeout.
"""

from typing import Any, Dict, Optional

from src.core.config import RetryConfig
from src.core.exceptions import ActionExecutionError
from src.core.retry import Sleep, retry_async
from src.domain.models.actions import Action, ActionKind
from src.services.actions.base import ActionHandler, ActionRuntime
from src.services.protocols import ICollaboratorGateway, INotifier


class SendNotificationHandler(ActionHandler):
    """Send a notification through the notifier.

    params:
        recipient: address (``to`` accepted as an alias)
        subject: rendered subject
        body: rendered body
        thread_id: defaults to the session ref_code

    Returns the delivery id.
    """

    kind = ActionKind.SEND_NOTIFICATION

    def __init__(self, notifier: INotifier, retry: RetryConfig, sleep: Optional[Sleep] = None):
        self.notifier = notifier
        self.retry = retry
        self.sleep = sleep

    async def run(self, action: Action, params: Dict[str, Any], runtime: ActionRuntime) -> Any:
        recipient = params.get("recipient") or params.get("to")
        if not recipient:
            raise ActionExecutionError("Notification recipient resolved empty", action.label)
        subject = str(params.get("subject") or "")
        body = str(params.get("body") or "")
        thread_id = params.get("thread_id") or runtime.session.ref_code

        return await retry_async(
            lambda: self.notifier.send(str(recipient), subject, body, thread_id),
            policy=self.retry,
            operation_name="send_notification",
            sleep=self.sleep,
        )


class InvokeExternalHandler(ActionHandler):
    """Call a named operation on a configured collaborator.

    params:
        collaborator: collaborator name from tenant configuration
        operation: operation name on that collaborator
        arguments: mapping sent as JSON body (tool) or query (resource)
    """

    def __init__(self, gateway: ICollaboratorGateway, as_resource: bool = False):
        self.gateway = gateway
        self.as_resource = as_resource
        self.kind = (
            ActionKind.INVOKE_EXTERNAL_RESOURCE if as_resource else ActionKind.INVOKE_EXTERNAL_TOOL
        )

    async def run(self, action: Action, params: Dict[str, Any], runtime: ActionRuntime) -> Any:
        collaborator = params.get("collaborator")
        operation = params.get("operation")
        if not collaborator or not operation:
            raise ActionExecutionError(
                f"{self.kind} requires 'collaborator' and 'operation'", action.label
            )
        arguments = params.get("arguments") or {}
        if not isinstance(arguments, dict):
            raise ActionExecutionError("'arguments' must resolve to a mapping", action.label)

        result = await self.gateway.invoke(
            collaborator, operation, arguments, as_resource=self.as_resource
        )
        # Available to later actions even without an explicit result_key
        runtime.store_result(action.result_key or operation, result)
        return result
