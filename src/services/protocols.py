"""
Service protocol definitions (interfaces).

Collaborator boundaries of the conversation engine, expressed with
typing.Protocol so fakes in tests and alternative backends need only
match the shape.
"""

from typing import Any, Dict, Optional, Protocol

from src.domain.models.session import Session


class ISessionStore(Protocol):
    """
    Document store for whole sessions keyed by ref_code.

    ``save`` is an idempotent upsert; last write wins at document
    granularity.
    """

    async def load(self, ref_code: str) -> Optional[Session]:
        """Return the stored session, or None if the ref_code is unknown."""
        ...

    async def save(self, session: Session) -> None:
        """Upsert the whole session document."""
        ...


class INotifier(Protocol):
    """Outbound notification delivery (email relay or equivalent)."""

    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        thread_id: Optional[str] = None,
    ) -> str:
        """
        Deliver one notification.

        Returns:
            Provider delivery id

        Raises:
            NotificationDeliveryError: Delivery failed
        """
        ...


class ICollaboratorGateway(Protocol):
    """Named operations on configured external collaborators."""

    async def invoke(
        self,
        collaborator: str,
        operation: str,
        arguments: Dict[str, Any],
        as_resource: bool = False,
    ) -> Any:
        """
        Call ``collaborator.operation`` with resolved arguments.

        ``as_resource`` sends the arguments as query parameters of a read
        instead of a JSON body.

        Raises:
            ExternalCollaboratorError: Call failed or collaborator unknown
        """
        ...
