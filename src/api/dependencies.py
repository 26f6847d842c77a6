"""Dependency injection for API routes."""

from functools import lru_cache
from typing import Annotated, Optional

from fastapi import Depends
from starlette.requests import HTTPConnection

from src.core.config import settings
from src.core.tenant_loader import load_tenant_config
from src.llm.client import CompletionClient, get_completion_client
from src.llm.moderation import ModerationClient, get_moderation_client
from src.persistence.repositories.session_repo import SessionRepository
from src.services.collaborators import HttpCollaboratorGateway
from src.services.conversation_engine import SessionConversationEngine
from src.services.notifier import get_notifier
from src.services.protocols import ISessionStore
from src.services.session_registry import SessionRegistry


def get_session_repository() -> SessionRepository:
    """FastAPI dependency injection for SessionRepository.

    Each request gets a new repository bound to the configured database.
    """
    return SessionRepository(str(settings.database_path))


@lru_cache(maxsize=1)
def get_shared_completion_client() -> CompletionClient:
    """Cached completion client, created once per process."""
    return get_completion_client()


@lru_cache(maxsize=1)
def get_shared_moderation_client() -> ModerationClient:
    """Cached moderation client, created once per process."""
    return get_moderation_client()


def build_registry(store: Optional[ISessionStore] = None) -> SessionRegistry:
    """Build the session registry with engines created lazily per tenant.

    Tenant configuration is loaded (and validated) the first time a tenant
    is used; an unknown tenant raises TenantNotFoundError.
    """
    store = store or get_session_repository()
    notifier = get_notifier()

    def engine_factory(tenant_id: str) -> SessionConversationEngine:
        tenant = load_tenant_config(tenant_id)
        return SessionConversationEngine(
            tenant=tenant,
            completion_client=get_shared_completion_client(),
            moderation_client=get_shared_moderation_client(),
            store=store,
            notifier=notifier,
            gateway=HttpCollaboratorGateway(tenant.collaborators),
        )

    return SessionRegistry(engine_factory=engine_factory, store=store)


def get_registry(connection: HTTPConnection) -> SessionRegistry:
    """Registry created in the application lifespan."""
    return connection.app.state.registry


# Type aliases for dependency injection
SessionRepoDep = Annotated[SessionRepository, Depends(get_session_repository)]
RegistryDep = Annotated[SessionRegistry, Depends(get_registry)]
