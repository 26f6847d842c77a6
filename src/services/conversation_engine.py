"""
Session conversation engine (orchestrator), one instance per tenant.

Main entry point for interactions. Each interaction runs through a
TurnPipeline over a deep copy of the session; the engine returns that
copy only when every stage, persistence included, has completed.

Failure handling:
- InteractionValidationError: rejected, the session is left untouched
- Transient failure after retries (completion, moderation, persistence),
  a non-retryable completion error, or an unexpected error: the turn is
  aborted, the pre-turn session is kept and the caller receives an error
  notification that is not part of the persisted thread. Effect keys of
  at-most-once actions that already ran are carried over and saved with
  the pre-turn thread, so a retry of the turn cannot repeat them.
"""

from datetime import datetime, timezone
from typing import Optional, Tuple

import structlog

from src.core.config import EngineConfig, engine_config as default_engine_config, settings
from src.core.exceptions import (
    ConversationEngineError,
    InteractionValidationError,
    NotFoundError,
    SessionClosedError,
    ValidationError,
)
from src.core.logging import bind_context
from src.core.retry import Sleep, retry_async
from src.domain.models.interaction import Interaction
from src.domain.models.session import ConversationState, Session, SessionStatus
from src.domain.models.tenant import TenantConfig
from src.domain.models.thread import NotificationItem
from src.llm.client import CompletionClient
from src.llm.moderation import ModerationClient
from src.services.actions import ActionRuntime, build_executor
from src.services.protocols import ICollaboratorGateway, INotifier, ISessionStore
from src.services.template_context import TemplateContextBuilder
from src.services.template_renderer import TemplateRenderer
from src.services.thread_store import ThreadStore
from src.services.tool_dispatcher import ToolCallDispatcher
from src.services.turn_pipeline import TurnContext, TurnPipeline, TurnResult
from src.services.turn_pipeline.stages import (
    ButtonActionStage,
    CompletionStage,
    DispatchStage,
    FormSubmissionStage,
    ModerationStage,
    PersistenceStage,
)

log = structlog.get_logger(__name__)

TRANSIENT_FAILURE_MESSAGE = (
    "Sorry, something went wrong while processing your message. Please try again."
)


class SessionConversationEngine:
    """Orchestrates turns for every session of one tenant.

    The engine holds only read-only configuration and collaborator
    clients; sessions are passed in and returned, never stored here.
    """

    def __init__(
        self,
        tenant: TenantConfig,
        completion_client: CompletionClient,
        moderation_client: ModerationClient,
        store: ISessionStore,
        notifier: INotifier,
        gateway: ICollaboratorGateway,
        config: Optional[EngineConfig] = None,
        renderer: Optional[TemplateRenderer] = None,
        sleep: Optional[Sleep] = None,
    ):
        """
        Initialize the engine and build its pipeline.

        Args:
            tenant: Validated tenant configuration
            completion_client: Completion service client (single attempt per call)
            moderation_client: Moderation service client
            store: Session document store
            notifier: Notification delivery for send_notification actions
            gateway: External collaborator gateway for invoke_external_* actions
            config: Retry/turn policy (defaults to engine_config.yaml)
            renderer: Template renderer (defaults to a sandboxed Jinja2 renderer)
            sleep: Backoff sleep function (injectable for tests)

        Raises:
            ConfigurationError: Tenant references an unknown action kind
        """
        self.tenant = tenant
        self.config = config or default_engine_config
        self.store = store
        self.sleep = sleep
        self.renderer = renderer or TemplateRenderer()
        self.context_builder = TemplateContextBuilder(tenant)

        self.executor = build_executor(
            renderer=self.renderer,
            notifier=notifier,
            gateway=gateway,
            notification_retry=self.config.notification_retry,
            sensitive_fields=tenant.sensitive_fields(settings.redact_fields),
            sleep=sleep,
        )
        self.executor.validate(tenant.all_actions())

        self.dispatcher = ToolCallDispatcher(
            tenant, self.executor, self.renderer, self.context_builder
        )
        self.pipeline = TurnPipeline(
            [
                ModerationStage(
                    moderation_client,
                    self.config.moderation_retry,
                    enabled=tenant.moderation_enabled,
                    sleep=sleep,
                ),
                FormSubmissionStage(tenant, self.executor, self.renderer),
                ButtonActionStage(tenant, self.executor),
                CompletionStage(
                    tenant,
                    completion_client,
                    self.dispatcher,
                    self.renderer,
                    self.context_builder,
                    self.config.completion_retry,
                    sleep=sleep,
                ),
                DispatchStage(self.dispatcher, self.config.turn.max_completion_rounds),
                PersistenceStage(store, self.config.persistence_retry, sleep=sleep),
            ]
        )

        log.info(
            "conversation_engine_initialized",
            tenant_id=tenant.tenant_id,
            tools=[t.name for t in tenant.tools],
            pipeline_stages=len(self.pipeline.stages),
        )

    def _runtime(self, session: Session) -> ActionRuntime:
        return ActionRuntime(
            session=session,
            thread=ThreadStore(session),
            tenant=self.tenant,
            build_context=self.context_builder.build,
        )

    async def save(self, session: Session) -> None:
        await retry_async(
            lambda: self.store.save(session),
            policy=self.config.persistence_retry,
            operation_name="persist_session",
            sleep=self.sleep,
        )

    async def create_session(
        self, ref_code: Optional[str] = None, session_type: Optional[str] = None
    ) -> Session:
        """
        Create, seed and persist a new session.

        The tenant's on_start actions run once (greeting, initial forms).
        A failing on_start action is logged and does not block creation.
        """
        type_name = session_type or self.tenant.default_session_type
        if type_name not in self.tenant.session_types:
            raise ValidationError(f"Unknown session type '{type_name}'")

        fields = dict(
            tenant_id=self.tenant.tenant_id,
            session_type=type_name,
            mode_tags=list(self.tenant.session_type(type_name).mode_tags),
        )
        if ref_code:
            fields["ref_code"] = ref_code
        session = Session(**fields)
        bind_context(ref_code=session.ref_code, tenant_id=session.tenant_id)

        if self.tenant.on_start:
            report = await self.executor.run(self.tenant.on_start, self._runtime(session))
            if report.failures:
                log.warning(
                    "session_seed_incomplete",
                    failed_actions=[o.action for o in report.failures],
                )

        session.state = ConversationState.IDLE
        await self.save(session)
        log.info("session_created", thread_length=len(session.thread))
        return session

    async def handle_interaction(
        self, session: Session, interaction: Interaction
    ) -> Tuple[Session, TurnResult]:
        """
        Run one turn.

        Returns:
            (session, result): the committed post-turn session, or the
            untouched pre-turn session when the turn was aborted

        Raises:
            SessionClosedError: Session is closed or archived
            InteractionValidationError: Payload does not match the thread
        """
        if session.is_closed:
            raise SessionClosedError(f"Session {session.ref_code} is {session.status.value}")

        bind_context(ref_code=session.ref_code, tenant_id=session.tenant_id)
        working = session.model_copy(deep=True)
        runtime = self._runtime(working)
        context = TurnContext(
            session=working,
            interaction=interaction,
            runtime=runtime,
            thread_start=len(working.thread),
        )

        try:
            result = await self.pipeline.execute(context)
        except InteractionValidationError:
            raise
        except (ValidationError, NotFoundError) as e:
            raise InteractionValidationError(e.message) from e
        except ConversationEngineError as e:
            return session, await self._abort(session, working, e)
        except Exception as e:
            log.exception("turn_failed_unexpectedly", error_type=type(e).__name__)
            return session, await self._abort(session, working, e)

        return working, result

    async def _abort(self, session: Session, working: Session, error: Exception) -> TurnResult:
        carried = [
            key
            for key in working.delivery.completed_effects
            if not session.delivery.has_completed(key)
        ]
        for key in carried:
            session.delivery.mark_completed(key)
        session.state = ConversationState.IDLE
        if carried:
            # The thread is unchanged; only the effect markers are new
            try:
                await self.save(session)
            except ConversationEngineError as e:
                log.error(
                    "completed_effects_not_persisted",
                    effects=carried,
                    error_type=type(e).__name__,
                )

        log.warning(
            "turn_aborted",
            error_type=type(error).__name__,
            error=getattr(error, "message", str(error)),
            discarded_items=len(working.thread) - len(session.thread),
        )
        return TurnResult(
            ref_code=session.ref_code,
            new_items=[NotificationItem(content=TRANSIENT_FAILURE_MESSAGE, level="error")],
            state=session.state,
            persisted=False,
            error=type(error).__name__,
        )

    async def close_session(self, session: Session) -> Session:
        """Mark the session closed and persist it. Idempotent."""
        closed = session.model_copy(deep=True)
        closed.status = SessionStatus.CLOSED
        closed.state = ConversationState.CLOSED
        closed.updated_at = datetime.now(timezone.utc)
        await self.save(closed)
        log.info("session_closed", ref_code=closed.ref_code)
        return closed

    async def archive_session(self, session: Session) -> Session:
        """Persist an idle session as archived (registry eviction)."""
        archived = session.model_copy(deep=True)
        if archived.status == SessionStatus.ACTIVE:
            archived.status = SessionStatus.ARCHIVED
        await self.save(archived)
        return archived
