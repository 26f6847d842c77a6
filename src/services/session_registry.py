"""
Session registry: the live session table.

Maps ``ref_code -> SessionWorker`` and ``tenant_id -> engine``. Every
operation on a session runs under that session's worker lock, so turns
for one ref_code never overlap while different sessions proceed in
parallel.

A client disconnect never cancels a turn that has started: each turn runs
as its own task and callers await it through ``asyncio.shield``. Only
interactions still waiting for the lock are dropped (``drop_queued``).

Idle eviction is an explicit policy (``evict_idle(now)``) driven by an
injectable clock; the background loop just calls it periodically. A
session is archived under its worker lock, so eviction and turns never
overlap; a turn queued behind an eviction reloads the archived session.
"""

import asyncio
import functools
import time
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

import structlog

from src.core.config import RegistryConfig, engine_config
from src.core.exceptions import SessionNotFoundError
from src.domain.models.interaction import Interaction
from src.domain.models.session import Session, SessionStatus, generate_ref_code
from src.services.conversation_engine import SessionConversationEngine
from src.services.protocols import ISessionStore
from src.services.turn_pipeline import TurnResult

log = structlog.get_logger(__name__)

Clock = Callable[[], float]
EngineFactory = Callable[[str], SessionConversationEngine]



class WorkerEvictedError(Exception):
    """The worker was evicted while the operation waited for its lock."""

    pass


class SessionWorker:
    """Owned handle for one live session.

    The session object is replaced (never mutated from outside) after
    each committed turn. ``lock`` serializes turns; ``pending`` tracks
    tasks that are queued on the lock but have not started yet.
    """

    def __init__(self, session: Session, now: float):
        self.session = session
        self.lock = asyncio.Lock()
        self.last_activity = now
        self.pending: Set[asyncio.Task] = set()
        self.started: Set[asyncio.Task] = set()
        self.evicted = False

    @property
    def ref_code(self) -> str:
        return self.session.ref_code

    @property
    def busy(self) -> bool:
        return self.lock.locked() or bool(self.pending)

    async def submit(self, operation: Callable[[], Awaitable], clock: Clock):
        """Run ``operation`` under the worker lock.

        The returned awaitable is shielded: cancelling the caller does not
        cancel a turn that already holds the lock.
        """

        async def runner():
            async with self.lock:
                self.pending.discard(task)
                if self.evicted:
                    raise WorkerEvictedError(self.ref_code)
                self.started.add(task)
                try:
                    return await operation()
                finally:
                    self.started.discard(task)
                    self.last_activity = clock()

        task = asyncio.get_running_loop().create_task(runner())
        self.pending.add(task)
        task.add_done_callback(self.pending.discard)
        return await asyncio.shield(task)

    def drop_queued(self) -> int:
        dropped = 0
        for task in list(self.pending):
            if task not in self.started and not task.done():
                task.cancel()
                dropped += 1
        self.pending.clear()
        return dropped


class SessionRegistry:
    """Live sessions and per-tenant engines."""

    def __init__(
        self,
        engine_factory: EngineFactory,
        store: ISessionStore,
        config: Optional[RegistryConfig] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Args:
            engine_factory: Builds the engine for a tenant id; raises
                TenantNotFoundError for unknown tenants
            store: Session store used to resume sessions not in memory
            config: Idle timeout and eviction interval
            clock: Monotonic time source (injectable for tests)
        """
        self.engine_factory = engine_factory
        self.store = store
        self.config = config or engine_config.registry
        self.clock = clock or time.monotonic
        self.engines: Dict[str, SessionConversationEngine] = {}
        self.workers: Dict[str, SessionWorker] = {}
        self._table_lock = asyncio.Lock()

    def engine_for(self, tenant_id: str) -> SessionConversationEngine:
        engine = self.engines.get(tenant_id)
        if engine is None:
            engine = self.engine_factory(tenant_id)
            self.engines[tenant_id] = engine
        return engine

    async def _worker(self, tenant_id: str, ref_code: str) -> SessionWorker:
        """Live worker for ref_code, reloading an evicted session from the store."""
        async with self._table_lock:
            worker = self.workers.get(ref_code)
            if worker is None:
                stored = await self.store.load(ref_code)
                if stored is not None and stored.tenant_id == tenant_id:
                    if stored.status == SessionStatus.ARCHIVED:
                        stored.status = SessionStatus.ACTIVE
                    worker = SessionWorker(stored, self.clock())
                    self.workers[ref_code] = worker
        if worker is None or worker.session.tenant_id != tenant_id:
            raise SessionNotFoundError(f"Session {ref_code} not found")
        return worker

    async def init_session(
        self, tenant_id: str, ref_code: Optional[str] = None
    ) -> Tuple[Session, bool]:
        """
        Resume or create a session.

        Resolution order: live table, then store, then a fresh session. An
        unknown ref_code, or one that belongs to another tenant, yields a
        fresh session with a new ref_code; it is not an error.

        Returns:
            (session, resumed)
        """
        engine = self.engine_for(tenant_id)

        async with self._table_lock:
            if ref_code:
                worker = self.workers.get(ref_code)
                if worker is not None and worker.session.tenant_id == tenant_id:
                    worker.last_activity = self.clock()
                    log.info("session_resumed", ref_code=ref_code, source="memory")
                    return worker.session, True

                stored = await self.store.load(ref_code)
                if stored is not None and stored.tenant_id == tenant_id:
                    if stored.status == SessionStatus.ARCHIVED:
                        stored.status = SessionStatus.ACTIVE
                    self.workers[ref_code] = SessionWorker(stored, self.clock())
                    log.info("session_resumed", ref_code=ref_code, source="store")
                    return stored, True

                log.info(
                    "session_ref_unknown",
                    ref_code=ref_code,
                    tenant_id=tenant_id,
                    tenant_mismatch=stored is not None,
                )

            session = await engine.create_session(ref_code=await self._fresh_ref_code())
            self.workers[session.ref_code] = SessionWorker(session, self.clock())
            return session, False

    async def _fresh_ref_code(self) -> str:
        while True:
            candidate = generate_ref_code()
            if candidate in self.workers:
                continue
            if await self.store.load(candidate) is None:
                return candidate

    def live_session(self, ref_code: str) -> Optional[Session]:
        worker = self.workers.get(ref_code)
        return worker.session if worker else None

    async def get_session(self, tenant_id: str, ref_code: str) -> Session:
        """Current session, from memory if live, else from the store."""
        session = self.live_session(ref_code) or await self.store.load(ref_code)
        if session is None or session.tenant_id != tenant_id:
            raise SessionNotFoundError(f"Session {ref_code} not found")
        return session

    async def interact(
        self, tenant_id: str, ref_code: str, interaction: Interaction
    ) -> TurnResult:
        """
        Run one interaction, serialized per ref_code.

        Raises:
            SessionNotFoundError: ref_code unknown for this tenant
            SessionClosedError: Session was closed
            InteractionValidationError: Payload rejected
        """
        engine = self.engine_for(tenant_id)

        async def turn(worker: SessionWorker) -> TurnResult:
            session, result = await engine.handle_interaction(worker.session, interaction)
            worker.session = session
            return result

        return await self._submit(tenant_id, ref_code, turn)

    async def close_session(self, tenant_id: str, ref_code: str) -> Session:
        engine = self.engine_for(tenant_id)

        async def close(worker: SessionWorker) -> Session:
            if worker.session.status == SessionStatus.CLOSED:
                return worker.session
            worker.session = await engine.close_session(worker.session)
            return worker.session

        return await self._submit(tenant_id, ref_code, close)

    async def _submit(
        self,
        tenant_id: str,
        ref_code: str,
        operation: Callable[[SessionWorker], Awaitable],
    ):
        """Run ``operation`` on the live worker, following it across an eviction."""
        while True:
            worker = await self._worker(tenant_id, ref_code)
            try:
                return await worker.submit(functools.partial(operation, worker), self.clock)
            except WorkerEvictedError:
                log.info("session_reloaded_after_eviction", ref_code=ref_code)

    def drop_queued(self, ref_code: str) -> int:
        """Cancel queued interactions for a disconnected client."""
        worker = self.workers.get(ref_code)
        if worker is None:
            return 0
        dropped = worker.drop_queued()
        if dropped:
            log.info("queued_interactions_dropped", ref_code=ref_code, dropped=dropped)
        return dropped

    def idle_sessions(self, now: Optional[float] = None) -> List[str]:
        now = self.clock() if now is None else now
        return [
            ref_code
            for ref_code, worker in self.workers.items()
            if not worker.busy and now - worker.last_activity >= self.config.idle_timeout_seconds
        ]

    async def evict_idle(self, now: Optional[float] = None) -> List[str]:
        """
        Persist and remove sessions idle for at least the configured timeout.

        Active sessions are stored as archived; closed sessions keep their
        status. A session whose save fails stays in memory for the next pass.
        """
        now = self.clock() if now is None else now
        evicted = []
        for ref_code in self.idle_sessions(now):
            if await self._evict(ref_code, now):
                evicted.append(ref_code)

        if evicted:
            log.info("sessions_evicted", count=len(evicted), ref_codes=evicted)
        return evicted

    async def _evict(self, ref_code: str, now: float) -> bool:
        worker = self.workers.get(ref_code)
        if worker is None or worker.busy:
            return False
        async with worker.lock:
            # Re-check: a turn may have been queued or run since the scan
            if (
                self.workers.get(ref_code) is not worker
                or worker.pending
                or now - worker.last_activity < self.config.idle_timeout_seconds
            ):
                return False
            engine = self.engine_for(worker.session.tenant_id)
            try:
                await engine.archive_session(worker.session)
            except Exception as e:
                log.error("session_eviction_failed", ref_code=ref_code, error=str(e))
                return False
            async with self._table_lock:
                worker.evicted = True
                self.workers.pop(ref_code, None)
        return True

    async def run_eviction_loop(self) -> None:
        """Periodic eviction; runs until cancelled."""
        while True:
            await asyncio.sleep(self.config.eviction_interval_seconds)
            try:
                await self.evict_idle()
            except Exception:
                log.exception("eviction_pass_failed")

    async def shutdown(self) -> None:
        """Wait for in-flight turns, then flush every live session."""
        for ref_code, worker in list(self.workers.items()):
            worker.drop_queued()
            async with worker.lock:
                engine = self.engine_for(worker.session.tenant_id)
                try:
                    await engine.save(worker.session)
                except Exception as e:
                    log.error("session_flush_failed", ref_code=ref_code, error=str(e))
        log.info("registry_shutdown", sessions=len(self.workers))
        self.workers.clear()

    def get_snapshot(self) -> dict:
        return {
            "live_sessions": len(self.workers),
            "busy_sessions": sum(1 for w in self.workers.values() if w.busy),
            "tenants": sorted(self.engines),
        }
