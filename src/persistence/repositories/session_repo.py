"""Session repository: whole-document session store on SQLite.

``save`` is an idempotent upsert keyed by ref_code; the last write wins at
document granularity. Metrics are stored for convenience but recomputed
from the thread on ``load``, so a stale or tampered snapshot never
survives a reload.
"""

import sqlite3
from pathlib import Path
from typing import List, Optional, Union

import aiosqlite
import structlog
from pydantic import ValidationError as PydanticValidationError

from src.core.exceptions import PersistenceError
from src.domain.models.session import Session, SessionStatus

log = structlog.get_logger(__name__)


class SessionRepository:
    """Repository for session documents."""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = db_path

    async def save(self, session: Session) -> None:
        """Insert or replace the session document."""
        document = session.model_dump_json()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """INSERT INTO sessions (
                        ref_code, tenant_id, session_type, status, thread_length,
                        document, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(ref_code) DO UPDATE SET
                        status = excluded.status,
                        session_type = excluded.session_type,
                        thread_length = excluded.thread_length,
                        document = excluded.document,
                        updated_at = excluded.updated_at""",
                    (
                        session.ref_code,
                        session.tenant_id,
                        session.session_type,
                        session.status.value,
                        len(session.thread),
                        document,
                        session.created_at.isoformat(),
                        session.updated_at.isoformat(),
                    ),
                )
                await db.commit()
        except (sqlite3.Error, OSError) as e:
            log.error("session_save_failed", ref_code=session.ref_code, error=str(e))
            raise PersistenceError(f"Failed to save session {session.ref_code}: {e}") from e

        log.debug(
            "session_saved",
            ref_code=session.ref_code,
            status=session.status.value,
            thread_length=len(session.thread),
        )

    async def load(self, ref_code: str) -> Optional[Session]:
        """Load a session by ref_code, or None if unknown."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT document FROM sessions WHERE ref_code = ?", (ref_code,)
                )
                row = await cursor.fetchone()
        except (sqlite3.Error, OSError) as e:
            log.error("session_load_failed", ref_code=ref_code, error=str(e))
            raise PersistenceError(f"Failed to load session {ref_code}: {e}") from e

        if not row:
            return None
        return self._row_to_session(row)

    async def list_by_tenant(
        self, tenant_id: str, status: Optional[SessionStatus] = None, limit: int = 50
    ) -> List[dict]:
        """Lightweight session listing (no documents)."""
        query = (
            "SELECT ref_code, tenant_id, session_type, status, thread_length, "
            "created_at, updated_at FROM sessions WHERE tenant_id = ?"
        )
        args: list = [tenant_id]
        if status is not None:
            query += " AND status = ?"
            args.append(status.value)
        query += " ORDER BY updated_at DESC LIMIT ?"
        args.append(limit)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(query, args)
                rows = await cursor.fetchall()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"Failed to list sessions: {e}") from e
        return [dict(row) for row in rows]

    def _row_to_session(self, row: aiosqlite.Row) -> Session:
        try:
            session = Session.model_validate_json(row["document"])
        except PydanticValidationError as e:
            raise PersistenceError(f"Stored session document is invalid: {e}") from e
        session.recompute_metrics()
        return session
