"""
WebSocket transport.

One connection carries one session. Inbound events:

    {"event": "init_session", "ref_code": "AB12CD34"}      (ref_code optional)
    {"event": "interaction", "interaction": {"type": "message", "text": "..."}}

Outbound events:

    {"event": "init_session_response", "session": {...}}
    {"event": "interaction_response", "ref_code": ..., "new_items": [...], ...}
    {"event": "error", "error": {"type": ..., "message": ...}}

Errors are reported as events and the connection stays open, except for
an unknown tenant. On disconnect, turns already running complete and
persist; interactions still queued behind them are dropped.
"""

import asyncio
import json
from typing import Optional, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError
import structlog

from src.api.dependencies import get_registry
from src.api.exception_handlers import error_body
from src.api.schemas import InitSessionEvent, InteractionEvent, SessionResponse
from src.core.exceptions import ConversationEngineError, TenantNotFoundError
from src.core.logging import bind_context, clear_context
from src.services.session_registry import SessionRegistry

log = structlog.get_logger(__name__)

router = APIRouter()

UNKNOWN_TENANT_CLOSE_CODE = 4404


class SessionConnection:
    """State of one WebSocket connection."""

    def __init__(self, websocket: WebSocket, registry: SessionRegistry, tenant_id: str):
        self.websocket = websocket
        self.registry = registry
        self.tenant_id = tenant_id
        self.ref_code: Optional[str] = None
        self.tasks: Set[asyncio.Task] = set()
        self._send_lock = asyncio.Lock()

    async def send(self, payload: dict) -> None:
        async with self._send_lock:
            await self.websocket.send_json(payload)

    async def send_error(self, error_type: str, message: str) -> None:
        await self.send({"event": "error", **error_body(error_type, message)})

    async def handle(self, raw: dict) -> None:
        event = raw.get("event") if isinstance(raw, dict) else None
        try:
            if event == "init_session":
                await self.init_session(InitSessionEvent.model_validate(raw))
            elif event == "interaction":
                parsed = InteractionEvent.model_validate(raw)
                task = asyncio.create_task(self.interact(parsed))
                self.tasks.add(task)
                task.add_done_callback(self.tasks.discard)
            else:
                await self.send_error("ValidationError", f"Unknown event: {event!r}")
        except PydanticValidationError as e:
            await self.send_error("ValidationError", str(e))

    async def init_session(self, event: InitSessionEvent) -> None:
        try:
            session, resumed = await self.registry.init_session(self.tenant_id, event.ref_code)
        except ConversationEngineError as e:
            await self.send_error(type(e).__name__, e.message)
            return
        self.ref_code = session.ref_code
        bind_context(ref_code=session.ref_code)
        await self.send(
            {
                "event": "init_session_response",
                "session": SessionResponse.from_session(session, resumed).model_dump(mode="json"),
            }
        )

    async def interact(self, event: InteractionEvent) -> None:
        if self.ref_code is None:
            await self.send_error("ValidationError", "init_session must be sent first")
            return
        try:
            result = await self.registry.interact(self.tenant_id, self.ref_code, event.interaction)
        except ConversationEngineError as e:
            await self.send_error(type(e).__name__, e.message)
            return
        await self.send({"event": "interaction_response", **result.to_payload()})

    def disconnect(self) -> None:
        if self.ref_code:
            self.registry.drop_queued(self.ref_code)
        # Cancelling the awaiting side leaves shielded in-flight turns running.
        for task in list(self.tasks):
            task.cancel()


@router.websocket("/ws/{tenant_id}")
async def session_socket(websocket: WebSocket, tenant_id: str):
    registry: SessionRegistry = get_registry(websocket)
    await websocket.accept()

    try:
        registry.engine_for(tenant_id)
    except TenantNotFoundError as e:
        await websocket.send_json({"event": "error", **error_body(type(e).__name__, e.message)})
        await websocket.close(code=UNKNOWN_TENANT_CLOSE_CODE)
        return

    bind_context(tenant_id=tenant_id)
    connection = SessionConnection(websocket, registry, tenant_id)
    log.info("websocket_connected")
    try:
        while True:
            text = await websocket.receive_text()
            try:
                raw = json.loads(text)
            except ValueError:
                await connection.send_error("ValidationError", "Event is not valid JSON")
                continue
            await connection.handle(raw)
    except WebSocketDisconnect:
        log.info("websocket_disconnected", ref_code=connection.ref_code)
    finally:
        connection.disconnect()
        clear_context()
