"""
FastAPI application entry point.

Run with: uvicorn src.main:app --reload
"""

import asyncio
import contextlib
from contextlib import asynccontextmanager
import uuid

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from src.api.dependencies import build_registry
from src.api.exception_handlers import setup_exception_handlers
from src.api.routes import health, sessions, websocket
from src.core.config import settings
from src.core.logging import bind_context, clear_context, configure_logging, get_logger
from src.core.tenant_loader import list_tenants
from src.persistence.database import init_database

# Configure logging before anything else
configure_logging()
log = get_logger(__name__)


# =============================================================================
# Correlation ID Middleware
# =============================================================================


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware that adds a unique correlation ID to each request.

    - Generates a UUID4 request_id for each incoming request
    - Binds it to structlog context for all logs in that request
    - Adds X-Request-ID header to responses
    """

    async def dispatch(self, request: Request, call_next):
        """Process request and add correlation ID."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

        bind_context(request_id=request_id)

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            clear_context()


# =============================================================================
# Startup validation
# =============================================================================

PROVIDER_KEYS = {
    "openai": ("openai_api_key", "OPENAI_API_KEY"),
    "anthropic": ("anthropic_api_key", "ANTHROPIC_API_KEY"),
    "deepseek": ("deepseek_api_key", "DEEPSEEK_API_KEY"),
    "kimi": ("kimi_api_key", "KIMI_API_KEY"),
}


def validate_api_keys() -> None:
    """
    Validate that the completion and moderation providers have API keys.

    Raises:
        RuntimeError: If any required API key is missing
    """
    errors = []
    completion_provider = settings.llm_completion_provider or "openai"

    in_use = [("completion", completion_provider)]
    if settings.moderation_provider != "none":
        in_use.append(("moderation", settings.moderation_provider))

    for client_type, provider in in_use:
        if provider not in PROVIDER_KEYS:
            errors.append(
                f"Unknown provider '{provider}' for {client_type}. "
                f"Supported providers: {', '.join(PROVIDER_KEYS)}"
            )
            continue
        attr_name, env_var = PROVIDER_KEYS[provider]
        if not getattr(settings, attr_name, None):
            errors.append(
                f"API key missing: {env_var} is required for {provider} "
                f"(used by {client_type} client). Set it in .env file."
            )

    if errors:
        error_msg = "API Key Validation Failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise RuntimeError(error_msg)

    log.info(
        "api_keys_validated",
        completion=completion_provider,
        moderation=settings.moderation_provider,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup validates providers, initializes the database, builds the
    session registry and starts idle eviction. Shutdown waits for
    in-flight turns and flushes every live session.
    """
    log.info(
        "application_starting",
        debug=settings.debug,
        database_path=str(settings.database_path),
        tenants=list_tenants(),
    )

    validate_api_keys()
    await init_database()

    registry = build_registry()
    app.state.registry = registry
    eviction_task = asyncio.create_task(registry.run_eviction_loop())

    log.info("application_started")

    yield

    log.info("application_shutting_down")
    eviction_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await eviction_task
    await registry.shutdown()


app = FastAPI(
    title="Session Conversation Engine",
    description="Multi-tenant conversational sessions with tool-driven actions",
    version="0.1.0",
    lifespan=lifespan,
    debug=settings.debug,
)

if settings.debug:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(CorrelationIDMiddleware)

setup_exception_handlers(app)

app.include_router(health.router, tags=["system"])
app.include_router(sessions.router)
app.include_router(websocket.router)


@app.get("/")
async def root():
    """Root endpoint with basic info."""
    return {"name": "Session Conversation Engine", "version": "0.1.0", "status": "running"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
