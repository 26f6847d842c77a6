"""
Structured logging configuration using structlog.

Every log line carries the bound session context (ref_code, tenant_id,
request_id) and passes through the redaction processor before rendering,
so collected user fields never reach log storage in clear text.

Output:
- JSON in production, colored console in debug mode
- One file per process start under logs/, older files culled
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import structlog
from structlog.typing import EventDict, Processor, WrappedLogger

from src.core.config import settings
from src.core.redaction import redact_mapping


LOG_FILE_PREFIX = "engine_"


def _cull_old_logs(logs_dir: Path, keep: int) -> None:
    """Delete old engine log files, keeping only the N most recent."""
    log_files = sorted(
        logs_dir.glob(f"{LOG_FILE_PREFIX}*.log"),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )
    for old_file in log_files[keep:]:
        try:
            old_file.unlink()
        except OSError as e:
            # Another process may hold the file open; not worth failing startup
            structlog.get_logger(__name__).warning(
                "log_cull_failed", path=str(old_file), error=str(e)
            )


def redact_sensitive(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """structlog processor masking configured sensitive keys at any depth."""
    return redact_mapping(event_dict, settings.redact_fields)


def configure_logging(
    log_sessions_to_keep: int = 5, logs_dir: Optional[Path] = None
) -> None:
    """Configure structlog for the application.

    Call this once at application startup, before any logging.

    Args:
        log_sessions_to_keep: Number of recent log files to retain
        logs_dir: Directory for log files (default: ./logs)
    """
    logs_dir = logs_dir or Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    # keep-1 to make room for the new file
    _cull_old_logs(logs_dir, keep=max(log_sessions_to_keep - 1, 0))

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = logs_dir / f"{LOG_FILE_PREFIX}{timestamp}.log"

    shared_processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
        redact_sensitive,
    ]

    if settings.debug:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        processors = shared_processors + [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]

    # Clear any existing handlers first (needed for reconfiguration in tests)
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    root_logger.setLevel(logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(console_handler)

    file_handler = logging.FileHandler(log_file, mode="w")
    file_handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(file_handler)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a logger instance with the given name.

    Usage:
        from src.core.logging import get_logger

        log = get_logger(__name__)
        log.info("turn_complete", ref_code=session.ref_code)
    """
    return structlog.get_logger(name)


def bind_context(**kwargs) -> None:
    """
    Bind context variables that will be included in all subsequent logs.

        bind_context(ref_code=session.ref_code, tenant_id=session.tenant_id)

    Context lives in contextvars, so it is scoped to the current task.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear all bound context variables from the logging context."""
    structlog.contextvars.clear_contextvars()
