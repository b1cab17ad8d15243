"""
Structured JSON logging with correlation IDs.

Uses structlog to produce machine-parseable JSON logs in production
and human-readable colored output in development. Every log entry
automatically includes the ``trace_id`` of the sync run or API request
and, while a record is being worked on, its agent and execution IDs.

Usage:
    from src.logging_config import get_logger

    logger = get_logger(__name__)
    logger.info("execution_reconciled", execution_id="exec-123", status="completed")
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any

import structlog

from src.config import get_settings

# ── Context variables for per-run / per-record correlation ───────
# The orchestrator sets these while it works on an agent or a record,
# so every log entry below it carries the IDs without passing them around.
trace_id_var: ContextVar[str] = ContextVar("trace_id", default="")
agent_id_var: ContextVar[str] = ContextVar("agent_id", default="")
execution_id_var: ContextVar[str] = ContextVar("execution_id", default="")


def _inject_context_vars(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Inject trace, agent and execution IDs from context vars into every log entry."""
    trace_id = trace_id_var.get("")
    if trace_id:
        event_dict["trace_id"] = trace_id

    agent_id = agent_id_var.get("")
    if agent_id:
        event_dict.setdefault("agent_id", agent_id)

    execution_id = execution_id_var.get("")
    if execution_id:
        event_dict.setdefault("execution_id", execution_id)

    return event_dict


def generate_trace_id() -> str:
    """Generate a short, unique trace ID for sync-run/request correlation."""
    return uuid.uuid4().hex[:12]


def setup_logging() -> None:
    """
    Configure structlog and stdlib logging.

    - **Production**: JSON output to stdout (for log aggregators).
    - **Development**: Colored, human-readable console output.
    """
    settings = get_settings()
    is_prod = settings.is_production

    # ── Shared processors applied to every log entry ─────────
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _inject_context_vars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if is_prod:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # ── Configure stdlib root logger so third-party libs also
    #    emit structured output through our pipeline ──────────
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())

    # Quiet down noisy third-party loggers
    for noisy in ("httpx", "httpcore", "hpack", "postgrest", "urllib3", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Return a named, structured logger.

    Args:
        name: Typically ``__name__`` of the calling module.

    Returns:
        A bound structlog logger with all shared processors attached.
    """
    return structlog.get_logger(name)
