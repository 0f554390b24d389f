"""
Structured Logging Configuration with structlog

Outputs JSON logs that are searchable in Azure Monitor, ELK, or CloudWatch.
Every log includes: run_id, stage, provider, version and timestamp when known.
"""

import sys
import time
import asyncio
import logging
import structlog
from typing import Optional, Any, Dict
from datetime import datetime, timezone
from contextvars import ContextVar
from functools import wraps

# Context variables for run-scoped logging
run_id_var: ContextVar[Optional[str]] = ContextVar("run_id", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)
provider_var: ContextVar[Optional[str]] = ContextVar("provider", default=None)

# Application version
APP_VERSION = "1.0.0"


def add_app_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add application context to every log entry."""
    event_dict["version"] = APP_VERSION

    for key, var in (("run_id", run_id_var), ("stage", stage_var), ("provider", provider_var)):
        value = var.get()
        if value and key not in event_dict:
            event_dict[key] = value

    return event_dict


def add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add ISO format timestamp."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True,
):
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: If True, output JSON; if False, output colored console logs
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Silence noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            add_timestamp,
            add_app_context,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.UnicodeDecoder(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class LogContext:
    """
    Context manager for setting logging context.

    Usage:
        with LogContext(run_id="abc123", stage="vision"):
            logger.info("stage_started")
    """

    def __init__(
        self,
        run_id: Optional[str] = None,
        stage: Optional[str] = None,
        provider: Optional[str] = None
    ):
        self.run_id = run_id
        self.stage = stage
        self.provider = provider
        self._tokens = []

    def __enter__(self):
        if self.run_id:
            self._tokens.append((run_id_var, run_id_var.set(self.run_id)))
        if self.stage:
            self._tokens.append((stage_var, stage_var.set(self.stage)))
        if self.provider:
            self._tokens.append((provider_var, provider_var.set(self.provider)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
        return False


def set_run_context(run_id: str, stage: Optional[str] = None):
    """Set the current run context for logging."""
    run_id_var.set(run_id)
    if stage:
        stage_var.set(stage)


def clear_run_context():
    """Clear the current run context."""
    run_id_var.set(None)
    stage_var.set(None)
    provider_var.set(None)


def with_logging(event_prefix: str):
    """
    Decorator that logs start, completion and failure of a coroutine.

    Usage:
        @with_logging("analysis_run")
        async def run(self, request):
            ...
    """
    def decorator(func):
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            logger = get_logger(func.__module__)
            logger.info(f"{event_prefix}_started")
            start = time.perf_counter()

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"{event_prefix}_failed",
                    duration_ms=int((time.perf_counter() - start) * 1000),
                    error=str(e),
                    error_type=type(e).__name__
                )
                raise

            logger.info(
                f"{event_prefix}_completed",
                duration_ms=int((time.perf_counter() - start) * 1000)
            )
            return result

        if not asyncio.iscoroutinefunction(func):
            raise TypeError("with_logging only wraps coroutine functions")
        return async_wrapper

    return decorator


# Example log output structure:
# {
#   "timestamp": "2024-05-20T10:00:00Z",
#   "level": "warning",
#   "event": "stage_attempt_failed",
#   "run_id": "550e8400-e29b-41d4-a716-446655440000",
#   "stage": "analysis",
#   "provider": "openai",
#   "version": "1.0.0",
#   "kind": "rate-limited",
#   "attempt": 2
# }
