"""
Global Exception Handling

Provides the exception hierarchy shared by the pipeline engine and the API,
and renders structured JSON error responses.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from src.core.logging import get_logger, run_id_var

logger = get_logger(__name__)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# =============================================================================
# Custom Exceptions
# =============================================================================

class AnalysisBaseException(Exception):
    """Base exception for the analysis service."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        run_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.run_id = run_id or run_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(AnalysisBaseException):
    """Raised when an analysis request is not runnable."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class RunNotFoundError(AnalysisBaseException):
    """Raised when a run id is unknown to the run store."""

    def __init__(self, run_id: str, **kwargs):
        super().__init__(f"Run not found: {run_id}", code=404, run_id=run_id, **kwargs)


class RunNotReadyError(AnalysisBaseException):
    """Raised when a result is requested before the run is terminal."""

    def __init__(self, run_id: str, status: str, **kwargs):
        super().__init__(
            f"Run {run_id} has not finished (status: {status})",
            code=409,
            run_id=run_id,
            **kwargs
        )
        self.details["status"] = status


class RunFailedError(AnalysisBaseException):
    """Raised when a result is requested for a run that produced no analysis."""

    def __init__(self, run_id: str, reason: Optional[str], stages: list, **kwargs):
        super().__init__(
            f"Run {run_id} failed: {reason or 'unknown'}",
            code=422,
            run_id=run_id,
            **kwargs
        )
        self.details["reason"] = reason
        self.details["stages"] = stages


class InvalidStateTransition(AnalysisBaseException):
    """Raised when a run or stage is moved out of a terminal state."""

    def __init__(self, entity: str, current: str, target: str, **kwargs):
        super().__init__(
            f"Illegal {entity} transition: {current} -> {target}",
            code=500,
            **kwargs
        )
        self.details.update({"entity": entity, "current": current, "target": target})


class RunCancelledError(AnalysisBaseException):
    """Raised inside a run once its cancellation token fired."""

    def __init__(self, message: str = "Run was cancelled", **kwargs):
        super().__init__(message, code=409, **kwargs)


class ProviderError(AnalysisBaseException):
    """Raised when an external AI provider call fails."""

    def __init__(
        self,
        message: str,
        provider: str,
        http_status: Optional[int] = None,
        retry_after_ms: Optional[int] = None,
        **kwargs
    ):
        super().__init__(message, code=502, **kwargs)
        self.provider = provider
        self.http_status = http_status
        self.retry_after_ms = retry_after_ms
        self.details["provider"] = provider
        self.details["http_status"] = http_status


class ProviderTimeoutError(ProviderError):
    """Raised when a provider call exceeds the stage timeout."""

    def __init__(self, provider: str, timeout_ms: int, **kwargs):
        super().__init__(
            f"Provider '{provider}' timed out after {timeout_ms}ms",
            provider=provider,
            **kwargs
        )
        self.code = 504
        self.details["timeout_ms"] = timeout_ms


class ProviderConfigError(ProviderError):
    """Raised when a provider has no endpoint or credential configured."""

    def __init__(self, message: str, provider: str, **kwargs):
        super().__init__(message, provider=provider, **kwargs)
        self.code = 500


class MalformedResponseError(ProviderError):
    """Raised when a provider response cannot be normalized."""

    def __init__(self, message: str, provider: str, raw_text: str, **kwargs):
        super().__init__(message, provider=provider, **kwargs)
        self.raw_text = raw_text
        self.details["raw_length"] = len(raw_text or "")


class ProviderUnavailableError(AnalysisBaseException):
    """Raised when a provider's circuit breaker is open."""

    def __init__(self, provider: str, **kwargs):
        super().__init__(
            f"Provider '{provider}' is temporarily unavailable (circuit breaker open)",
            code=503,
            **kwargs
        )
        self.provider = provider
        self.details["provider"] = provider


# =============================================================================
# Exception Handler Middleware
# =============================================================================

def _error_body(exc: AnalysisBaseException, run_id: Optional[str]) -> Dict[str, Any]:
    return {
        "error": exc.message,
        "run_id": exc.run_id or run_id,
        "code": exc.code,
        "stage": exc.stage,
        "details": exc.details,
        "timestamp": _utc_timestamp()
    }


class GlobalExceptionMiddleware(BaseHTTPMiddleware):
    """
    Global exception handler middleware.

    Catches exceptions that escape the routers and returns structured JSON.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            return self._handle_exception(request, exc)

    def _handle_exception(self, request: Request, exc: Exception) -> JSONResponse:
        run_id = run_id_var.get()

        if isinstance(exc, AnalysisBaseException):
            return JSONResponse(status_code=exc.code, content=_error_body(exc, run_id))

        if isinstance(exc, HTTPException):
            return JSONResponse(
                status_code=exc.status_code,
                content={
                    "error": exc.detail,
                    "run_id": run_id,
                    "code": exc.status_code,
                    "timestamp": _utc_timestamp()
                }
            )

        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            traceback=traceback.format_exc()
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "run_id": run_id,
                "code": 500,
                "timestamp": _utc_timestamp()
            }
        )


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(AnalysisBaseException)
    async def analysis_exception_handler(request: Request, exc: AnalysisBaseException):
        log = logger.warning if exc.code < 500 else logger.error
        log(
            "analysis_exception",
            error=exc.message,
            code=exc.code,
            stage=exc.stage,
            details=exc.details
        )
        return JSONResponse(
            status_code=exc.code,
            content=_error_body(exc, run_id_var.get())
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "run_id": run_id_var.get(),
                "code": 500,
                "timestamp": _utc_timestamp()
            }
        )
