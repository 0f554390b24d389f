"""
Error Classifier

Maps a raised failure (plus whatever the provider told us about the
response) onto the failure taxonomy:

    transient, rate-limited, malformed-response, auth/config, permanent,
    provider-unavailable, cancelled

Only transient and rate-limited failures count toward breaker health.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import httpx

from src.core.config import settings
from src.core.exceptions import (
    ProviderConfigError,
    ProviderTimeoutError,
    MalformedResponseError,
    ProviderUnavailableError,
    RunCancelledError,
)
from src.engines.analysis.schemas import FailureKind


# Message heuristics for exceptions that carry no status code
AUTH_PATTERNS = (
    "unauthorized",
    "forbidden",
    "invalid api key",
    "authentication failed",
    "api key not configured",
    "missing api key",
)
RATE_LIMIT_PATTERNS = (
    "rate limit",
    "quota",
    "resource_exhausted",
    "resource exhausted",
    "too many requests",
)
PERMANENT_PATTERNS = (
    "not found",
    "malformed request",
    "invalid input",
    "bad request",
)

# Malformed payloads are retried once
MALFORMED_RETRY_LIMIT = 1

TRANSIENT_STATUSES = {408, 425}


@dataclass
class ProviderResponseMeta:
    """What is known about the provider response that produced an error."""

    provider: Optional[str] = None
    http_status: Optional[int] = None
    retry_after_ms: Optional[int] = None
    malformed_failures: int = 0


@dataclass(frozen=True)
class Classification:
    kind: FailureKind
    retryable: bool
    counts_toward_breaker: bool = False
    backoff_floor_ms: int = 0
    http_status: Optional[int] = None


class ErrorClassifier:
    """Classifies provider call failures."""

    def __init__(self, rate_limit_floor_ms: Optional[int] = None):
        self.rate_limit_floor_ms = (
            rate_limit_floor_ms
            if rate_limit_floor_ms is not None
            else settings.RATE_LIMIT_BACKOFF_FLOOR_MS
        )

    def classify(self, error: BaseException, meta: Optional[ProviderResponseMeta] = None) -> Classification:
        meta = meta or ProviderResponseMeta()
        http_status = getattr(error, "http_status", None) or meta.http_status
        retry_after_ms = getattr(error, "retry_after_ms", None) or meta.retry_after_ms

        if isinstance(error, (RunCancelledError, asyncio.CancelledError)):
            return Classification(FailureKind.CANCELLED, retryable=False)

        if isinstance(error, ProviderUnavailableError):
            return Classification(FailureKind.PROVIDER_UNAVAILABLE, retryable=False)

        if isinstance(error, ProviderConfigError):
            return Classification(FailureKind.AUTH_CONFIG, retryable=False, http_status=http_status)

        if isinstance(error, MalformedResponseError):
            return Classification(
                FailureKind.MALFORMED_RESPONSE,
                retryable=meta.malformed_failures <= MALFORMED_RETRY_LIMIT,
                http_status=http_status,
            )

        if http_status is not None:
            return self._classify_status(http_status, retry_after_ms, str(error))

        if isinstance(error, (ProviderTimeoutError, httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
            return self._transient()

        if isinstance(error, httpx.HTTPStatusError):
            return self._classify_status(error.response.status_code, retry_after_ms, str(error))

        if isinstance(error, (httpx.TransportError, ConnectionError, OSError)):
            return self._transient()

        if isinstance(error, (TypeError, ValueError, KeyError, AttributeError)):
            return Classification(FailureKind.PERMANENT, retryable=False)

        return self._classify_message(str(error), retry_after_ms)

    # -------------------------------------------------------------------------

    def _transient(self, http_status: Optional[int] = None) -> Classification:
        return Classification(
            FailureKind.TRANSIENT,
            retryable=True,
            counts_toward_breaker=True,
            http_status=http_status,
        )

    def _rate_limited(self, retry_after_ms: Optional[int], http_status: Optional[int] = None) -> Classification:
        return Classification(
            FailureKind.RATE_LIMITED,
            retryable=True,
            counts_toward_breaker=True,
            backoff_floor_ms=max(self.rate_limit_floor_ms, retry_after_ms or 0),
            http_status=http_status,
        )

    def _classify_status(self, status: int, retry_after_ms: Optional[int], message: str) -> Classification:
        if status in (401, 403):
            return Classification(FailureKind.AUTH_CONFIG, retryable=False, http_status=status)
        if status == 429:
            return self._rate_limited(retry_after_ms, status)
        if status in TRANSIENT_STATUSES or status >= 500:
            # Some providers report quota exhaustion as 5xx / RESOURCE_EXHAUSTED
            if _matches(message, RATE_LIMIT_PATTERNS):
                return self._rate_limited(retry_after_ms, status)
            return self._transient(status)
        if 400 <= status < 500:
            if _matches(message, RATE_LIMIT_PATTERNS):
                return self._rate_limited(retry_after_ms, status)
            return Classification(FailureKind.PERMANENT, retryable=False, http_status=status)
        return self._classify_message(message, retry_after_ms)

    def _classify_message(self, message: str, retry_after_ms: Optional[int]) -> Classification:
        if _matches(message, AUTH_PATTERNS):
            return Classification(FailureKind.AUTH_CONFIG, retryable=False)
        if _matches(message, RATE_LIMIT_PATTERNS):
            return self._rate_limited(retry_after_ms)
        if _matches(message, PERMANENT_PATTERNS):
            return Classification(FailureKind.PERMANENT, retryable=False)
        return self._transient()


def _matches(message: str, patterns) -> bool:
    lowered = (message or "").lower()
    return any(pattern in lowered for pattern in patterns)

