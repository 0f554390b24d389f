"""
Prometheus Metrics for Observability

Tracks stage latency, provider calls, circuit breaker transitions,
normalization strategies and run outcomes.
Exposes /api/v1/metrics endpoint for Prometheus scraping.
"""

import time
import asyncio
import functools
from typing import Callable
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Pipeline Latency - Per Stage
pipeline_latency_seconds = Histogram(
    "pipeline_latency_seconds",
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

# Total Pipeline Duration
pipeline_total_duration = Histogram(
    "pipeline_total_duration_seconds",
    "Total time for complete pipeline execution",
    labelnames=["status"],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0]
)

# Provider Calls
provider_calls_total = Counter(
    "provider_calls_total",
    "Total number of external AI provider calls",
    labelnames=["provider", "outcome"]
)

stage_attempt_failures_total = Counter(
    "stage_attempt_failures_total",
    "Failed stage attempts by failure kind",
    labelnames=["stage", "kind"]
)

# Circuit Breaker
breaker_transitions_total = Counter(
    "circuit_breaker_transitions_total",
    "Circuit breaker state transitions",
    labelnames=["provider", "from_state", "to_state"]
)

breaker_state_gauge = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half-open, 2=open)",
    labelnames=["provider"]
)

breaker_cas_conflicts_total = Counter(
    "circuit_breaker_cas_conflicts_total",
    "Optimistic update conflicts on shared breaker state",
    labelnames=["provider"]
)

# Normalizer
normalization_attempts_total = Counter(
    "normalization_attempts_total",
    "Response normalization attempts by strategy",
    labelnames=["strategy", "outcome"]
)

normalization_latency_seconds = Histogram(
    "normalization_latency_seconds",
    "Time spent per normalization strategy",
    labelnames=["strategy"],
    buckets=[0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.5]
)

# Runs Counter
runs_total = Counter(
    "analysis_runs_total",
    "Total number of analysis runs by terminal status",
    labelnames=["status", "mode"]
)

# Active Runs
active_runs_gauge = Gauge(
    "analysis_active_runs",
    "Number of currently executing runs"
)

quality_score_histogram = Histogram(
    "analysis_quality_score",
    "Distribution of run quality scores",
    buckets=[10, 20, 30, 40, 50, 60, 70, 80, 90, 100]
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Last-known-good cache
cache_hits_total = Counter(
    "cache_hits_total",
    "Total cache hits",
    labelnames=["cache_type"]
)

cache_misses_total = Counter(
    "cache_misses_total",
    "Total cache misses",
    labelnames=["cache_type"]
)

# Application Info
app_info = Info(
    "analysis_app",
    "Application information"
)

_BREAKER_STATE_VALUES = {"closed": 0, "half-open": 1, "open": 2}


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_stage_latency(stage: str):
    """
    Context manager to track stage latency.

    Usage:
        with track_stage_latency("vision"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        duration = time.time() - start
        pipeline_latency_seconds.labels(stage=stage, status=status).observe(duration)


def track_latency(stage: str):
    """
    Decorator to track coroutine latency.

    Usage:
        @track_latency("persistence")
        async def save(record):
            ...
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            with track_stage_latency(stage):
                return await func(*args, **kwargs)

        if not asyncio.iscoroutinefunction(func):
            raise TypeError("track_latency only wraps coroutine functions")
        return async_wrapper

    return decorator


def record_provider_call(provider: str, outcome: str):
    """Record an external provider call (success, or a failure kind)."""
    provider_calls_total.labels(provider=provider, outcome=outcome).inc()


def record_stage_failure(stage: str, kind: str):
    """Record a failed stage attempt."""
    stage_attempt_failures_total.labels(stage=stage, kind=kind).inc()


def record_breaker_transition(provider: str, from_state: str, to_state: str):
    """Record a circuit breaker state change."""
    breaker_transitions_total.labels(
        provider=provider,
        from_state=from_state,
        to_state=to_state
    ).inc()
    breaker_state_gauge.labels(provider=provider).set(_BREAKER_STATE_VALUES.get(to_state, 0))


def record_breaker_conflict(provider: str):
    """Record a compare-and-swap retry on breaker state."""
    breaker_cas_conflicts_total.labels(provider=provider).inc()


def record_normalization_attempt(strategy: str, success: bool, duration_seconds: float):
    """Record the outcome and timing of one normalization strategy."""
    normalization_attempts_total.labels(
        strategy=strategy,
        outcome="success" if success else "failure"
    ).inc()
    normalization_latency_seconds.labels(strategy=strategy).observe(duration_seconds)


def record_run_started():
    """Record a run entering execution."""
    active_runs_gauge.inc()


def record_run_completion(status: str, mode: str = "none", quality_score: float = None, duration_seconds: float = None):
    """Record run completion."""
    runs_total.labels(status=status, mode=mode).inc()
    active_runs_gauge.dec()
    if quality_score is not None:
        quality_score_histogram.observe(quality_score)
    if duration_seconds is not None:
        pipeline_total_duration.labels(status=status).observe(duration_seconds)


def record_cache_lookup(cache_type: str, hit: bool):
    """Record a cache hit or miss."""
    if hit:
        cache_hits_total.labels(cache_type=cache_type).inc()
    else:
        cache_misses_total.labels(cache_type=cache_type).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST


# Initialize app info on module load
set_app_info(version="1.0.0", environment="development")
