import asyncio

import pytest

from src.core.exceptions import ProviderConfigError, ProviderError, ValidationError
from src.engines.analysis.cancellation import CancellationToken
from src.engines.analysis.schemas import (
    FailureKind,
    RecoveryMode,
    RunStatus,
    StageDefinition,
    StageStatus,
)
from src.pipeline.stages import build_stage_definitions
from tests.fakes import VISION_JSON, ScriptedProviderClient, make_request


def transient():
    return ProviderError("Provider 'x' returned 503: unavailable", provider="x", http_status=503)


def permanent():
    return ProviderError("Provider 'x' returned 400: bad request", provider="x", http_status=400)


# =============================================================================
# Planning
# =============================================================================

def test_plan_orders_requested_stages_by_dependency(make_orchestrator):
    orchestrator = make_orchestrator(ScriptedProviderClient())

    assert orchestrator.plan(["synthesis", "vision", "analysis"]) == ["vision", "analysis", "synthesis"]
    assert orchestrator.plan(["synthesis"]) == ["synthesis"]


def test_unknown_stage_is_rejected(make_orchestrator):
    orchestrator = make_orchestrator(ScriptedProviderClient())

    with pytest.raises(ValidationError):
        orchestrator.create_run(make_request(stages=["vision", "ocr"]))


def test_dependency_cycle_is_rejected(make_orchestrator):
    definitions = {
        "a": StageDefinition(name="a", provider="openai", depends_on_stages=frozenset({"b"})),
        "b": StageDefinition(name="b", provider="openai", depends_on_stages=frozenset({"a"})),
    }
    orchestrator = make_orchestrator(ScriptedProviderClient(), stage_definitions=definitions)

    with pytest.raises(ValidationError):
        orchestrator.plan(["a", "b"])


def test_create_run_sizes_attempt_budget(make_orchestrator):
    orchestrator = make_orchestrator(ScriptedProviderClient())

    run = orchestrator.create_run(make_request(max_retry_attempts=2))

    assert [r.stage for r in run.stage_results] == ["vision", "analysis", "synthesis"]
    assert all(r.max_attempts == 3 for r in run.stage_results)
    assert run.stage("synthesis").required is False
    assert run.overall_status == RunStatus.RUNNING


# =============================================================================
# Execution
# =============================================================================

@pytest.mark.asyncio
async def test_all_stages_succeed_first_time(make_orchestrator):
    client = ScriptedProviderClient()
    events = []
    orchestrator = make_orchestrator(client, progress_callback=events.append)

    run = await orchestrator.run(make_request())

    assert run.overall_status == RunStatus.COMPLETED
    assert run.mode == RecoveryMode.FULL
    assert all(r.attempt_count == 1 for r in run.stage_results)
    assert all(r.status == StageStatus.SUCCEEDED for r in run.stage_results)
    assert client.calls == ["vision", "analysis", "synthesis"]
    assert 0 <= run.quality_score <= 100
    # Later stages override earlier ones per section
    assert [a.id for a in run.analysis.visual_annotations] == ["a1", "a2"]
    assert [s.id for s in run.analysis.suggestions] == ["s1"]
    assert run.analysis.summary.overall_score == 72

    progress = [e.progress for e in events]
    assert progress == sorted(progress)
    assert events[-1].status == RunStatus.COMPLETED.value
    assert events[-1].progress == 100.0


@pytest.mark.asyncio
async def test_transient_failures_then_success_completes_with_retries(make_orchestrator):
    client = ScriptedProviderClient({"vision": [transient(), transient(), VISION_JSON]})
    events = []
    orchestrator = make_orchestrator(client, progress_callback=events.append)

    run = await orchestrator.run(make_request(max_retry_attempts=3))

    assert run.overall_status == RunStatus.COMPLETED
    assert run.stage("vision").attempt_count == 3
    assert client.calls_for("vision") == 3
    assert sum(1 for e in events if e.status == "retrying") == 2

    clean = await make_orchestrator(ScriptedProviderClient()).run(make_request())
    assert run.quality_score < clean.quality_score


@pytest.mark.asyncio
async def test_retries_exhausted_records_cause(make_orchestrator):
    client = ScriptedProviderClient({"analysis": [transient()]})
    orchestrator = make_orchestrator(client)

    run = await orchestrator.run(make_request(max_retry_attempts=2))

    analysis = run.stage("analysis")
    assert analysis.status == StageStatus.FAILED
    assert analysis.attempt_count == 3
    assert analysis.error.kind == FailureKind.EXHAUSTED_RETRIES
    assert analysis.error.cause == FailureKind.TRANSIENT
    assert client.calls_for("analysis") == 3
    # vision succeeded, a non-root required stage failed: partial result
    assert run.overall_status == RunStatus.PARTIAL
    assert run.analysis.metadata.missing_stages == ["analysis"]


@pytest.mark.asyncio
async def test_auth_errors_are_not_retried(make_orchestrator):
    client = ScriptedProviderClient({"synthesis": [ProviderConfigError("API key not configured", provider="anthropic")]})
    orchestrator = make_orchestrator(client)

    run = await orchestrator.run(make_request())

    synthesis = run.stage("synthesis")
    assert synthesis.error.kind == FailureKind.AUTH_CONFIG
    assert synthesis.attempt_count == 1
    assert client.calls_for("synthesis") == 1
    # synthesis is optional
    assert run.overall_status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_malformed_response_retried_once_then_kept_raw(make_orchestrator):
    client = ScriptedProviderClient({"analysis": ["no json here"]})
    orchestrator = make_orchestrator(client)

    run = await orchestrator.run(make_request(max_retry_attempts=3))

    analysis = run.stage("analysis")
    assert analysis.attempt_count == 2
    assert analysis.error.kind == FailureKind.MALFORMED_RESPONSE
    assert analysis.raw_response == "no json here"


@pytest.mark.asyncio
async def test_open_breaker_short_circuits_without_calls(make_orchestrator, registry, clock):
    for _ in range(3):
        await registry.record_outcome("openai", success=False, kind=FailureKind.TRANSIENT)
    client = ScriptedProviderClient()
    orchestrator = make_orchestrator(client)

    run = await orchestrator.run(make_request())

    analysis = run.stage("analysis")
    assert analysis.error.kind == FailureKind.PROVIDER_UNAVAILABLE
    assert analysis.error.retryable is False
    assert "circuit breaker open" in analysis.error.message
    assert analysis.attempt_count == 0
    assert client.calls_for("analysis") == 0

    clock.advance(30)
    second = await orchestrator.run(make_request())

    assert client.calls_for("analysis") == 1
    assert second.overall_status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_vision_permanent_failure_degrades_without_cache(make_orchestrator):
    client = ScriptedProviderClient({"vision": [permanent()]})
    orchestrator = make_orchestrator(client)

    run = await orchestrator.run(make_request(stages=["vision"]))

    assert run.overall_status == RunStatus.DEGRADED
    assert run.mode == RecoveryMode.DEGRADED
    assert run.analysis.metadata.limitations
    assert run.analysis.metadata.recovery_mode == RecoveryMode.DEGRADED
    assert run.analysis.summary.overall_score is not None
    assert client.calls_for("vision") == 1


@pytest.mark.asyncio
async def test_optional_stage_failure_alone_fails_the_run(make_orchestrator):
    client = ScriptedProviderClient({"synthesis": [permanent()]})
    orchestrator = make_orchestrator(client)

    run = await orchestrator.run(make_request(stages=["synthesis"]))

    assert run.stage("synthesis").required is False
    assert run.stage("synthesis").status == StageStatus.FAILED
    assert run.overall_status == RunStatus.FAILED
    assert run.analysis is None
    assert run.failure_reason == "synthesis: permanent"


@pytest.mark.asyncio
async def test_failure_aborts_when_recovery_disabled(make_orchestrator):
    client = ScriptedProviderClient({"vision": [permanent()]})
    orchestrator = make_orchestrator(client)

    run = await orchestrator.run(make_request(enable_partial_recovery=False, enable_degraded_mode=False))

    assert run.overall_status == RunStatus.FAILED
    assert run.analysis is None
    assert "vision: permanent" in run.failure_reason
    assert run.stage("analysis").status == StageStatus.SKIPPED
    assert client.calls == ["vision"]


@pytest.mark.asyncio
async def test_cancel_during_backoff_stops_further_calls(make_orchestrator):
    async def cancelling_sleep(seconds, token):
        token.cancel()
        return await token.wait(seconds)

    client = ScriptedProviderClient({"vision": [transient()]})
    orchestrator = make_orchestrator(client, sleep=cancelling_sleep)

    run = await orchestrator.run(make_request())

    assert run.overall_status == RunStatus.FAILED
    assert run.failure_reason == "cancelled"
    assert run.stage("vision").error.kind == FailureKind.CANCELLED
    assert run.stage("analysis").status == StageStatus.SKIPPED
    assert client.calls == ["vision"]


@pytest.mark.asyncio
async def test_cancel_interrupts_in_flight_call(make_orchestrator, registry):
    blocker = asyncio.Event()

    async def hang(stage, count):
        await blocker.wait()

    client = ScriptedProviderClient()
    client.hook = hang
    token = CancellationToken()
    orchestrator = make_orchestrator(client)

    task = asyncio.create_task(orchestrator.run(make_request(), token=token))
    while not client.calls:
        await asyncio.sleep(0)
    token.cancel()
    run = await asyncio.wait_for(task, timeout=2)

    assert run.overall_status == RunStatus.FAILED
    assert run.stage("vision").error.kind == FailureKind.CANCELLED
    assert client.calls == ["vision"]
    assert not (await registry.snapshot("google-vision")).trial_in_flight


@pytest.mark.asyncio
async def test_stage_timeout_is_transient(make_orchestrator):
    async def slow(stage, count):
        await asyncio.sleep(0.5)

    client = ScriptedProviderClient()
    client.hook = slow
    definitions = build_stage_definitions([
        StageDefinition(name="vision", provider="google-vision", timeout_ms=20),
    ])
    orchestrator = make_orchestrator(client, stage_definitions=definitions)

    run = await orchestrator.run(make_request(stages=["vision"], max_retry_attempts=0))

    vision = run.stage("vision")
    assert vision.error.kind == FailureKind.EXHAUSTED_RETRIES
    assert vision.error.cause == FailureKind.TRANSIENT
    assert vision.attempt_count == 1


@pytest.mark.asyncio
async def test_independent_stages_run_concurrently(make_orchestrator):
    started = []
    both_running = asyncio.Event()

    async def rendezvous(stage, count):
        started.append(stage)
        if len(started) == 2:
            both_running.set()
        await asyncio.wait_for(both_running.wait(), timeout=1)

    definitions = {
        "vision": StageDefinition(name="vision", provider="google-vision"),
        "analysis": StageDefinition(name="analysis", provider="openai"),
    }
    client = ScriptedProviderClient()
    client.hook = rendezvous
    orchestrator = make_orchestrator(client, stage_definitions=definitions)

    run = await orchestrator.run(make_request(stages=["vision", "analysis"]))

    assert run.overall_status == RunStatus.COMPLETED
    assert sorted(started) == ["analysis", "vision"]


@pytest.mark.asyncio
async def test_progress_callback_errors_do_not_break_run(make_orchestrator):
    def explode(event):
        raise RuntimeError("sink down")

    orchestrator = make_orchestrator(ScriptedProviderClient(), progress_callback=explode)

    run = await orchestrator.run(make_request())

    assert run.overall_status == RunStatus.COMPLETED


# =============================================================================
# Backoff
# =============================================================================

def test_backoff_grows_exponentially_and_is_capped(make_orchestrator):
    orchestrator = make_orchestrator(ScriptedProviderClient(), backoff_cap_ms=5000)

    assert orchestrator.backoff_ms(1000, 1) == 1000
    assert orchestrator.backoff_ms(1000, 3) == 4000
    assert orchestrator.backoff_ms(1000, 5) == 5000


def test_backoff_respects_floor_above_cap(make_orchestrator):
    orchestrator = make_orchestrator(ScriptedProviderClient(), backoff_cap_ms=5000)

    assert orchestrator.backoff_ms(1000, 1, floor_ms=12000) == 12000


def test_backoff_jitter_stays_within_ratio(make_orchestrator):
    high = make_orchestrator(ScriptedProviderClient(), jitter=lambda: 1.0, jitter_ratio=0.25)
    low = make_orchestrator(ScriptedProviderClient(), jitter=lambda: -1.0, jitter_ratio=0.25)

    assert high.backoff_ms(1000, 2) == 2500
    assert low.backoff_ms(1000, 2) == 1500
