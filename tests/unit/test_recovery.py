import asyncio
import json

import pytest

from src.engines.analysis.recovery import (
    CACHED_NOTICE,
    DEGRADED_NOTICE,
    RecoveryDecision,
    RecoverySynthesizer,
    merge_outputs,
)
from src.engines.analysis.schemas import (
    FailureKind,
    NormalizedAnalysis,
    RecoveryMode,
    RunStatus,
    StageError,
)
from src.engines.analysis.state import PipelineRun, StageResult
from src.pipeline.stages import DEFAULT_STAGE_DEFINITIONS
from tests.fakes import ANALYSIS_JSON, SYNTHESIS_JSON, VISION_JSON, make_request

OUTPUTS = {
    "vision": VISION_JSON,
    "analysis": ANALYSIS_JSON,
    "synthesis": SYNTHESIS_JSON,
}


def build_run(outcomes, **options) -> PipelineRun:
    """outcomes: stage -> "ok" | FailureKind"""
    results = []
    for name, outcome in outcomes.items():
        definition = DEFAULT_STAGE_DEFINITIONS[name]
        result = StageResult(stage=name, provider=definition.provider, max_attempts=4, required=definition.required)
        result.mark_running()
        result.begin_attempt()
        if outcome == "ok":
            result.mark_succeeded(OUTPUTS[name], NormalizedAnalysis.model_validate(json.loads(OUTPUTS[name])))
        else:
            cause = None
            kind = outcome
            if outcome == FailureKind.EXHAUSTED_RETRIES:
                cause = FailureKind.TRANSIENT
            result.mark_failed(StageError(kind=kind, message=f"{name} broke", cause=cause))
        results.append(result)
    return PipelineRun(id="run-1", request=make_request(stages=list(outcomes), **options), stage_results=results)


class StaticCache:
    def __init__(self, analysis=None, delay=0.0):
        self.analysis = analysis
        self.delay = delay
        self.lookups = []

    async def get_last_known_good(self, image_ref):
        self.lookups.append(image_ref)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.analysis


@pytest.fixture
def synthesizer():
    return RecoverySynthesizer(DEFAULT_STAGE_DEFINITIONS)


@pytest.mark.asyncio
async def test_all_required_succeeded_is_full(synthesizer):
    run = build_run({"vision": "ok", "analysis": "ok", "synthesis": FailureKind.PERMANENT})

    analysis = await synthesizer.synthesize(run)

    assert run.overall_status == RunStatus.COMPLETED
    assert run.mode == RecoveryMode.FULL
    assert analysis is run.analysis
    # synthesis failed, so the analysis stage summary is the latest
    assert analysis.summary.overall_score == 70


@pytest.mark.asyncio
async def test_non_root_failure_gives_partial_with_missing_stages(synthesizer):
    run = build_run({"vision": "ok", "analysis": FailureKind.AUTH_CONFIG, "synthesis": "ok"})

    analysis = await synthesizer.synthesize(run)

    assert run.overall_status == RunStatus.PARTIAL
    assert analysis.metadata.recovery_mode == RecoveryMode.PARTIAL
    assert analysis.metadata.available_stages == ["vision", "synthesis"]
    assert analysis.metadata.missing_stages == ["analysis"]
    assert any("analysis stage unavailable (auth/config)" in note for note in analysis.metadata.limitations)


@pytest.mark.asyncio
async def test_root_failure_without_cache_uses_template(synthesizer):
    run = build_run({"vision": FailureKind.PERMANENT, "analysis": "ok"})

    analysis = await synthesizer.synthesize(run)

    assert run.overall_status == RunStatus.DEGRADED
    assert analysis.metadata.limitations[0] == DEGRADED_NOTICE
    assert analysis.metadata.available_stages == ["analysis"]
    assert analysis.metadata.missing_stages == ["vision"]
    # analysis output overlays the template
    assert [a.id for a in analysis.visual_annotations] == ["a1", "a2"]
    assert [s.id for s in analysis.suggestions] == ["degraded-mode-notice"]


@pytest.mark.asyncio
async def test_nothing_succeeded_gives_template_summary(synthesizer):
    run = build_run({"vision": FailureKind.PERMANENT})

    analysis = await synthesizer.synthesize(run)

    assert run.overall_status == RunStatus.DEGRADED
    assert analysis.summary.overall_score == 25
    assert [a.id for a in analysis.visual_annotations] == ["fallback-1"]


@pytest.mark.asyncio
async def test_optional_only_failure_is_never_degraded(synthesizer):
    run = build_run({"synthesis": FailureKind.PERMANENT})

    analysis = await synthesizer.synthesize(run)

    assert analysis is None
    assert run.overall_status == RunStatus.FAILED
    assert run.failure_reason == "synthesis: permanent"


@pytest.mark.asyncio
async def test_network_failures_add_network_notice(synthesizer):
    run = build_run({"vision": FailureKind.EXHAUSTED_RETRIES})

    analysis = await synthesizer.synthesize(run)

    assert [s.id for s in analysis.suggestions] == ["degraded-mode-notice", "network-issue"]


@pytest.mark.asyncio
async def test_degraded_prefers_last_known_good():
    cached = NormalizedAnalysis.model_validate(json.loads(SYNTHESIS_JSON))
    cache = StaticCache(cached)
    synthesizer = RecoverySynthesizer(DEFAULT_STAGE_DEFINITIONS, last_known_good=cache)
    run = build_run({"vision": FailureKind.TRANSIENT, "analysis": FailureKind.TRANSIENT})

    analysis = await synthesizer.synthesize(run)

    assert cache.lookups == ["https://example.com/screen.png"]
    assert run.overall_status == RunStatus.DEGRADED
    assert [s.id for s in analysis.suggestions] == ["s1"]
    assert CACHED_NOTICE in analysis.metadata.limitations
    assert analysis.metadata.recovery_mode == RecoveryMode.DEGRADED
    # the cached object itself is untouched
    assert cached.metadata.recovery_mode is None


@pytest.mark.asyncio
async def test_slow_cache_lookup_falls_back_to_template():
    cache = StaticCache(NormalizedAnalysis(), delay=1.0)
    synthesizer = RecoverySynthesizer(DEFAULT_STAGE_DEFINITIONS, last_known_good=cache, lookup_timeout_ms=10)
    run = build_run({"vision": FailureKind.PERMANENT})

    analysis = await synthesizer.synthesize(run)

    assert run.overall_status == RunStatus.DEGRADED
    assert CACHED_NOTICE not in analysis.metadata.limitations
    assert [a.id for a in analysis.visual_annotations] == ["fallback-1"]


@pytest.mark.asyncio
async def test_partial_disabled_falls_through_to_degraded(synthesizer):
    run = build_run({"vision": "ok", "analysis": FailureKind.PERMANENT}, enable_partial_recovery=False)

    analysis = await synthesizer.synthesize(run)

    assert run.overall_status == RunStatus.DEGRADED
    assert analysis.summary.overall_score == 45


@pytest.mark.asyncio
async def test_no_recovery_options_fails_with_reason(synthesizer):
    run = build_run(
        {"vision": FailureKind.RATE_LIMITED, "analysis": FailureKind.PERMANENT},
        enable_partial_recovery=False,
        enable_degraded_mode=False,
    )

    analysis = await synthesizer.synthesize(run)

    assert analysis is None
    assert run.overall_status == RunStatus.FAILED
    assert run.failure_reason == "vision: rate-limited; analysis: permanent"


def test_decide_after_failure(synthesizer):
    run = build_run({"vision": FailureKind.CANCELLED})
    assert synthesizer.decide_after_failure(run, run.stage("vision")) == RecoveryDecision.ABORT

    run = build_run({"vision": FailureKind.PERMANENT})
    assert synthesizer.decide_after_failure(run, run.stage("vision")) == RecoveryDecision.CONTINUE

    run = build_run({"vision": FailureKind.PERMANENT}, enable_partial_recovery=False, enable_degraded_mode=False)
    assert synthesizer.decide_after_failure(run, run.stage("vision")) == RecoveryDecision.ABORT


def test_merge_outputs_later_stages_win_per_section():
    run = build_run({"vision": "ok", "analysis": "ok", "synthesis": "ok"})

    merged = merge_outputs(run.stage_results)

    assert [a.id for a in merged.visual_annotations] == ["a1", "a2"]
    assert [s.id for s in merged.suggestions] == ["s1"]
    assert merged.summary.overall_score == 72
    assert merged.summary.category_scores.usability == 0
