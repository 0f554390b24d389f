"""
Recovery & Degraded-Mode Synthesizer

Turns the stage outcomes of a finished run into its final result:

1. every required stage succeeded        -> full / completed
2. a required root stage failed, or a
   required stage failed and nothing
   succeeded, degraded mode enabled       -> degraded
3. something succeeded, partial enabled   -> partial
4. a required stage failed, degraded on   -> degraded
5. otherwise                              -> failed, no analysis body

Merging walks the succeeded stages in order; a later stage's annotations,
suggestions and summary replace an earlier stage's.
"""

import asyncio
from enum import Enum
from typing import Dict, List, Optional, Protocol

from src.core.config import settings
from src.core.logging import get_logger
from src.core.metrics import record_cache_lookup
from src.engines.analysis.schemas import (
    AnalysisMetadata,
    AnalysisSummary,
    FailureKind,
    NormalizedAnalysis,
    RecoveryMode,
    RunStatus,
    StageDefinition,
    StageStatus,
    Suggestion,
    VisualAnnotation,
)
from src.engines.analysis.state import PipelineRun, StageResult

logger = get_logger(__name__)


DEGRADED_NOTICE = "This analysis was generated in degraded mode due to pipeline failures"
LIMITED_NOTICE = "Results may be limited compared to full analysis"
RERUN_NOTICE = "Consider re-running the analysis when issues are resolved"
CACHED_NOTICE = "Served from the last successful analysis of this image"

NETWORK_KINDS = {FailureKind.TRANSIENT, FailureKind.PROVIDER_UNAVAILABLE}


class RecoveryDecision(str, Enum):
    CONTINUE = "continue"
    ABORT = "abort"


class LastKnownGoodSource(Protocol):
    async def get_last_known_good(self, image_ref: str) -> Optional[NormalizedAnalysis]:
        ...


# =============================================================================
# Templates
# =============================================================================

def fallback_annotations() -> List[VisualAnnotation]:
    return [VisualAnnotation(
        id="fallback-1",
        x=50,
        y=30,
        type="info",
        title="Analysis Incomplete",
        description="Some analysis stages failed. Manual review recommended.",
        severity="medium",
    )]


def fallback_suggestions(network_issue: bool) -> List[Suggestion]:
    suggestions = [Suggestion(
        id="degraded-mode-notice",
        category="general",
        title="Analysis Generated in Recovery Mode",
        description=(
            "This analysis was created using fallback methods due to processing issues. "
            "Results may be limited."
        ),
        impact="medium",
        effort="low",
        action_items=[
            "Review the analysis limitations noted below",
            "Consider re-running the analysis when system issues are resolved",
            "Contact support if issues persist",
        ],
    )]
    if network_issue:
        suggestions.append(Suggestion(
            id="network-issue",
            category="technical",
            title="Network Connectivity Issue Detected",
            description="The analysis encountered network problems. This may affect result quality.",
            impact="medium",
            effort="low",
            action_items=[
                "Try the analysis again in a few minutes",
                "Contact support if network issues persist",
            ],
        ))
    return suggestions


def fallback_summary(successful_stages: int) -> AnalysisSummary:
    if successful_stages >= 2:
        score = 65
    elif successful_stages >= 1:
        score = 45
    else:
        score = 25
    return AnalysisSummary(
        overall_score=score,
        key_issues=["Incomplete analysis", "Service limitations"],
        strengths=["Partial data available"] if successful_stages > 0 else ["Interface detected"],
    )


def degraded_template(successful_stages: int, network_issue: bool) -> NormalizedAnalysis:
    return NormalizedAnalysis(
        visual_annotations=fallback_annotations(),
        suggestions=fallback_suggestions(network_issue),
        summary=fallback_summary(successful_stages),
    )


def merge_outputs(results: List[StageResult], base: Optional[NormalizedAnalysis] = None) -> NormalizedAnalysis:
    """Overlay succeeded stage outputs on `base`, later stages winning per section."""
    merged = base.model_copy(deep=True) if base else NormalizedAnalysis()
    for result in results:
        output = result.normalized_output
        if result.status != StageStatus.SUCCEEDED or output is None:
            continue
        if output.visual_annotations:
            merged.visual_annotations = [a.model_copy() for a in output.visual_annotations]
        if output.suggestions:
            merged.suggestions = [s.model_copy(deep=True) for s in output.suggestions]
        if "summary" in output.model_fields_set:
            merged.summary = output.summary.model_copy(deep=True)
        if base is None and "metadata" in output.model_fields_set:
            merged.metadata = output.metadata.model_copy(deep=True)
    return merged


# =============================================================================
# Synthesizer
# =============================================================================

class RecoverySynthesizer:
    """
    Decides the terminal state of a run and builds its analysis body.

    Args:
        stage_definitions: stage name -> StageDefinition, used to find root stages
        last_known_good: optional cache of earlier full/partial results
        lookup_timeout_ms: bound for the last-known-good lookup
    """

    def __init__(
        self,
        stage_definitions: Dict[str, StageDefinition],
        last_known_good: Optional[LastKnownGoodSource] = None,
        lookup_timeout_ms: Optional[int] = None,
    ):
        self.stage_definitions = stage_definitions
        self.last_known_good = last_known_good
        self.lookup_timeout_ms = lookup_timeout_ms or settings.PERSISTENCE_TIMEOUT_MS

    def _is_root(self, run: PipelineRun, stage: str) -> bool:
        definition = self.stage_definitions.get(stage)
        if definition is None:
            return False
        requested = {r.stage for r in run.stage_results}
        return not (set(definition.depends_on_stages) & requested)

    def decide_after_failure(self, run: PipelineRun, stage_result: StageResult) -> RecoveryDecision:
        options = run.request.options
        if stage_result.error is not None and stage_result.error.kind == FailureKind.CANCELLED:
            return RecoveryDecision.ABORT
        if not options.enable_partial_recovery and not options.enable_degraded_mode:
            return RecoveryDecision.ABORT
        return RecoveryDecision.CONTINUE

    async def synthesize(self, run: PipelineRun) -> Optional[NormalizedAnalysis]:
        """Finish `run` and return its analysis (None when the run failed)."""
        options = run.request.options
        results = run.stage_results
        succeeded = run.succeeded_stages()
        required = [r for r in results if r.required]
        required_missing = [r for r in required if r.status != StageStatus.SUCCEEDED]
        required_failed = [r for r in required if r.status == StageStatus.FAILED]
        root_failed = any(self._is_root(run, r.stage) for r in required_failed)
        can_degrade = options.enable_degraded_mode and bool(required_failed)

        if succeeded and not required_missing:
            analysis = merge_outputs(results)
            run.finish(RunStatus.COMPLETED, mode=RecoveryMode.FULL, analysis=analysis)
            return analysis

        if can_degrade and (root_failed or not succeeded):
            return await self._degrade(run)

        if succeeded and options.enable_partial_recovery:
            analysis = merge_outputs(results)
            analysis.metadata.recovery_mode = RecoveryMode.PARTIAL
            analysis.metadata.available_stages = [r.stage for r in succeeded]
            analysis.metadata.missing_stages = [r.stage for r in results if r.status != StageStatus.SUCCEEDED]
            analysis.metadata.limitations = self._stage_limitations(results) or None
            run.finish(RunStatus.PARTIAL, mode=RecoveryMode.PARTIAL, analysis=analysis)
            return analysis

        if can_degrade:
            return await self._degrade(run)

        run.finish(RunStatus.FAILED, failure_reason=self._failure_reason(results))
        return None

    # -------------------------------------------------------------------------

    async def _lookup_last_known_good(self, image_ref: str) -> Optional[NormalizedAnalysis]:
        if self.last_known_good is None:
            return None
        try:
            cached = await asyncio.wait_for(
                self.last_known_good.get_last_known_good(image_ref),
                timeout=self.lookup_timeout_ms / 1000
            )
        except (asyncio.TimeoutError, OSError) as e:
            logger.warning("last_known_good_lookup_failed", error=str(e), error_type=type(e).__name__)
            cached = None
        record_cache_lookup("last_known_good", cached is not None)
        return cached

    async def _degrade(self, run: PipelineRun) -> NormalizedAnalysis:
        results = run.stage_results
        succeeded = run.succeeded_stages()
        limitations = [DEGRADED_NOTICE]
        limitations.extend(self._stage_limitations(results))

        cached = await self._lookup_last_known_good(run.request.image_ref)
        if cached is not None:
            analysis = cached.model_copy(deep=True)
            limitations.append(CACHED_NOTICE)
        else:
            network_issue = any(
                r.error is not None and (
                    r.error.kind in NETWORK_KINDS or r.error.cause in NETWORK_KINDS
                )
                for r in results
            )
            analysis = merge_outputs(results, base=degraded_template(len(succeeded), network_issue))

        limitations.extend([LIMITED_NOTICE, RERUN_NOTICE])
        analysis.metadata = AnalysisMetadata(
            recovery_mode=RecoveryMode.DEGRADED,
            available_stages=[r.stage for r in succeeded],
            missing_stages=[r.stage for r in results if r.status != StageStatus.SUCCEEDED],
            limitations=limitations,
        )

        logger.warning(
            "run_degraded",
            available_stages=analysis.metadata.available_stages,
            missing_stages=analysis.metadata.missing_stages,
            from_cache=cached is not None
        )
        run.finish(RunStatus.DEGRADED, mode=RecoveryMode.DEGRADED, analysis=analysis)
        return analysis

    def _stage_limitations(self, results: List[StageResult]) -> List[str]:
        notes = []
        for result in results:
            if result.status == StageStatus.FAILED and result.error is not None:
                notes.append(f"{result.stage} stage unavailable ({result.error.kind.value}): {result.error.message}")
            elif result.status == StageStatus.SKIPPED:
                notes.append(f"{result.stage} stage skipped")
        return notes

    def _failure_reason(self, results: List[StageResult]) -> str:
        failures = [
            f"{r.stage}: {r.error.kind.value}"
            for r in results
            if r.status == StageStatus.FAILED and r.error is not None
        ]
        return "; ".join(failures) or "no stage succeeded"
