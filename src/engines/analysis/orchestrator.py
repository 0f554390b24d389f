"""
Stage Orchestrator

Runs the requested stages of an analysis in dependency order. A stage starts
once every dependency it has inside the requested set is terminal; ready
stages run concurrently as asyncio tasks.

Per attempt:
1. check the cancellation token
2. ask the breaker to admit the call (rejection fails the stage with
   provider-unavailable and consumes no retry budget)
3. call the provider, bounded by the stage timeout and raced against the token
4. normalize the raw text; a failed normalization is a malformed response
5. classify failures, report them to the breaker, back off and retry while
   the failure is retryable and budget remains
"""

import uuid
import random
import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from pydantic import BaseModel

from src.core.config import settings
from src.core.exceptions import (
    MalformedResponseError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RunCancelledError,
    ValidationError,
)
from src.core.logging import LogContext, get_logger, with_logging
from src.core.metrics import (
    record_run_completion,
    record_run_started,
    record_stage_failure,
    track_stage_latency,
)
from src.engines.analysis.cancellation import CancellationToken
from src.engines.analysis.circuit_breaker import CircuitBreakerRegistry
from src.engines.analysis.classifier import ErrorClassifier, ProviderResponseMeta
from src.engines.analysis.normalizer import ResponseNormalizer
from src.engines.analysis.providers import ProviderClient
from src.engines.analysis.quality import QualityWeights
from src.engines.analysis.recovery import RecoveryDecision, RecoverySynthesizer
from src.engines.analysis.schemas import (
    AnalysisRequest,
    FailureKind,
    NormalizedAnalysis,
    ProgressEvent,
    RunStatus,
    StageDefinition,
    StageError,
    StageStatus,
)
from src.engines.analysis.state import PipelineRun, StageResult, utcnow

logger = get_logger(__name__)

ProgressCallback = Callable[[ProgressEvent], Any]
SleepFn = Callable[[float, CancellationToken], Awaitable[bool]]


async def cancellable_sleep(seconds: float, token: CancellationToken) -> bool:
    """Back off for `seconds`; True if the token fired meanwhile."""
    return await token.wait(timeout=seconds)


def uniform_jitter() -> float:
    return random.uniform(-1.0, 1.0)


def build_stage_payload(
    request: AnalysisRequest,
    definition: StageDefinition,
    upstream: Dict[str, NormalizedAnalysis]
) -> Dict[str, Any]:
    """Provider input for a stage: the request plus upstream stage outputs."""
    return {
        "imageRef": request.image_ref,
        "userContext": request.user_context,
        "purpose": definition.purpose,
        "upstream": {name: output.to_wire() for name, output in upstream.items()},
    }


@dataclass
class OrchestratorConfig:
    stage_definitions: Dict[str, StageDefinition]
    provider_client: ProviderClient
    breaker_registry: CircuitBreakerRegistry
    normalizer: ResponseNormalizer = field(default_factory=ResponseNormalizer)
    classifier: ErrorClassifier = field(default_factory=ErrorClassifier)
    synthesizer: Optional[RecoverySynthesizer] = None
    progress_callback: Optional[ProgressCallback] = None
    output_schema: Type[BaseModel] = NormalizedAnalysis
    payload_builder: Callable[..., Dict[str, Any]] = build_stage_payload
    clock: Callable[[], datetime] = utcnow
    sleep: SleepFn = cancellable_sleep
    jitter: Callable[[], float] = uniform_jitter
    jitter_ratio: float = field(default_factory=lambda: settings.RETRY_JITTER_RATIO)
    backoff_cap_ms: int = field(default_factory=lambda: settings.RETRY_BACKOFF_CAP_MS)
    quality_weights: Optional[QualityWeights] = None


class ProgressReporter:
    """Serializes progress events for one run; percent never decreases."""

    def __init__(self, run: PipelineRun, callback: Optional[ProgressCallback], clock: Callable[[], datetime]):
        self.run = run
        self.callback = callback
        self.clock = clock
        self._last = 0.0
        self._lock = asyncio.Lock()

    async def emit(self, stage: Optional[str], status: str, message: str, metadata: Optional[Dict[str, Any]] = None):
        if self.callback is None:
            return
        async with self._lock:
            self._last = max(self._last, self.run.progress)
            event = ProgressEvent(
                run_id=self.run.id,
                stage=stage,
                status=status,
                progress=self._last,
                message=message,
                metadata=metadata or {},
                timestamp=self.clock(),
            )
            try:
                outcome = self.callback(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                # The progress sink is fire-and-forget
                logger.warning(
                    "progress_callback_failed",
                    stage=stage,
                    error=str(e),
                    error_type=type(e).__name__
                )


class PipelineOrchestrator:
    """Executes analysis runs."""

    def __init__(self, config: OrchestratorConfig):
        self.config = config
        self.synthesizer = config.synthesizer or RecoverySynthesizer(config.stage_definitions)

    # -------------------------------------------------------------------------
    # Run construction
    # -------------------------------------------------------------------------

    def plan(self, requested: List[str]) -> List[str]:
        """Requested stages in dependency order (request order breaks ties)."""
        definitions = self.config.stage_definitions
        unknown = [name for name in requested if name not in definitions]
        if unknown:
            raise ValidationError(
                f"Unknown stage(s): {', '.join(unknown)}",
                details={"known_stages": sorted(definitions)}
            )

        wanted = set(requested)
        deps = {name: set(definitions[name].depends_on_stages) & wanted for name in requested}
        ordered: List[str] = []
        remaining = list(requested)
        while remaining:
            ready = [name for name in remaining if deps[name] <= set(ordered)]
            if not ready:
                raise ValidationError(
                    "Stage dependencies contain a cycle",
                    details={"stages": remaining}
                )
            ordered.append(ready[0])
            remaining.remove(ready[0])
        return ordered

    def create_run(self, request: AnalysisRequest, run_id: Optional[str] = None) -> PipelineRun:
        order = self.plan(list(request.requested_stages))
        max_attempts = request.options.max_retry_attempts + 1
        results = [
            StageResult(
                stage=name,
                provider=self.config.stage_definitions[name].provider,
                max_attempts=max_attempts,
                required=self.config.stage_definitions[name].required,
            )
            for name in order
        ]
        return PipelineRun(
            id=run_id or str(uuid.uuid4()),
            request=request,
            stage_results=results,
            created_at=self.config.clock(),
            quality_weights=self.config.quality_weights,
        )

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def run(
        self,
        request: Optional[AnalysisRequest] = None,
        token: Optional[CancellationToken] = None,
        run: Optional[PipelineRun] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> PipelineRun:
        """
        Execute a run to a terminal state.

        Args:
            request: analysis request (ignored when `run` is given)
            token: cancellation token
            run: a run created earlier with create_run()
            progress_callback: overrides the configured callback for this run

        Returns:
            The terminal PipelineRun
        """
        if run is None:
            if request is None:
                raise ValueError("run() needs a request or a run")
            run = self.create_run(request)
        if run.quality_weights is None:
            run.quality_weights = self.config.quality_weights
        token = token or CancellationToken()
        reporter = ProgressReporter(run, progress_callback or self.config.progress_callback, self.config.clock)

        with LogContext(run_id=run.id):
            return await self._execute(run, token, reporter)

    @with_logging("pipeline_run")
    async def _execute(self, run: PipelineRun, token: CancellationToken, reporter: ProgressReporter) -> PipelineRun:
        started = self.config.clock()
        record_run_started()
        await reporter.emit(None, RunStatus.RUNNING.value, "Analysis started")

        definitions = self.config.stage_definitions
        pending = [r.stage for r in run.stage_results]
        wanted = set(pending)
        running: Dict[asyncio.Task, str] = {}
        aborted = False

        try:
            while True:
                if not aborted and not token.is_cancelled:
                    for name in list(pending):
                        deps = set(definitions[name].depends_on_stages) & wanted
                        if all(run.stage(dep).is_terminal for dep in deps):
                            pending.remove(name)
                            task = asyncio.create_task(self._run_stage(run, definitions[name], token, reporter))
                            running[task] = name

                if not running:
                    break

                done, _ = await asyncio.wait(set(running), return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    name = running.pop(task)
                    task.result()
                    result = run.stage(name)
                    if result.status == StageStatus.FAILED and not aborted:
                        if self.synthesizer.decide_after_failure(run, result) == RecoveryDecision.ABORT:
                            aborted = True
                            logger.warning("run_aborted", failed_stage=name, kind=result.error.kind.value)
        except BaseException as e:
            for task in running:
                task.cancel()
            await asyncio.gather(*running, return_exceptions=True)
            if not run.is_terminal:
                for name in pending:
                    run.stage(name).mark_skipped("internal error", now=self.config.clock())
                run.finish(RunStatus.FAILED, failure_reason=f"internal error: {type(e).__name__}", now=self.config.clock())
                record_run_completion(RunStatus.FAILED.value)
            raise

        now = self.config.clock()
        if token.is_cancelled:
            for name in pending:
                run.stage(name).mark_skipped("cancelled", now=now)
            run.finish(RunStatus.FAILED, failure_reason="cancelled", now=now)
            logger.info("run_cancelled")
        else:
            for name in pending:
                run.stage(name).mark_skipped("aborted after stage failure", now=now)
            await self.synthesizer.synthesize(run)

        duration = (self.config.clock() - started).total_seconds()
        record_run_completion(
            run.overall_status.value,
            mode=run.mode.value if run.mode else "none",
            quality_score=run.quality_score,
            duration_seconds=duration
        )
        logger.info(
            "run_finished",
            status=run.overall_status.value,
            mode=run.mode.value if run.mode else None,
            quality_score=run.quality_score,
            failure_reason=run.failure_reason
        )
        await reporter.emit(
            None,
            run.overall_status.value,
            f"Analysis {run.overall_status.value}",
            {"mode": run.mode.value if run.mode else None, "qualityScore": run.quality_score}
        )
        return run

    # -------------------------------------------------------------------------
    # Stage execution
    # -------------------------------------------------------------------------

    def _fail(self, result: StageResult, error: StageError, raw: Optional[str] = None):
        result.mark_failed(error, raw_response=raw, now=self.config.clock())
        record_stage_failure(result.stage, error.kind.value)
        logger.warning(
            "stage_failed",
            kind=error.kind.value,
            attempts=result.attempt_count,
            error=error.message
        )

    def _cancelled(self, result: StageResult):
        self._fail(result, StageError(kind=FailureKind.CANCELLED, message="Run was cancelled", retryable=False))

    async def _run_stage(
        self,
        run: PipelineRun,
        definition: StageDefinition,
        token: CancellationToken,
        reporter: ProgressReporter
    ):
        result = run.stage(definition.name)
        provider = definition.provider

        with LogContext(stage=definition.name, provider=provider):
            if token.is_cancelled:
                result.mark_skipped("cancelled", now=self.config.clock())
                return

            result.mark_running(now=self.config.clock())
            logger.info("stage_started")
            await reporter.emit(definition.name, StageStatus.RUNNING.value, f"Running {definition.name} stage")

            upstream = {
                dep: run.stage(dep).normalized_output
                for dep in definition.depends_on_stages
                if dep in {r.stage for r in run.stage_results}
                and run.stage(dep).status == StageStatus.SUCCEEDED
            }
            payload = self.config.payload_builder(run.request, definition, upstream)
            options = run.request.options
            malformed_failures = 0

            while True:
                if token.is_cancelled:
                    self._cancelled(result)
                    break

                if not await self.config.breaker_registry.acquire(provider):
                    rejection = ProviderUnavailableError(provider, stage=definition.name)
                    classification = self.config.classifier.classify(rejection)
                    logger.warning("stage_rejected_by_breaker", kind=classification.kind.value)
                    self._fail(result, StageError(
                        kind=classification.kind,
                        message=rejection.message,
                        retryable=classification.retryable,
                    ))
                    break

                attempt = result.begin_attempt()
                raw = None
                try:
                    with track_stage_latency(definition.name):
                        raw = await self._call_provider(definition, payload, token)
                except RunCancelledError:
                    await self.config.breaker_registry.release(provider)
                    self._cancelled(result)
                    break
                except Exception as e:
                    error = e
                else:
                    normalized = self.config.normalizer.normalize(raw, self.config.output_schema)
                    if normalized.ok:
                        await self.config.breaker_registry.record_outcome(provider, success=True)
                        result.mark_succeeded(
                            raw,
                            normalized.data,
                            warnings=normalized.warnings,
                            strategy=normalized.strategy,
                            now=self.config.clock()
                        )
                        logger.info(
                            "stage_completed",
                            attempts=attempt,
                            strategy=normalized.strategy,
                            warnings=len(normalized.warnings),
                            duration_ms=result.duration_ms
                        )
                        break
                    malformed_failures += 1
                    error = MalformedResponseError(
                        f"Response from '{provider}' could not be normalized: {normalized.error}",
                        provider=provider,
                        raw_text=normalized.raw_text,
                        stage=definition.name,
                    )

                classification = self.config.classifier.classify(
                    error,
                    ProviderResponseMeta(provider=provider, malformed_failures=malformed_failures)
                )
                await self.config.breaker_registry.record_outcome(provider, success=False, kind=classification.kind)
                logger.warning(
                    "stage_attempt_failed",
                    attempt=attempt,
                    kind=classification.kind.value,
                    retryable=classification.retryable,
                    error=str(error)
                )

                if classification.retryable and result.attempt_count <= options.max_retry_attempts:
                    delay_ms = self.backoff_ms(options.retry_delay_ms, attempt, classification.backoff_floor_ms)
                    await reporter.emit(
                        definition.name,
                        "retrying",
                        f"Retrying {definition.name} stage in {delay_ms}ms",
                        {"attempt": attempt, "kind": classification.kind.value, "delayMs": delay_ms}
                    )
                    if await self.config.sleep(delay_ms / 1000, token):
                        self._cancelled(result)
                        break
                    continue

                exhausted = classification.retryable
                self._fail(
                    result,
                    StageError(
                        kind=FailureKind.EXHAUSTED_RETRIES if exhausted else classification.kind,
                        message=str(error),
                        retryable=classification.retryable,
                        http_status=classification.http_status,
                        cause=classification.kind if exhausted else None,
                    ),
                    raw=raw,
                )
                break

            await reporter.emit(
                definition.name,
                result.status.value,
                f"{definition.name} stage {result.status.value}",
                {"attempts": result.attempt_count, "kind": result.error.kind.value if result.error else None}
            )

    async def _call_provider(self, definition: StageDefinition, payload: Dict[str, Any], token: CancellationToken) -> str:
        """Provider call bounded by the stage timeout and raced against cancellation."""
        timeout_s = definition.timeout_ms / 1000
        call = asyncio.ensure_future(asyncio.wait_for(
            self.config.provider_client.call(definition.name, definition.provider, payload, definition.timeout_ms),
            timeout=timeout_s
        ))
        cancelled = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait({call, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (call, cancelled):
                if not task.done():
                    task.cancel()

        if call in done:
            await asyncio.gather(cancelled, return_exceptions=True)
            try:
                return call.result()
            except asyncio.TimeoutError:
                raise ProviderTimeoutError(definition.provider, definition.timeout_ms, stage=definition.name)

        await asyncio.gather(call, return_exceptions=True)
        raise RunCancelledError(stage=definition.name)

    def backoff_ms(self, base_ms: int, attempt: int, floor_ms: int = 0) -> int:
        """Exponential backoff with jitter, capped, never below `floor_ms`."""
        delay = base_ms * (2 ** (attempt - 1))
        delay = min(max(delay, floor_ms), self.config.backoff_cap_ms)
        jittered = delay * (1 + self.config.jitter_ratio * self.config.jitter())
        return int(max(min(jittered, self.config.backoff_cap_ms), floor_ms, 0))
