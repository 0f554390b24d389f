"""
Analysis Service

Entry point used by the API and the Celery worker:
- submit_analysis: create a run and start executing it (inline or Celery)
- get_run_status / get_result: read run snapshots from the run store
- cancel_run: set the token (inline) and the shared cancellation flag
- provider_health / reset_provider: circuit breaker introspection
"""

import asyncio
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from src.core.config import settings
from src.core.exceptions import (
    RunFailedError,
    RunNotFoundError,
    RunNotReadyError,
    ValidationError,
)
from src.core.logging import LogContext, get_logger
from src.engines.analysis.cancellation import CancellationToken
from src.engines.analysis.circuit_breaker import (
    CircuitBreakerRegistry,
    InMemoryBreakerStore,
    RedisBreakerStore,
)
from src.engines.analysis.orchestrator import OrchestratorConfig, PipelineOrchestrator
from src.engines.analysis.providers import HttpProviderClient, ProviderClient, SimulatedProviderClient
from src.engines.analysis.recovery import RecoverySynthesizer
from src.engines.analysis.repositories import (
    AnalysisRepository,
    InMemoryRunStore,
    RedisRunStore,
    RunStore,
)
from src.engines.analysis.schemas import (
    AnalysisRequest,
    AnalysisResultDTO,
    ProgressEvent,
    ProviderHealthDTO,
    RunStatus,
    StageDefinition,
)
from src.engines.analysis.state import PipelineRun
from src.pipeline.stages import DEFAULT_STAGE_DEFINITIONS

logger = get_logger(__name__)


class AnalysisService:
    """
    Coordinates the run store, the orchestrator and persistence.

    Args:
        run_store: live run snapshots, events and cancellation flags
        breaker_registry: shared circuit breakers
        provider_client: provider invocation
        repository: SQL persistence and last-known-good source (optional)
        stage_definitions: stage name -> StageDefinition
        execution_mode: "inline" or "celery"
        orchestrator_options: extra OrchestratorConfig fields (sleep, jitter, clock...)
    """

    def __init__(
        self,
        run_store: RunStore,
        breaker_registry: CircuitBreakerRegistry,
        provider_client: ProviderClient,
        repository: Optional[AnalysisRepository] = None,
        stage_definitions: Optional[Dict[str, StageDefinition]] = None,
        execution_mode: Optional[str] = None,
        **orchestrator_options: Any,
    ):
        self.run_store = run_store
        self.breaker_registry = breaker_registry
        self.provider_client = provider_client
        self.repository = repository
        self.stage_definitions = stage_definitions or DEFAULT_STAGE_DEFINITIONS
        self.execution_mode = execution_mode or settings.PIPELINE_EXECUTION_MODE
        if self.execution_mode not in ("inline", "celery"):
            raise ValueError(f"Unknown execution mode: {self.execution_mode}")

        self.orchestrator = PipelineOrchestrator(OrchestratorConfig(
            stage_definitions=self.stage_definitions,
            provider_client=provider_client,
            breaker_registry=breaker_registry,
            synthesizer=RecoverySynthesizer(self.stage_definitions, last_known_good=repository),
            **orchestrator_options,
        ))

        # Inline runs owned by this process
        self._tokens: Dict[str, CancellationToken] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # =========================================================================
    # Submission and execution
    # =========================================================================

    async def submit_analysis(self, request: AnalysisRequest) -> PipelineRun:
        """
        Create a run and start executing it.

        Returns:
            The freshly created (running) PipelineRun
        """
        run = self.orchestrator.create_run(request)
        await self.run_store.save(run)
        await self.run_store.publish_event(ProgressEvent(
            run_id=run.id,
            status="queued",
            progress=0.0,
            message="Analysis queued",
            metadata={"stages": [r.stage for r in run.stage_results], "priority": request.priority.value},
        ))

        with LogContext(run_id=run.id):
            logger.info(
                "analysis_submitted",
                image_ref=request.image_ref,
                stages=[r.stage for r in run.stage_results],
                priority=request.priority.value,
                execution_mode=self.execution_mode
            )

            if self.execution_mode == "celery":
                # Imported here: the task module builds its own service
                from src.core.celery_app import TASK_PRIORITIES
                from src.pipeline.tasks import run_analysis

                task = run_analysis.apply_async(
                    args=[run.id],
                    priority=TASK_PRIORITIES[request.priority.value]
                )
                logger.info("analysis_dispatched", celery_task_id=task.id)
            else:
                token = CancellationToken()
                self._tokens[run.id] = token
                task = asyncio.create_task(self.execute(run, token))
                self._tasks[run.id] = task
                task.add_done_callback(lambda _t, run_id=run.id: self._forget(run_id))

        return run

    def _forget(self, run_id: str):
        self._tasks.pop(run_id, None)
        self._tokens.pop(run_id, None)

    async def _on_progress(self, run: PipelineRun, event: ProgressEvent):
        await self.run_store.publish_event(event)
        await self.run_store.save(run)

    async def execute(self, run: PipelineRun, token: Optional[CancellationToken] = None) -> PipelineRun:
        """Run to a terminal state, then store the snapshot and persist it."""
        token = token or CancellationToken()
        try:
            return await self.orchestrator.run(
                run=run,
                token=token,
                progress_callback=lambda event: self._on_progress(run, event),
            )
        finally:
            await self.run_store.save(run)
            if run.is_terminal:
                await self._persist(run)

    async def _persist(self, run: PipelineRun):
        if self.repository is None:
            return
        try:
            await asyncio.wait_for(
                self.repository.save(run),
                timeout=settings.PERSISTENCE_TIMEOUT_MS / 1000
            )
            logger.info("analysis_persisted", run_id=run.id, status=run.overall_status.value)
        except (asyncio.TimeoutError, SQLAlchemyError, OSError) as e:
            # The run store still holds the terminal snapshot
            logger.error(
                "analysis_persist_failed",
                run_id=run.id,
                error=str(e),
                error_type=type(e).__name__
            )

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_run(self, run_id: str) -> PipelineRun:
        run = await self.run_store.load(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def get_run_status(self, run_id: str) -> Dict[str, Any]:
        """Run snapshot (camelCase); falls back to the persisted record."""
        run = await self.run_store.load(run_id)
        if run is not None:
            return run.to_dict()

        record = await self.repository.get(run_id) if self.repository else None
        if record is None:
            raise RunNotFoundError(run_id)
        return record.to_response_dict()

    async def get_result(self, run_id: str) -> AnalysisResultDTO:
        """
        Completion payload of a terminal run.

        Raises:
            RunNotFoundError: unknown run id
            RunNotReadyError: run still executing
            RunFailedError: run ended without an analysis
        """
        run = await self.get_run(run_id)
        if not run.is_terminal:
            raise RunNotReadyError(run_id, run.overall_status.value)
        if run.overall_status == RunStatus.FAILED or run.analysis is None:
            raise RunFailedError(
                run_id,
                run.failure_reason,
                [r.to_dict() for r in run.stage_results]
            )

        body = run.analysis.to_wire()
        body["metadata"]["qualityScore"] = run.quality_score
        return AnalysisResultDTO(
            id=run.id,
            mode=run.mode,
            visual_annotations=body["visualAnnotations"],
            suggestions=body["suggestions"],
            summary=body["summary"],
            metadata=body["metadata"],
        )

    async def get_events(self, run_id: str, since: int = 0) -> List[Dict[str, Any]]:
        await self.get_run(run_id)
        return await self.run_store.events(run_id, since)

    # =========================================================================
    # Cancellation
    # =========================================================================

    async def cancel_run(self, run_id: str) -> PipelineRun:
        """Request cancellation; a no-op for runs that already finished."""
        run = await self.get_run(run_id)
        if run.is_terminal:
            logger.info("cancel_ignored_terminal_run", run_id=run_id, status=run.overall_status.value)
            return run

        await self.run_store.request_cancel(run_id)
        token = self._tokens.get(run_id)
        if token is not None:
            token.cancel("cancelled by client")
        logger.info("cancel_requested", run_id=run_id, local=token is not None)
        return run

    # =========================================================================
    # Provider health
    # =========================================================================

    async def provider_health(self) -> List[ProviderHealthDTO]:
        states = await self.breaker_registry.all_states()
        return [ProviderHealthDTO.model_validate(health.to_dict()) for health in states.values()]

    async def reset_provider(self, provider: str) -> ProviderHealthDTO:
        known = {d.provider for d in self.stage_definitions.values()}
        if provider not in known:
            raise ValidationError(
                f"Unknown provider: {provider}",
                details={"known_providers": sorted(known)}
            )
        health = await self.breaker_registry.reset(provider)
        return ProviderHealthDTO.model_validate(health.to_dict())

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def shutdown(self):
        """Cancel inline runs still executing and close the provider client."""
        for token in list(self._tokens.values()):
            token.cancel("service shutdown")
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        await self.provider_client.aclose()


def build_analysis_service(redis_client=None, session_factory=None, **kwargs: Any) -> AnalysisService:
    """
    Wire an AnalysisService from settings.

    Args:
        redis_client: redis.asyncio client; required when STATE_BACKEND is "redis"
        session_factory: async session factory for the analysis repository
        **kwargs: passed through to AnalysisService
    """
    if settings.STATE_BACKEND == "redis":
        if redis_client is None:
            raise ValueError("STATE_BACKEND=redis needs a redis client")
        run_store = RedisRunStore(redis_client, ttl=settings.RUN_TTL_SECONDS)
        breaker_store = RedisBreakerStore(redis_client)
    else:
        run_store = InMemoryRunStore()
        breaker_store = InMemoryBreakerStore()

    stage_definitions = kwargs.pop("stage_definitions", None) or DEFAULT_STAGE_DEFINITIONS
    registry = CircuitBreakerRegistry(
        breaker_store,
        providers=sorted({d.provider for d in stage_definitions.values()})
    )
    provider_client = kwargs.pop("provider_client", None) or (
        SimulatedProviderClient() if settings.PROVIDER_SIMULATION else HttpProviderClient()
    )
    repository = AnalysisRepository(session_factory) if session_factory is not None else None

    logger.info(
        "analysis_service_built",
        state_backend=settings.STATE_BACKEND,
        provider_client=type(provider_client).__name__,
        persistence=repository is not None
    )
    return AnalysisService(
        run_store=run_store,
        breaker_registry=registry,
        provider_client=provider_client,
        repository=repository,
        stage_definitions=stage_definitions,
        **kwargs,
    )
