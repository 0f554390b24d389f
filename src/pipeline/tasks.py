"""
Celery Tasks for the Analysis Pipeline

run_analysis executes one PipelineRun on a worker:
- loads the run snapshot written by the API process
- watches the shared cancellation flag while the run executes
- stores the terminal snapshot and persists the record
"""

import asyncio
import traceback
from typing import Any, Dict

import redis.asyncio as redis

from src.core.celery_app import celery_app
from src.core.config import settings
from src.core.database import async_session_maker, engine
from src.core.exceptions import RunNotFoundError
from src.core.logging import clear_run_context, get_logger, set_run_context
from src.engines.analysis.cancellation import CancellationToken
from src.engines.analysis.services import build_analysis_service

logger = get_logger(__name__)


async def _execute_run(run_id: str) -> Dict[str, Any]:
    redis_client = redis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
    service = build_analysis_service(
        redis_client=redis_client,
        session_factory=async_session_maker,
        execution_mode="inline",
    )
    token = CancellationToken()
    try:
        run = await service.run_store.load(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if run.is_terminal:
            logger.warning("task_run_already_terminal", status=run.overall_status.value)
            return {"run_id": run_id, "status": run.overall_status.value}

        if await service.run_store.is_cancel_requested(run_id):
            token.cancel("cancelled before start")
        token.watch(
            lambda: service.run_store.is_cancel_requested(run_id),
            settings.CANCEL_POLL_INTERVAL_MS
        )

        run = await service.execute(run, token)
        return {
            "run_id": run_id,
            "status": run.overall_status.value,
            "mode": run.mode.value if run.mode else None,
            "quality_score": run.quality_score,
        }
    finally:
        await token.stop_watching()
        await service.provider_client.aclose()
        await redis_client.aclose()
        # Pooled connections are bound to this task's event loop
        await engine.dispose()


@celery_app.task(
    bind=True,
    name="src.pipeline.tasks.run_analysis",
    acks_late=True
)
def run_analysis(self, run_id: str) -> Dict[str, Any]:
    """
    Celery task executing one analysis run.

    Args:
        run_id: id of a run already saved to the run store

    Returns:
        Dict with run_id, status, mode and quality_score
    """
    set_run_context(run_id)

    try:
        logger.info("task_run_analysis_started", celery_task_id=self.request.id)

        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            result = loop.run_until_complete(_execute_run(run_id))
        finally:
            loop.close()

        logger.info("task_run_analysis_completed", **result)
        return result

    except Exception as e:
        logger.error(
            "task_run_analysis_failed",
            error=str(e),
            traceback=traceback.format_exc()
        )
        raise

    finally:
        clear_run_context()
