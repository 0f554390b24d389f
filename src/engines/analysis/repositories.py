"""
Analysis Repositories

- RunStore: live PipelineRun snapshots, progress events and cancellation
  flags (Redis for multi-process deployments, in-memory otherwise)
- AnalysisRepository: terminal results in SQL; also the last-known-good
  source for degraded runs
"""

import json
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from src.core.logging import get_logger
from src.core.metrics import track_latency
from src.engines.analysis.schemas import NormalizedAnalysis, ProgressEvent, RecoveryMode
from src.engines.analysis.state import PipelineRun
from src.modules.analysis.models import AnalysisRecord

logger = get_logger(__name__)


# =============================================================================
# Run Store
# =============================================================================

class RunStore(ABC):
    """Live run state shared between the API and whoever executes the run."""

    @abstractmethod
    async def save(self, run: PipelineRun):
        ...

    @abstractmethod
    async def load(self, run_id: str) -> Optional[PipelineRun]:
        ...

    @abstractmethod
    async def publish_event(self, event: ProgressEvent):
        ...

    @abstractmethod
    async def events(self, run_id: str, since: int = 0) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def request_cancel(self, run_id: str):
        ...

    @abstractmethod
    async def is_cancel_requested(self, run_id: str) -> bool:
        ...


class InMemoryRunStore(RunStore):
    """Single-process run store (development, tests)."""

    def __init__(self):
        self._runs: Dict[str, Dict[str, Any]] = {}
        self._events: Dict[str, List[Dict[str, Any]]] = {}
        self._cancelled: set = set()
        self._lock = threading.Lock()

    async def save(self, run: PipelineRun):
        snapshot = run.to_dict(include_raw=True)
        with self._lock:
            self._runs[run.id] = snapshot

    async def load(self, run_id: str) -> Optional[PipelineRun]:
        with self._lock:
            snapshot = self._runs.get(run_id)
        return PipelineRun.from_dict(snapshot) if snapshot else None

    async def publish_event(self, event: ProgressEvent):
        with self._lock:
            self._events.setdefault(event.run_id, []).append(
                event.model_dump(mode="json", by_alias=True)
            )

    async def events(self, run_id: str, since: int = 0) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._events.get(run_id, [])[since:])

    async def request_cancel(self, run_id: str):
        with self._lock:
            self._cancelled.add(run_id)

    async def is_cancel_requested(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._cancelled


class RedisRunStore(RunStore):
    """Run snapshots as JSON strings, events as a list plus a pub/sub channel."""

    def __init__(self, redis_client, ttl: int = 86400, prefix: str = "analysis"):
        self.redis = redis_client
        self.ttl = ttl
        self.prefix = prefix

    def _run_key(self, run_id: str) -> str:
        return f"{self.prefix}:run:{run_id}"

    def _events_key(self, run_id: str) -> str:
        return f"{self.prefix}:events:{run_id}"

    def _cancel_key(self, run_id: str) -> str:
        return f"{self.prefix}:cancel:{run_id}"

    def channel(self, run_id: str) -> str:
        return f"{self.prefix}:progress:{run_id}"

    async def save(self, run: PipelineRun):
        await self.redis.setex(
            self._run_key(run.id),
            self.ttl,
            json.dumps(run.to_dict(include_raw=True), default=str)
        )

    async def load(self, run_id: str) -> Optional[PipelineRun]:
        raw = await self.redis.get(self._run_key(run_id))
        return PipelineRun.from_dict(json.loads(raw)) if raw else None

    async def publish_event(self, event: ProgressEvent):
        body = event.model_dump_json(by_alias=True)
        key = self._events_key(event.run_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.rpush(key, body)
            pipe.expire(key, self.ttl)
            pipe.publish(self.channel(event.run_id), body)
            await pipe.execute()

    async def events(self, run_id: str, since: int = 0) -> List[Dict[str, Any]]:
        items = await self.redis.lrange(self._events_key(run_id), since, -1)
        return [json.loads(item) for item in items]

    async def request_cancel(self, run_id: str):
        await self.redis.setex(self._cancel_key(run_id), self.ttl, "1")

    async def is_cancel_requested(self, run_id: str) -> bool:
        return bool(await self.redis.exists(self._cancel_key(run_id)))


# =============================================================================
# Analysis Repository
# =============================================================================

class AnalysisRepository:
    """Terminal results persisted with SQLModel."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    @track_latency("persistence")
    async def save(self, run: PipelineRun) -> AnalysisRecord:
        """Insert or update the record for a terminal run."""
        duration_ms = 0
        if run.completed_at and run.created_at:
            duration_ms = int((run.completed_at - run.created_at).total_seconds() * 1000)

        record = AnalysisRecord(
            id=run.id,
            image_ref=run.request.image_ref,
            user_context=run.request.user_context,
            requested_stages=list(run.request.requested_stages),
            status=run.overall_status.value,
            mode=run.mode.value if run.mode else None,
            failure_reason=run.failure_reason,
            quality_score=run.quality_score,
            analysis=run.analysis.to_wire() if run.analysis else None,
            stage_results=[r.to_dict() for r in run.stage_results],
            total_processing_time_ms=duration_ms,
            created_at=run.created_at,
            completed_at=run.completed_at,
        )
        async with self.session_factory() as session:
            record = await session.merge(record)
            await session.commit()
        return record

    async def get(self, run_id: str) -> Optional[AnalysisRecord]:
        async with self.session_factory() as session:
            return await session.get(AnalysisRecord, run_id)

    async def get_last_known_good(self, image_ref: str) -> Optional[NormalizedAnalysis]:
        """Latest full or partial analysis of the same image, if any."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(AnalysisRecord)
                    .where(AnalysisRecord.image_ref == image_ref)
                    .where(AnalysisRecord.mode.in_([RecoveryMode.FULL.value, RecoveryMode.PARTIAL.value]))
                    .order_by(AnalysisRecord.completed_at.desc())
                    .limit(1)
                )
                record = result.scalars().first()
        except SQLAlchemyError as e:
            logger.warning("last_known_good_query_failed", error=str(e))
            return None

        if record is None or not record.analysis:
            return None
        return NormalizedAnalysis.model_validate(record.analysis)
