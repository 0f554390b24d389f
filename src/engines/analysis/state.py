"""
Run and Stage State

PipelineRun owns its StageResults. Both are small state machines: once a
stage or run reaches a terminal status it can no longer change, and an
illegal move raises InvalidStateTransition.

    StageResult:  pending -> running -> succeeded | failed
                  pending -> skipped | failed
                  running -> skipped
    PipelineRun:  running -> completed | partial | degraded | failed
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from src.core.exceptions import InvalidStateTransition
from src.engines.analysis.quality import QualityWeights, compute_quality_score
from src.engines.analysis.schemas import (
    AnalysisRequest,
    NormalizedAnalysis,
    RecoveryMode,
    RunStatus,
    StageError,
    StageStatus,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


TERMINAL_STAGE_STATUSES = {StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED}
TERMINAL_RUN_STATUSES = {RunStatus.COMPLETED, RunStatus.PARTIAL, RunStatus.DEGRADED, RunStatus.FAILED}

_STAGE_TRANSITIONS = {
    StageStatus.PENDING: {StageStatus.RUNNING, StageStatus.SKIPPED, StageStatus.FAILED},
    StageStatus.RUNNING: {StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED},
}


@dataclass
class StageResult:
    stage: str
    provider: str
    max_attempts: int
    required: bool = True
    status: StageStatus = StageStatus.PENDING
    attempt_count: int = 0
    raw_response: Optional[str] = None
    normalized_output: Optional[NormalizedAnalysis] = None
    normalization_strategy: Optional[str] = None
    error: Optional[StageError] = None
    warnings: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STAGE_STATUSES

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at and self.ended_at:
            return int((self.ended_at - self.started_at).total_seconds() * 1000)
        return None

    def _move(self, target: StageStatus):
        if target not in _STAGE_TRANSITIONS.get(self.status, set()):
            raise InvalidStateTransition("stage", self.status.value, target.value, stage=self.stage)
        self.status = target

    def mark_running(self, now: Optional[datetime] = None):
        self._move(StageStatus.RUNNING)
        self.started_at = now or utcnow()

    def begin_attempt(self) -> int:
        """Count a new provider call; returns the attempt number."""
        if self.status != StageStatus.RUNNING:
            raise InvalidStateTransition("stage", self.status.value, "attempt", stage=self.stage)
        if self.attempt_count >= self.max_attempts:
            raise InvalidStateTransition(
                "stage", f"attempt {self.attempt_count}", f"attempt {self.attempt_count + 1}",
                stage=self.stage,
                details={"max_attempts": self.max_attempts}
            )
        self.attempt_count += 1
        return self.attempt_count

    def mark_succeeded(
        self,
        raw_response: Optional[str],
        output: NormalizedAnalysis,
        warnings: Optional[List[str]] = None,
        strategy: Optional[str] = None,
        now: Optional[datetime] = None
    ):
        self._move(StageStatus.SUCCEEDED)
        self.raw_response = raw_response
        self.normalized_output = output
        self.normalization_strategy = strategy
        self.warnings.extend(warnings or [])
        self.error = None
        self.ended_at = now or utcnow()

    def mark_failed(self, error: StageError, raw_response: Optional[str] = None, now: Optional[datetime] = None):
        self._move(StageStatus.FAILED)
        self.error = error
        if raw_response is not None:
            self.raw_response = raw_response
        self.ended_at = now or utcnow()

    def mark_skipped(self, reason: str, now: Optional[datetime] = None):
        self._move(StageStatus.SKIPPED)
        self.warnings.append(f"skipped: {reason}")
        self.ended_at = now or utcnow()

    def to_dict(self, include_raw: bool = False) -> Dict[str, Any]:
        data = {
            "stage": self.stage,
            "provider": self.provider,
            "required": self.required,
            "status": self.status.value,
            "attemptCount": self.attempt_count,
            "maxAttempts": self.max_attempts,
            "normalizedOutput": self.normalized_output.to_wire() if self.normalized_output else None,
            "normalizationStrategy": self.normalization_strategy,
            "error": self.error.model_dump(mode="json", by_alias=True) if self.error else None,
            "warnings": list(self.warnings),
            "startedAt": _iso(self.started_at),
            "endedAt": _iso(self.ended_at),
            "durationMs": self.duration_ms,
        }
        if include_raw:
            data["rawResponse"] = self.raw_response
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageResult":
        output = data.get("normalizedOutput")
        error = data.get("error")
        return cls(
            stage=data["stage"],
            provider=data["provider"],
            max_attempts=data["maxAttempts"],
            required=data.get("required", True),
            status=StageStatus(data["status"]),
            attempt_count=data.get("attemptCount", 0),
            raw_response=data.get("rawResponse"),
            normalized_output=NormalizedAnalysis.model_validate(output) if output else None,
            normalization_strategy=data.get("normalizationStrategy"),
            error=StageError.model_validate(error) if error else None,
            warnings=list(data.get("warnings") or []),
            started_at=_parse_dt(data.get("startedAt")),
            ended_at=_parse_dt(data.get("endedAt")),
        )


@dataclass
class PipelineRun:
    id: str
    request: AnalysisRequest
    stage_results: List[StageResult]
    overall_status: RunStatus = RunStatus.RUNNING
    mode: Optional[RecoveryMode] = None
    failure_reason: Optional[str] = None
    analysis: Optional[NormalizedAnalysis] = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    quality_weights: Optional[QualityWeights] = field(default=None, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.overall_status in TERMINAL_RUN_STATUSES

    @property
    def quality_score(self) -> float:
        return compute_quality_score(self.stage_results, self.quality_weights)

    @property
    def progress(self) -> float:
        if not self.stage_results:
            return 100.0
        done = sum(1 for r in self.stage_results if r.is_terminal)
        return round(done / len(self.stage_results) * 100, 1)

    def stage(self, name: str) -> StageResult:
        for result in self.stage_results:
            if result.stage == name:
                return result
        raise KeyError(name)

    def succeeded_stages(self) -> List[StageResult]:
        return [r for r in self.stage_results if r.status == StageStatus.SUCCEEDED]

    def finish(
        self,
        status: RunStatus,
        mode: Optional[RecoveryMode] = None,
        analysis: Optional[NormalizedAnalysis] = None,
        failure_reason: Optional[str] = None,
        now: Optional[datetime] = None
    ):
        """Move the run to a terminal status."""
        if self.is_terminal or status == RunStatus.RUNNING:
            raise InvalidStateTransition("run", self.overall_status.value, status.value, run_id=self.id)
        if status == RunStatus.COMPLETED and any(
            r.required and r.status != StageStatus.SUCCEEDED for r in self.stage_results
        ):
            raise InvalidStateTransition(
                "run", self.overall_status.value, status.value,
                run_id=self.id,
                details={"reason": "required stage did not succeed"}
            )
        if status == RunStatus.DEGRADED and not self.request.options.enable_degraded_mode:
            raise InvalidStateTransition(
                "run", self.overall_status.value, status.value,
                run_id=self.id,
                details={"reason": "degraded mode disabled"}
            )
        if status == RunStatus.DEGRADED and not any(
            r.required and r.status == StageStatus.FAILED for r in self.stage_results
        ):
            raise InvalidStateTransition(
                "run", self.overall_status.value, status.value,
                run_id=self.id,
                details={"reason": "no required stage failed"}
            )
        self.overall_status = status
        self.mode = mode
        self.analysis = analysis
        self.failure_reason = failure_reason
        self.completed_at = now or utcnow()

    def to_dict(self, include_raw: bool = False) -> Dict[str, Any]:
        return {
            "id": self.id,
            "request": self.request.model_dump(mode="json", by_alias=True),
            "overallStatus": self.overall_status.value,
            "mode": self.mode.value if self.mode else None,
            "failureReason": self.failure_reason,
            "qualityScore": self.quality_score,
            "progress": self.progress,
            "stageResults": [r.to_dict(include_raw=include_raw) for r in self.stage_results],
            "analysis": self.analysis.to_wire() if self.analysis else None,
            "createdAt": _iso(self.created_at),
            "completedAt": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineRun":
        analysis = data.get("analysis")
        return cls(
            id=data["id"],
            request=AnalysisRequest.model_validate(data["request"]),
            stage_results=[StageResult.from_dict(r) for r in data.get("stageResults", [])],
            overall_status=RunStatus(data["overallStatus"]),
            mode=RecoveryMode(data["mode"]) if data.get("mode") else None,
            failure_reason=data.get("failureReason"),
            analysis=NormalizedAnalysis.model_validate(analysis) if analysis else None,
            created_at=_parse_dt(data.get("createdAt")) or utcnow(),
            completed_at=_parse_dt(data.get("completedAt")),
        )
