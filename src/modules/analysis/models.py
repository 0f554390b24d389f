"""
AnalysisRecord Model

Persists terminal analysis runs with:
- Run outcome (status, recovery mode, quality score)
- The normalized analysis body
- Per-stage diagnostics
"""

from sqlmodel import SQLModel, Field, Column, JSON
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnalysisRecord(SQLModel, table=True):
    """
    Terminal outcome of one pipeline run.

    Records with mode `full` or `partial` double as the last-known-good
    source for degraded runs on the same image.
    """
    __tablename__ = "analysis_records"

    # Primary Key (the run id)
    id: str = Field(primary_key=True)

    # Input Data
    image_ref: str = Field(index=True)
    user_context: Optional[str] = None
    requested_stages: List[str] = Field(default=[], sa_column=Column(JSON))

    # Outcome
    status: str = Field(index=True)
    mode: Optional[str] = Field(default=None, index=True)
    failure_reason: Optional[str] = None
    quality_score: float = Field(default=0.0)

    # Normalized analysis body (camelCase wire shape)
    analysis: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    # Structure: [{stage, provider, status, attemptCount, error, ...}]
    stage_results: List[Dict[str, Any]] = Field(default=[], sa_column=Column(JSON))

    # Performance Tracking
    total_processing_time_ms: int = Field(default=0)

    # Timestamps
    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    def to_response_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        return {
            "id": self.id,
            "image_ref": self.image_ref,
            "status": self.status,
            "mode": self.mode,
            "failure_reason": self.failure_reason,
            "quality_score": self.quality_score,
            "analysis": self.analysis,
            "stages": self.stage_results,
            "processing_time_ms": self.total_processing_time_ms,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None
        }
