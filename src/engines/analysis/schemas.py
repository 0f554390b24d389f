"""
Analysis Schemas

Wire models for requests, stage configuration, progress events and the
normalized analysis body. Wire names are camelCase; Python attributes are
snake_case and both are accepted on input.

NormalizedAnalysis validators coerce provider output into shape. When
validated with `context={"warnings": [...]}`, every adjustment is appended
to that list.
"""

import math
from enum import Enum
from typing import List, Dict, Optional, Any, FrozenSet
from datetime import datetime, timezone

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from src.core.config import settings


DEFAULT_STAGE_ORDER = ["vision", "analysis", "synthesis"]


# =============================================================================
# Enums
# =============================================================================

class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    DEGRADED = "degraded"
    FAILED = "failed"


class RecoveryMode(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    DEGRADED = "degraded"


class FailureKind(str, Enum):
    TRANSIENT = "transient"
    RATE_LIMITED = "rate-limited"
    MALFORMED_RESPONSE = "malformed-response"
    AUTH_CONFIG = "auth/config"
    PERMANENT = "permanent"
    PROVIDER_UNAVAILABLE = "provider-unavailable"
    CANCELLED = "cancelled"
    EXHAUSTED_RETRIES = "exhausted-retries"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class AnnotationType(str, Enum):
    ISSUE = "issue"
    SUGGESTION = "suggestion"
    SUCCESS = "success"
    INFO = "info"


class Level(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SuggestionCategory(str, Enum):
    USABILITY = "usability"
    ACCESSIBILITY = "accessibility"
    VISUAL = "visual"
    CONTENT = "content"
    DESIGN = "design"
    TECHNICAL = "technical"
    GENERAL = "general"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Coercion helpers
# =============================================================================

def _warn(info: ValidationInfo, message: str):
    if info.context and isinstance(info.context.get("warnings"), list):
        info.context["warnings"].append(message)


def _where(info: ValidationInfo) -> str:
    return f"{info.field_name}"


def _coerce_number(value: Any, default: float, info: ValidationInfo) -> float:
    if isinstance(value, bool):
        _warn(info, f"{_where(info)}: boolean {value!r} replaced with {default}")
        return default
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            number = math.inf
        if not math.isfinite(number):
            _warn(info, f"{_where(info)}: non-finite {value!r} replaced with {default}")
            return default
        return number
    if isinstance(value, str):
        try:
            number = float(value.strip().rstrip("%"))
        except ValueError:
            _warn(info, f"{_where(info)}: non-numeric {value!r} replaced with {default}")
            return default
        if not math.isfinite(number):
            _warn(info, f"{_where(info)}: non-finite {value!r} replaced with {default}")
            return default
        _warn(info, f"{_where(info)}: coerced numeric string {value!r}")
        return number
    if value is not None:
        _warn(info, f"{_where(info)}: unsupported value {value!r} replaced with {default}")
    else:
        _warn(info, f"{_where(info)}: missing value replaced with {default}")
    return default


def _clamp_percentage(value: Any, default: float, info: ValidationInfo) -> float:
    number = _coerce_number(value, default, info)
    if number < 0.0 or number > 100.0:
        clamped = min(100.0, max(0.0, number))
        _warn(info, f"{_where(info)}: {number} clamped to {clamped}")
        return clamped
    return number


def _coerce_enum(value: Any, enum_cls, default: Enum, info: ValidationInfo):
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        candidate = value.strip().lower()
        for member in enum_cls:
            if member.value == candidate:
                return member
    _warn(info, f"{_where(info)}: unknown value {value!r} mapped to {default.value!r}")
    return default


def _coerce_list(value: Any, info: ValidationInfo) -> list:
    if isinstance(value, list):
        return value
    if value is not None:
        _warn(info, f"{_where(info)}: non-array value replaced with []")
    else:
        _warn(info, f"{_where(info)}: null replaced with []")
    return []


def _coerce_text_list(value: Any, info: ValidationInfo) -> List[str]:
    items = _coerce_list(value, info)
    texts = []
    for item in items:
        if isinstance(item, str):
            texts.append(item)
        elif item is None:
            _warn(info, f"{_where(info)}: dropped null entry")
        else:
            _warn(info, f"{_where(info)}: converted {type(item).__name__} entry to text")
            texts.append(str(item))
    return texts


def _coerce_object(value: Any, info: ValidationInfo) -> dict:
    if isinstance(value, dict):
        return value
    if isinstance(value, BaseModel):
        return value.model_dump()
    _warn(info, f"{_where(info)}: {'null' if value is None else 'non-object'} replaced with defaults")
    return {}


def _coerce_text(value: Any, default: str, info: ValidationInfo) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return default
    _warn(info, f"{_where(info)}: converted {type(value).__name__} to text")
    return str(value)


# =============================================================================
# Normalized Analysis
# =============================================================================

class VisualAnnotation(CamelModel):
    id: str = ""
    x: float = 50.0
    y: float = 50.0
    type: AnnotationType = AnnotationType.INFO
    title: str = "Untitled"
    description: str = ""
    severity: Level = Level.MEDIUM

    @field_validator("x", "y", mode="before")
    @classmethod
    def clamp_position(cls, value: Any, info: ValidationInfo) -> float:
        return _clamp_percentage(value, 50.0, info)

    @field_validator("type", mode="before")
    @classmethod
    def coerce_type(cls, value: Any, info: ValidationInfo):
        return _coerce_enum(value, AnnotationType, AnnotationType.INFO, info)

    @field_validator("severity", mode="before")
    @classmethod
    def coerce_severity(cls, value: Any, info: ValidationInfo):
        return _coerce_enum(value, Level, Level.MEDIUM, info)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any, info: ValidationInfo) -> str:
        return _coerce_text(value, "", info)

    @field_validator("title", mode="before")
    @classmethod
    def coerce_title(cls, value: Any, info: ValidationInfo) -> str:
        return _coerce_text(value, "Untitled", info)

    @field_validator("description", mode="before")
    @classmethod
    def coerce_description(cls, value: Any, info: ValidationInfo) -> str:
        return _coerce_text(value, "", info)


class Suggestion(CamelModel):
    id: str = ""
    category: SuggestionCategory = SuggestionCategory.GENERAL
    title: str = "Untitled"
    description: str = ""
    impact: Level = Level.MEDIUM
    effort: Level = Level.MEDIUM
    action_items: List[str] = Field(default_factory=list)

    @field_validator("category", mode="before")
    @classmethod
    def coerce_category(cls, value: Any, info: ValidationInfo):
        return _coerce_enum(value, SuggestionCategory, SuggestionCategory.GENERAL, info)

    @field_validator("impact", "effort", mode="before")
    @classmethod
    def coerce_level(cls, value: Any, info: ValidationInfo):
        return _coerce_enum(value, Level, Level.MEDIUM, info)

    @field_validator("action_items", mode="before")
    @classmethod
    def coerce_action_items(cls, value: Any, info: ValidationInfo) -> List[str]:
        return _coerce_text_list(value, info)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any, info: ValidationInfo) -> str:
        return _coerce_text(value, "", info)

    @field_validator("title", mode="before")
    @classmethod
    def coerce_title(cls, value: Any, info: ValidationInfo) -> str:
        return _coerce_text(value, "Untitled", info)

    @field_validator("description", mode="before")
    @classmethod
    def coerce_description(cls, value: Any, info: ValidationInfo) -> str:
        return _coerce_text(value, "", info)


class CategoryScores(CamelModel):
    usability: float = 0.0
    accessibility: float = 0.0
    visual: float = 0.0
    content: float = 0.0

    @field_validator("usability", "accessibility", "visual", "content", mode="before")
    @classmethod
    def clamp_score(cls, value: Any, info: ValidationInfo) -> float:
        return _clamp_percentage(value, 0.0, info)


class AnalysisSummary(CamelModel):
    overall_score: float = 0.0
    category_scores: CategoryScores = Field(default_factory=CategoryScores)
    key_issues: List[str] = Field(default_factory=list)
    strengths: List[str] = Field(default_factory=list)

    @field_validator("overall_score", mode="before")
    @classmethod
    def clamp_overall(cls, value: Any, info: ValidationInfo) -> float:
        return _clamp_percentage(value, 0.0, info)

    @field_validator("category_scores", mode="before")
    @classmethod
    def coerce_category_scores(cls, value: Any, info: ValidationInfo) -> dict:
        return _coerce_object(value, info)

    @field_validator("key_issues", "strengths", mode="before")
    @classmethod
    def coerce_texts(cls, value: Any, info: ValidationInfo) -> List[str]:
        return _coerce_text_list(value, info)


class AnalysisMetadata(CamelModel):
    recovery_mode: Optional[RecoveryMode] = None
    available_stages: Optional[List[str]] = None
    missing_stages: Optional[List[str]] = None
    limitations: Optional[List[str]] = None
    quality_score: Optional[float] = None

    @field_validator("recovery_mode", mode="before")
    @classmethod
    def coerce_mode(cls, value: Any, info: ValidationInfo):
        if value is None:
            return None
        if isinstance(value, str) and value.strip().lower() in {m.value for m in RecoveryMode}:
            return value.strip().lower()
        _warn(info, f"{_where(info)}: unknown value {value!r} dropped")
        return None

    @field_validator("available_stages", "missing_stages", "limitations", mode="before")
    @classmethod
    def coerce_optional_texts(cls, value: Any, info: ValidationInfo) -> Optional[List[str]]:
        if value is None:
            return None
        return _coerce_text_list(value, info)

    @field_validator("quality_score", mode="before")
    @classmethod
    def clamp_quality(cls, value: Any, info: ValidationInfo) -> Optional[float]:
        if value is None:
            return None
        return _clamp_percentage(value, 0.0, info)


class NormalizedAnalysis(CamelModel):
    """Final analysis shape, identical for full, partial and degraded runs."""

    visual_annotations: List[VisualAnnotation] = Field(default_factory=list)
    suggestions: List[Suggestion] = Field(default_factory=list)
    summary: AnalysisSummary = Field(default_factory=AnalysisSummary)
    metadata: AnalysisMetadata = Field(default_factory=AnalysisMetadata)

    @field_validator("visual_annotations", "suggestions", mode="before")
    @classmethod
    def coerce_items(cls, value: Any, info: ValidationInfo) -> list:
        items = _coerce_list(value, info)
        kept = []
        for position, item in enumerate(items):
            if isinstance(item, (dict, BaseModel)):
                kept.append(item)
            else:
                _warn(info, f"{_where(info)}[{position}]: dropped non-object entry")
        return kept

    @field_validator("summary", "metadata", mode="before")
    @classmethod
    def coerce_section(cls, value: Any, info: ValidationInfo) -> dict:
        return _coerce_object(value, info)

    @model_validator(mode="after")
    def assign_ids(self, info: ValidationInfo) -> "NormalizedAnalysis":
        for position, annotation in enumerate(self.visual_annotations, start=1):
            if not annotation.id:
                annotation.id = f"annotation-{position}"
                _warn(info, f"visual_annotations[{position - 1}]: generated id {annotation.id!r}")
        for position, suggestion in enumerate(self.suggestions, start=1):
            if not suggestion.id:
                suggestion.id = f"suggestion-{position}"
                _warn(info, f"suggestions[{position - 1}]: generated id {suggestion.id!r}")
        return self

    def to_wire(self) -> Dict[str, Any]:
        """camelCase JSON-ready dict."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# Requests and Stage Configuration
# =============================================================================

class AnalysisOptions(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    enable_partial_recovery: bool = True
    max_retry_attempts: int = Field(
        default_factory=lambda: settings.DEFAULT_MAX_RETRY_ATTEMPTS, ge=0, le=10
    )
    retry_delay_ms: int = Field(
        default_factory=lambda: settings.DEFAULT_RETRY_DELAY_MS, ge=0, le=60000
    )
    enable_degraded_mode: bool = True


class AnalysisRequest(CamelModel):
    """An analysis request. Immutable once submitted."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    image_ref: str = Field(..., min_length=1, max_length=2048)
    user_context: Optional[str] = Field(None, max_length=4000)
    requested_stages: List[str] = Field(default_factory=lambda: list(DEFAULT_STAGE_ORDER))
    priority: Priority = Priority.NORMAL
    options: AnalysisOptions = Field(default_factory=AnalysisOptions)

    @field_validator("requested_stages")
    @classmethod
    def check_stages(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("requestedStages must not be empty")
        if len(set(value)) != len(value):
            raise ValueError("requestedStages must not contain duplicates")
        return value


class StageDefinition(BaseModel):
    """Static configuration of one pipeline stage."""

    model_config = ConfigDict(frozen=True)

    name: str
    provider: str
    depends_on_stages: FrozenSet[str] = frozenset()
    timeout_ms: int = 30000
    required: bool = True
    purpose: str = "extraction"


class StageError(CamelModel):
    kind: FailureKind
    message: str
    retryable: bool = False
    http_status: Optional[int] = None
    # Last classified kind when `kind` is exhausted-retries
    cause: Optional[FailureKind] = None


class ProgressEvent(CamelModel):
    run_id: str
    stage: Optional[str] = None
    status: str
    progress: float = Field(0.0, ge=0.0, le=100.0)
    message: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# =============================================================================
# API DTOs
# =============================================================================

class AnalysisSubmittedDTO(CamelModel):
    run_id: str
    status: RunStatus = RunStatus.RUNNING
    status_url: str
    result_url: str


class AnalysisResultDTO(CamelModel):
    """Completion payload."""

    id: str
    mode: RecoveryMode
    visual_annotations: List[Dict[str, Any]] = Field(default_factory=list)
    suggestions: List[Dict[str, Any]] = Field(default_factory=list)
    summary: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProviderHealthDTO(CamelModel):
    provider: str
    state: str
    consecutive_failures: int
    window_started_at: Optional[float] = None
    opened_at: Optional[float] = None
    cooldown_ms: int
    trial_in_flight: bool
    version: int
