"""
Response Normalizer

Turns arbitrary provider text into a validated NormalizedAnalysis.

Parsing strategies run in order and each returns a ParseOutcome instead of
raising:
1. direct              - strict json.loads of the stripped text
2. pattern-extraction  - fenced ```json blocks, then balanced {...} blocks;
                         the largest block that parses wins
3. content-cleaning    - strip fences and surrounding prose, smart quotes
                         and trailing commas, then parse again

The first strategy whose payload also validates against the schema wins.
Schema validation fills defaults and clamps ranges, collecting a warning per
adjustment.
"""

import re
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError as PydanticValidationError

from src.core.logging import get_logger
from src.core.metrics import record_normalization_attempt
from src.engines.analysis.schemas import NormalizedAnalysis

logger = get_logger(__name__)

# Bound the balanced-brace scan on very large payloads
MAX_BRACE_CANDIDATES = 64

_FENCE_BLOCK = re.compile(r"```[ \t]*(?:json|JSON|javascript|js)?[ \t]*\r?\n?(.*?)```", re.DOTALL)
_FENCE_MARKER = re.compile(r"```[ \t]*[A-Za-z]*")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_SMART_QUOTES = str.maketrans({
    "“": '"',
    "”": '"',
    "„": '"',
    "″": '"',
    "‘": "'",
    "’": "'",
    "‚": "'",
    "′": "'",
})


@dataclass
class ParseOutcome:
    ok: bool
    payload: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


@dataclass
class StrategyAttempt:
    strategy: str
    success: bool
    duration_ms: float
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "success": self.success,
            "durationMs": round(self.duration_ms, 3),
            "error": self.error,
        }


@dataclass
class NormalizationResult:
    ok: bool
    raw_text: str
    data: Optional[BaseModel] = None
    strategy: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    attempts: List[StrategyAttempt] = field(default_factory=list)

    @property
    def error(self) -> Optional[str]:
        if self.ok or not self.attempts:
            return None
        return self.attempts[-1].error


# =============================================================================
# Parsing strategies
# =============================================================================

def _load_object(text: str) -> ParseOutcome:
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        return ParseOutcome(ok=False, error=f"invalid JSON: {e}")
    if not isinstance(value, dict):
        return ParseOutcome(ok=False, error=f"expected a JSON object, got {type(value).__name__}")
    return ParseOutcome(ok=True, payload=value)


def parse_direct(text: str) -> ParseOutcome:
    stripped = text.strip()
    if not stripped:
        return ParseOutcome(ok=False, error="empty response")
    return _load_object(stripped)


def _balanced_blocks(text: str) -> List[str]:
    """Every top-level {...} block, respecting JSON string quoting."""
    blocks = []
    start = text.find("{")
    while start != -1 and len(blocks) < MAX_BRACE_CANDIDATES:
        depth = 0
        in_string = False
        escaped = False
        end = -1
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    end = index
                    break
        if end == -1:
            # Unbalanced from here; try the next opening brace
            start = text.find("{", start + 1)
            continue
        blocks.append(text[start:end + 1])
        start = text.find("{", end + 1)
    return blocks


def parse_pattern_extraction(text: str) -> ParseOutcome:
    candidates = [block.strip() for block in _FENCE_BLOCK.findall(text)]
    candidates.extend(_balanced_blocks(text))
    candidates = [c for c in candidates if c]
    if not candidates:
        return ParseOutcome(ok=False, error="no fenced or braced block found")

    last_error = None
    for candidate in sorted(candidates, key=len, reverse=True):
        outcome = _load_object(candidate)
        if outcome.ok:
            return outcome
        last_error = outcome.error
    return ParseOutcome(ok=False, error=f"no block parsed ({last_error})")


def clean_content(text: str) -> str:
    cleaned = _FENCE_MARKER.sub("", text).translate(_SMART_QUOTES)
    first = cleaned.find("{")
    last = cleaned.rfind("}")
    if first != -1 and last > first:
        cleaned = cleaned[first:last + 1]
    return _TRAILING_COMMA.sub(r"\1", cleaned).strip()


def parse_content_cleaning(text: str) -> ParseOutcome:
    cleaned = clean_content(text)
    if not cleaned:
        return ParseOutcome(ok=False, error="nothing left after cleaning")
    return _load_object(cleaned)


STRATEGIES: List[Tuple[str, Callable[[str], ParseOutcome]]] = [
    ("direct", parse_direct),
    ("pattern-extraction", parse_pattern_extraction),
    ("content-cleaning", parse_content_cleaning),
]


# =============================================================================
# Normalizer
# =============================================================================

def _summarize_validation_error(error: PydanticValidationError) -> str:
    first = error.errors()[0] if error.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"schema validation failed at {location or 'root'}: {first.get('msg', str(error))}"


class ResponseNormalizer:
    """Parses and validates raw provider text against a schema."""

    def __init__(self, strategies: Optional[List[Tuple[str, Callable[[str], ParseOutcome]]]] = None):
        self.strategies = strategies or STRATEGIES

    def normalize(self, raw_text: Any, schema: Type[BaseModel] = NormalizedAnalysis) -> NormalizationResult:
        """
        Normalize raw provider output.

        Args:
            raw_text: Provider response text
            schema: Pydantic model the payload must validate against

        Returns:
            NormalizationResult; on failure `ok` is False and `raw_text` holds
            the original text
        """
        pre_warnings = []
        if raw_text is None:
            text = ""
        elif isinstance(raw_text, str):
            text = raw_text
        else:
            text = json.dumps(raw_text, default=str)
            pre_warnings.append(f"non-text response of type {type(raw_text).__name__} serialized to JSON")

        result = NormalizationResult(ok=False, raw_text=text)

        for name, strategy in self.strategies:
            start = time.perf_counter()
            warnings = list(pre_warnings)
            outcome = strategy(text)
            error = outcome.error
            data = None

            if outcome.ok:
                try:
                    data = schema.model_validate(outcome.payload, context={"warnings": warnings})
                except PydanticValidationError as e:
                    error = _summarize_validation_error(e)

            duration = time.perf_counter() - start
            success = data is not None
            result.attempts.append(StrategyAttempt(
                strategy=name,
                success=success,
                duration_ms=duration * 1000,
                error=None if success else error,
            ))
            record_normalization_attempt(name, success, duration)

            if success:
                result.ok = True
                result.data = data
                result.strategy = name
                result.warnings = warnings
                logger.debug(
                    "normalization_succeeded",
                    strategy=name,
                    warnings=len(warnings),
                    attempts=len(result.attempts)
                )
                return result

            logger.debug("normalization_strategy_failed", strategy=name, error=error)

        logger.warning(
            "normalization_failed",
            raw_length=len(text),
            attempts=[a.to_dict() for a in result.attempts]
        )
        return result
