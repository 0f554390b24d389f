"""
Pipeline Stage Definitions

Static stage configuration shared by the API process and the workers.
Timeouts come from settings so they can be tuned per deployment.
"""

from typing import Dict, Iterable, Optional

from src.core.config import settings
from src.engines.analysis.schemas import StageDefinition


def build_stage_definitions(overrides: Optional[Iterable[StageDefinition]] = None) -> Dict[str, StageDefinition]:
    """
    Default vision -> analysis -> synthesis pipeline.

    Args:
        overrides: definitions replacing (or adding to) the defaults by name

    Returns:
        stage name -> StageDefinition
    """
    definitions = {
        "vision": StageDefinition(
            name="vision",
            provider="google-vision",
            purpose="extraction",
            timeout_ms=settings.VISION_TIMEOUT_MS,
            required=True,
        ),
        "analysis": StageDefinition(
            name="analysis",
            provider="openai",
            purpose="interpretation",
            depends_on_stages=frozenset({"vision"}),
            timeout_ms=settings.ANALYSIS_TIMEOUT_MS,
            required=True,
        ),
        "synthesis": StageDefinition(
            name="synthesis",
            provider="anthropic",
            purpose="synthesis",
            depends_on_stages=frozenset({"analysis"}),
            timeout_ms=settings.SYNTHESIS_TIMEOUT_MS,
            required=False,
        ),
    }
    for definition in overrides or ():
        definitions[definition.name] = definition
    return definitions


DEFAULT_STAGE_DEFINITIONS = build_stage_definitions()
