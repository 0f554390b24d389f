"""
Provider Health Endpoints

GET  /api/v1/providers/health            - Circuit breaker state per provider
POST /api/v1/providers/{provider}/reset  - Force a provider's breaker closed
"""

from typing import List

from fastapi import APIRouter, Depends

from src.api.dependencies import get_analysis_service
from src.core.logging import get_logger
from src.engines.analysis.schemas import ProviderHealthDTO
from src.engines.analysis.services import AnalysisService

logger = get_logger(__name__)
router = APIRouter()


@router.get("/health", response_model=List[ProviderHealthDTO], response_model_by_alias=True)
async def provider_health(service: AnalysisService = Depends(get_analysis_service)):
    """Breaker state, failure counts and cool-down for every known provider."""
    return await service.provider_health()


@router.post("/{provider}/reset", response_model=ProviderHealthDTO, response_model_by_alias=True)
async def reset_provider(
    provider: str,
    service: AnalysisService = Depends(get_analysis_service)
):
    """Close a provider's breaker by hand (operator action)."""
    logger.warning("provider_reset_requested", provider=provider)
    return await service.reset_provider(provider)
