"""
FastAPI Dependencies for the Analysis Service

The AnalysisService is built once in the application lifespan and kept on
app.state; routers receive it through get_analysis_service.
"""

from fastapi import Request

from src.core.logging import get_logger
from src.engines.analysis.services import AnalysisService

logger = get_logger(__name__)


def get_analysis_service(request: Request) -> AnalysisService:
    """Get the process-wide AnalysisService."""
    service = getattr(request.app.state, "analysis_service", None)
    if service is None:
        # Lifespan has not run (e.g. app mounted without startup events)
        logger.error("analysis_service_not_initialized")
        raise RuntimeError("AnalysisService is not initialized")
    return service
