"""
Analyses Endpoints

POST /api/v1/analyses                 - Submit an analysis run (202)
GET  /api/v1/analyses/{run_id}        - Run status snapshot
GET  /api/v1/analyses/{run_id}/result - Completion payload of a terminal run
POST /api/v1/analyses/{run_id}/cancel - Request cancellation
GET  /api/v1/analyses/{run_id}/events - Progress feed
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query

from src.api.dependencies import get_analysis_service
from src.core.logging import get_logger
from src.engines.analysis.schemas import AnalysisRequest, AnalysisResultDTO, AnalysisSubmittedDTO
from src.engines.analysis.services import AnalysisService

logger = get_logger(__name__)
router = APIRouter()


@router.post("", response_model=AnalysisSubmittedDTO, status_code=202, response_model_by_alias=True)
async def submit_analysis(
    request: AnalysisRequest,
    service: AnalysisService = Depends(get_analysis_service)
):
    """
    Submit an image for multi-stage analysis.

    The run executes in the background; poll the status URL or read the
    events feed, then fetch the result once the run is terminal.
    """
    run = await service.submit_analysis(request)
    return AnalysisSubmittedDTO(
        run_id=run.id,
        status=run.overall_status,
        status_url=f"/api/v1/analyses/{run.id}",
        result_url=f"/api/v1/analyses/{run.id}/result",
    )


@router.get("/{run_id}")
async def get_run_status(
    run_id: str,
    service: AnalysisService = Depends(get_analysis_service)
) -> Dict[str, Any]:
    """Run snapshot: overall status, per-stage results, progress and quality score."""
    return await service.get_run_status(run_id)


@router.get("/{run_id}/result", response_model=AnalysisResultDTO, response_model_by_alias=True)
async def get_result(
    run_id: str,
    service: AnalysisService = Depends(get_analysis_service)
):
    """
    Completion payload.

    409 while the run is still executing, 422 (with stage diagnostics)
    when the run failed.
    """
    return await service.get_result(run_id)


@router.post("/{run_id}/cancel", status_code=202)
async def cancel_run(
    run_id: str,
    service: AnalysisService = Depends(get_analysis_service)
) -> Dict[str, Any]:
    """Request cooperative cancellation. Finished runs are returned unchanged."""
    run = await service.cancel_run(run_id)
    return {
        "runId": run.id,
        "status": run.overall_status.value,
        "cancelRequested": not run.is_terminal,
    }


@router.get("/{run_id}/events")
async def get_events(
    run_id: str,
    since: int = Query(0, ge=0, description="Index of the first event to return"),
    service: AnalysisService = Depends(get_analysis_service)
) -> List[Dict[str, Any]]:
    """Progress events in emission order."""
    return await service.get_events(run_id, since)
