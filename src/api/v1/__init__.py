"""
API v1 Router Module - Analysis Pipeline

All v1 endpoints are prefixed with /api/v1/

- /api/v1/analyses - submit runs, poll status, fetch results, cancel
- /api/v1/providers - circuit breaker health and manual reset
- /api/v1/metrics - Prometheus metrics
"""

from fastapi import APIRouter

from src.api.v1.analyses import router as analyses_router
from src.api.v1.providers import router as providers_router
from src.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(analyses_router, prefix="/analyses", tags=["analyses"])
api_v1_router.include_router(providers_router, prefix="/providers", tags=["providers"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
