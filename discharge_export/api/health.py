"""
Health check endpoints
"""

import time
from typing import Any, Dict

from discharge_export.core.config import settings
from discharge_export.core.dependencies import ExportServices, get_export_services
from discharge_export.core.logging import get_logger
from fastapi import APIRouter, Depends
from pydantic import BaseModel

router = APIRouter()
logger = get_logger(__name__)


class HealthResponse(BaseModel):
    """Health check response model"""

    status: str
    version: str
    timestamp: float
    shutting_down: bool = False
    fhir: Dict[str, Dict[str, Any]] = {}


@router.get("/health", response_model=HealthResponse)
async def health_check(services: ExportServices = Depends(get_export_services)):
    """
    Basic health check endpoint
    Returns 200 if the service is running, with FHIR client request counters
    """
    logger.debug("health_check_requested")
    return HealthResponse(
        status="draining" if services.runner.is_shutting_down else "healthy",
        version=settings.APP_VERSION,
        timestamp=time.time(),
        shutting_down=services.runner.is_shutting_down,
        fhir={
            "source": services.source_client.get_stats(),
            "destination": services.destination_client.get_stats(),
        },
    )
