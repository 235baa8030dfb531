"""
System endpoints.
"""

from pathlib import Path

from fastapi import APIRouter, Depends

from ralph.api.config import APIConfig
from ralph.api.dependencies import get_api_config, get_run_manager
from ralph.api.models import HealthResponse
from ralph.api.run_manager import RunManager
from ralph.models import to_iso, utcnow

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(
    config: APIConfig = Depends(get_api_config),
    runs: RunManager = Depends(get_run_manager),
) -> HealthResponse:
    """
    Health check endpoint.

    Returns:
        HealthResponse: Status, number of running sessions and the server's project root
    """
    return HealthResponse(
        timestamp=to_iso(utcnow()),
        active_sessions=runs.active_count(),
        project_root=str(Path(runs.base_config.project_root).resolve()),
        version=config.version,
    )
