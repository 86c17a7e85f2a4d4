from __future__ import annotations

from fastapi import APIRouter, Depends

from ...schemas.similar import HealthResponse
from ...services.engine import FeaturesEngine
from ..deps import get_engine

router = APIRouter(prefix="/v1", tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def get_health(engine: FeaturesEngine = Depends(get_engine)) -> HealthResponse:
    status = engine.status()
    return HealthResponse(ok=True, ready=status.ready, track_count=status.track_count)
