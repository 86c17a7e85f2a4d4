from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ...core.security import verify_service_token
from ...schemas.similar import EngineStatusResponse, ProgressModel, ReloadRequest
from ...services.engine import FeaturesEngine
from ..deps import get_engine, schedule_load

router = APIRouter(prefix="/v1/engine", tags=["engine"], dependencies=[Depends(verify_service_token)])


def _status_response(request: Request, engine: FeaturesEngine) -> EngineStatusResponse:
    status = engine.status()
    task = request.app.state.load_task
    progress = None
    if status.progress is not None:
        progress = ProgressModel(
            current_iteration=status.progress.current_iteration,
            total_iterations=status.progress.total_iterations,
        )
    return EngineStatusResponse(
        state=status.state.value,
        ready=status.ready,
        loading=task is not None and not task.done(),
        grid_width=status.grid_width,
        grid_height=status.grid_height,
        track_count=status.track_count,
        release_count=status.release_count,
        artist_count=status.artist_count,
        progress=progress,
        ref_vectors_distance_median=status.ref_vectors_distance_median,
    )


@router.get("/status", response_model=EngineStatusResponse)
async def get_status(request: Request, engine: FeaturesEngine = Depends(get_engine)) -> EngineStatusResponse:
    return _status_response(request, engine)


@router.post("/reload", response_model=EngineStatusResponse)
async def reload_engine(
    payload: ReloadRequest,
    request: Request,
    engine: FeaturesEngine = Depends(get_engine),
) -> EngineStatusResponse:
    task = schedule_load(request.app, force=payload.force)
    if payload.wait:
        await task
    return _status_response(request, engine)


@router.post("/cancel", response_model=EngineStatusResponse)
async def cancel_load(request: Request, engine: FeaturesEngine = Depends(get_engine)) -> EngineStatusResponse:
    engine.request_cancel_load()
    return _status_response(request, engine)
