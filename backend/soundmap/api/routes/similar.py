from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.concurrency import run_in_threadpool

from ...core.config import Settings
from ...schemas.similar import SimilarResponse, SimilarTracksRequest
from ...services.catalog import CatalogRepository
from ...services.engine import FeaturesEngine
from ..deps import get_catalog, get_engine, get_settings_dep

router = APIRouter(prefix="/v1/similar", tags=["similar"])


def _clamp_limit(limit: Optional[int], settings: Settings) -> int:
    limit = limit or settings.similarity_default_limit
    return max(1, min(limit, settings.similarity_max_limit))


@router.post("/tracks", response_model=SimilarResponse)
async def similar_tracks(
    payload: SimilarTracksRequest,
    *,
    engine: FeaturesEngine = Depends(get_engine),
    catalog: CatalogRepository = Depends(get_catalog),
    settings: Settings = Depends(get_settings_dep),
) -> SimilarResponse:
    # ring search is CPU bound, keep it off the event loop
    similar = await run_in_threadpool(engine.get_similar_tracks, payload.track_ids, _clamp_limit(payload.limit, settings))
    # the index predates any catalog changes made since the last training
    existing = await catalog.existing_track_ids(similar)
    return SimilarResponse(type="track", ready=engine.ready, ids=sorted(existing))


@router.get("/releases/{release_id}", response_model=SimilarResponse)
async def similar_releases(
    release_id: int,
    limit: Optional[int] = Query(default=None, ge=1),
    *,
    engine: FeaturesEngine = Depends(get_engine),
    catalog: CatalogRepository = Depends(get_catalog),
    settings: Settings = Depends(get_settings_dep),
) -> SimilarResponse:
    similar = await run_in_threadpool(engine.get_similar_releases, release_id, _clamp_limit(limit, settings))
    existing = await catalog.existing_release_ids(similar)
    return SimilarResponse(type="release", ready=engine.ready, ids=sorted(existing))


@router.get("/artists/{artist_id}", response_model=SimilarResponse)
async def similar_artists(
    artist_id: int,
    link_types: List[str] = Query(default=["artist", "release_artist"]),
    limit: Optional[int] = Query(default=None, ge=1),
    *,
    engine: FeaturesEngine = Depends(get_engine),
    catalog: CatalogRepository = Depends(get_catalog),
    settings: Settings = Depends(get_settings_dep),
) -> SimilarResponse:
    similar = await run_in_threadpool(
        engine.get_similar_artists, artist_id, link_types, _clamp_limit(limit, settings)
    )
    existing = await catalog.existing_artist_ids(similar)
    return SimilarResponse(type="artist", ready=engine.ready, ids=sorted(existing))
