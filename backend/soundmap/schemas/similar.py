from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class SimilarTracksRequest(BaseModel):
    track_ids: List[int] = Field(..., min_length=1, description="Seed tracks (a single track or a whole track list)")
    limit: Optional[int] = Field(default=None, ge=1)


class SimilarResponse(BaseModel):
    type: Literal["track", "release", "artist"]
    ready: bool
    ids: List[int] = []


class ReloadRequest(BaseModel):
    force: bool = False
    wait: bool = False


class ProgressModel(BaseModel):
    current_iteration: int
    total_iterations: int


class EngineStatusResponse(BaseModel):
    state: Literal["idle", "training", "loading_cache"]
    ready: bool
    loading: bool = False
    grid_width: Optional[int] = None
    grid_height: Optional[int] = None
    track_count: int = 0
    release_count: int = 0
    artist_count: int = 0
    progress: Optional[ProgressModel] = None
    ref_vectors_distance_median: Optional[float] = None


class HealthResponse(BaseModel):
    ok: bool = True
    ready: bool = False
    track_count: int = 0
