from __future__ import annotations

import logging
from typing import Any, Iterable, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db import models
from .features import FeatureValuesMap
from .index import ArtistId, ReleaseId, TrackId, TrackRelations

logger = logging.getLogger("catalog")


def _as_values(raw: Any) -> Optional[List[float]]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return [float(raw)]
    if isinstance(raw, list):
        return list(raw)
    return None


class CatalogRepository:
    """Catalog reads needed by the features engine.

    Every call opens and closes its own session so a training run never holds
    a read transaction for longer than one fetch.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def list_track_ids(self) -> List[TrackId]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(models.TrackFeatures.track_id).order_by(models.TrackFeatures.track_id)
            )
            track_ids = list(result.scalars().all())
        logger.debug("Found %s tracks with features", len(track_ids))
        return track_ids

    async def fetch(self, track_id: TrackId, feature_names: Iterable[str]) -> Optional[FeatureValuesMap]:
        async with self.session_factory() as session:
            features = await session.get(models.TrackFeatures, track_id)
            data = dict(features.data or {}) if features is not None else None
        if not data:
            return None

        values_map: FeatureValuesMap = {}
        for name in feature_names:
            if name not in data:
                continue
            values = _as_values(data[name])
            if values is None:
                logger.debug("Unsupported value type for feature '%s' on track %s", name, track_id)
                continue
            values_map[name] = values
        return values_map or None

    async def get_relations(self, track_id: TrackId) -> Optional[TrackRelations]:
        async with self.session_factory() as session:
            track = await session.get(models.Track, track_id)
            if track is None:
                return None
            return TrackRelations(
                release_id=track.release_id,
                artist_links=tuple((link.artist_id, link.type) for link in track.artist_links),
            )

    async def _existing_ids(self, model: Any, ids: Iterable[int]) -> Set[int]:
        wanted = set(ids)
        if not wanted:
            return set()
        async with self.session_factory() as session:
            result = await session.execute(select(model.id).where(model.id.in_(wanted)))
            return set(result.scalars().all())

    async def existing_track_ids(self, ids: Iterable[TrackId]) -> Set[TrackId]:
        return await self._existing_ids(models.Track, ids)

    async def existing_release_ids(self, ids: Iterable[ReleaseId]) -> Set[ReleaseId]:
        return await self._existing_ids(models.Release, ids)

    async def existing_artist_ids(self, ids: Iterable[ArtistId]) -> Set[ArtistId]:
        return await self._existing_ids(models.Artist, ids)
