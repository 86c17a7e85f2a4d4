from __future__ import annotations

import asyncio
import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, Iterable, List, Mapping, Optional, Protocol, Set, Tuple

import numpy as np

from ..cache.codec import CacheSnapshot
from ..cache.store import CacheStore
from ..core.logging import TRAINING_THREAD_PREFIX
from .features import (
    DEFAULT_TRAIN_FEATURE_SETTINGS,
    FeatureSettings,
    FeatureValuesMap,
    build_weights,
    feature_order,
    get_dimension_count,
    to_input_vector,
    validate_feature_settings,
)
from .index import (
    ArtistId,
    EntityIndices,
    LinkType,
    ReleaseId,
    TrackId,
    TrackRelations,
    build_indices,
    expand_rings,
    get_similar_objects,
    same_neuron_only,
    sample_ids,
)
from .network import CancellationPredicate, Coordinate, CurrentIteration, Network, Position
from .normalizer import DataNormalizer

logger = logging.getLogger("engine")

ProgressCallback = Callable[[CurrentIteration], None]


class SampleSource(Protocol):
    async def list_track_ids(self) -> List[TrackId]:
        ...

    async def fetch(self, track_id: TrackId, feature_names: Iterable[str]) -> Optional[FeatureValuesMap]:
        ...


class RelationshipLookup(Protocol):
    async def get_relations(self, track_id: TrackId) -> Optional[TrackRelations]:
        ...


@dataclass(frozen=True, slots=True)
class TrainSettings:
    feature_settings: Mapping[str, FeatureSettings] = field(
        default_factory=lambda: dict(DEFAULT_TRAIN_FEATURE_SETTINGS)
    )
    iteration_count: int = 10
    sample_count_per_neuron: int = 4

    def feature_weights(self) -> Dict[str, float]:
        return {name: self.feature_settings[name].weight for name in feature_order(self.feature_settings)}


class LoadState(str, Enum):
    IDLE = "idle"
    TRAINING = "training"
    LOADING_CACHE = "loading_cache"


@dataclass(frozen=True, slots=True)
class EngineSnapshot:
    network: Network
    indices: EntityIndices
    track_positions: Dict[TrackId, List[Position]]
    normalizer: Optional[DataNormalizer]
    feature_weights: Optional[Dict[str, float]]
    ref_vectors_distance_median: float


@dataclass(frozen=True, slots=True)
class EngineStatus:
    state: LoadState
    ready: bool
    grid_width: Optional[int] = None
    grid_height: Optional[int] = None
    track_count: int = 0
    release_count: int = 0
    artist_count: int = 0
    progress: Optional[CurrentIteration] = None
    ref_vectors_distance_median: Optional[float] = None


def compute_grid_size(sample_count: int, sample_count_per_neuron: int) -> Coordinate:
    size = math.isqrt(sample_count // sample_count_per_neuron)
    if size < 2:
        logger.warning(
            "Very few tracks (%s) are being used by the features engine, expect bad behaviors", sample_count
        )
        size = 2
    return size


class FeaturesEngine:
    """Trains the map, owns the live snapshot and answers similarity queries.

    Queries always read whatever snapshot is installed; a load builds its
    snapshot on the side and swaps it in only once it is complete. Training
    runs on a dedicated worker thread and polls a cancellation flag.
    """

    def __init__(
        self,
        sample_source: SampleSource,
        relationship_lookup: RelationshipLookup,
        cache_store: CacheStore,
        *,
        train_settings: TrainSettings | None = None,
        seed: int | None = None,
        expand_neighbors: bool = True,
    ) -> None:
        self.train_settings = train_settings or TrainSettings()
        validate_feature_settings(self.train_settings.feature_settings)

        self._sample_source = sample_source
        self._relationship_lookup = relationship_lookup
        self._cache_store = cache_store
        self._seed = seed
        self._policy = expand_rings if expand_neighbors else same_neuron_only

        self._snapshot: EngineSnapshot | None = None
        self._snapshot_lock = threading.Lock()
        self._query_rng = np.random.default_rng(seed)
        self._query_rng_lock = threading.Lock()
        self._cancel_lock = threading.Lock()
        self._pending_loads: Set[threading.Event] = set()
        self._closed = False
        self._load_lock = asyncio.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=TRAINING_THREAD_PREFIX)

        self.state = LoadState.IDLE
        self.progress: CurrentIteration | None = None

    @property
    def snapshot(self) -> EngineSnapshot | None:
        with self._snapshot_lock:
            return self._snapshot

    @property
    def ready(self) -> bool:
        return self.snapshot is not None

    def request_cancel_load(self) -> None:
        """Cancel every load requested so far. Later loads are unaffected."""
        logger.debug("Requesting load cancellation")
        with self._cancel_lock:
            for cancel_event in self._pending_loads:
                cancel_event.set()

    def close(self) -> None:
        with self._cancel_lock:
            self._closed = True
        self.request_cancel_load()
        self._executor.shutdown(wait=True)

    def _install(self, snapshot: EngineSnapshot) -> None:
        with self._snapshot_lock:
            self._snapshot = snapshot
        logger.info(
            "Classifier successfully loaded (%sx%s network, %s tracks)",
            snapshot.network.width,
            snapshot.network.height,
            len(snapshot.indices.track_positions),
        )

    def load(
        self, force_reload: bool = False, progress_callback: ProgressCallback | None = None
    ) -> Coroutine[Any, Any, bool]:
        """Install a fresh snapshot, from the cache when possible.

        The load is registered as soon as it is requested, so a cancel issued
        before the returned coroutine first runs (or while it waits for an
        earlier load) still applies to it. The coroutine returns ``True`` when
        a new snapshot was installed. Cancellation or an empty catalog leave
        the current snapshot (if any) untouched.
        """
        cancel_event = threading.Event()
        with self._cancel_lock:
            if self._closed:
                cancel_event.set()
            self._pending_loads.add(cancel_event)
        return self._load(cancel_event, force_reload, progress_callback)

    async def _load(
        self, cancel_event: threading.Event, force_reload: bool, progress_callback: ProgressCallback | None
    ) -> bool:
        cancelled = cancel_event.is_set
        try:
            async with self._load_lock:
                if cancelled():
                    logger.info("Load cancelled before it started")
                    return False
                self.progress = None
                try:
                    if force_reload:
                        await asyncio.to_thread(self._cache_store.invalidate)
                    else:
                        cache = await asyncio.to_thread(self._cache_store.read)
                        if cache is not None and cache.feature_weights != self.train_settings.feature_weights():
                            logger.info("Cached classifier was trained with other features, ignoring it")
                            cache = None
                        if cache is not None:
                            self.state = LoadState.LOADING_CACHE
                            snapshot = await self._load_from_cache(cache, cancelled)
                            if snapshot is None:
                                return False
                            self._install(snapshot)
                            return True

                    self.state = LoadState.TRAINING
                    snapshot = await self._load_from_training(progress_callback, cancelled)
                    if snapshot is None:
                        return False
                    self._install(snapshot)
                    await asyncio.to_thread(self._cache_store.write, self._to_cache(snapshot))
                    return True
                finally:
                    self.state = LoadState.IDLE
        finally:
            with self._cancel_lock:
                self._pending_loads.discard(cancel_event)

    async def _load_from_cache(self, cache: CacheSnapshot, cancelled: CancellationPredicate) -> EngineSnapshot | None:
        logger.info("Constructing features classifier from cache...")
        normalizer = None
        if cache.normalization_factors is not None:
            normalizer = DataNormalizer.from_factors(cache.normalization_factors)
        return await self._build_snapshot(
            cache.network, cache.track_positions, normalizer, cache.feature_weights, cancelled
        )

    async def _extract_samples(
        self, feature_names: List[str], dimension_count: int, cancelled: CancellationPredicate
    ) -> Tuple[List[np.ndarray], List[TrackId]] | None:
        feature_settings = self.train_settings.feature_settings
        track_ids = await self._sample_source.list_track_ids()
        logger.debug("Extracting features for %s tracks...", len(track_ids))

        samples: List[np.ndarray] = []
        sample_track_ids: List[TrackId] = []
        for track_id in track_ids:
            if cancelled():
                return None
            values_map = await self._sample_source.fetch(track_id, feature_names)
            if values_map is None:
                continue
            vector = to_input_vector(track_id, values_map, feature_settings, dimension_count)
            if vector is None:
                continue
            samples.append(vector)
            sample_track_ids.append(track_id)

        logger.debug("Extracting features DONE (%s usable tracks)", len(samples))
        return samples, sample_track_ids

    async def _load_from_training(
        self, progress_callback: ProgressCallback | None, cancelled: CancellationPredicate
    ) -> EngineSnapshot | None:
        settings = self.train_settings
        feature_names = feature_order(settings.feature_settings)
        dimension_count = get_dimension_count(settings.feature_settings)
        logger.info("Constructing features classifier (%s dimensions)...", dimension_count)

        extracted = await self._extract_samples(feature_names, dimension_count, cancelled)
        if extracted is None:
            logger.info("Load cancelled during feature extraction")
            return None
        samples, sample_track_ids = extracted
        if not samples:
            logger.info("Nothing to classify!")
            return None

        normalizer = DataNormalizer(dimension_count)
        normalizer.compute_normalization_factors(samples)
        data = normalizer.normalize_samples(samples)

        size = compute_grid_size(len(samples), settings.sample_count_per_neuron)
        logger.info("Found %s tracks, constructing a %sx%s network", len(samples), size, size)

        weights = build_weights(settings.feature_settings, dimension_count)
        loop = asyncio.get_running_loop()
        trained = await loop.run_in_executor(
            self._executor, self._train, data, size, weights, progress_callback, cancelled
        )
        if trained is None:
            logger.info("Load cancelled during training")
            return None

        network, positions = trained
        track_positions: Dict[TrackId, List[Position]] = {}
        for track_id, position in zip(sample_track_ids, positions):
            track_positions.setdefault(track_id, []).append(position)
        return await self._build_snapshot(network, track_positions, normalizer, settings.feature_weights(), cancelled)

    def _train(
        self,
        data: np.ndarray,
        size: Coordinate,
        weights: np.ndarray,
        progress_callback: ProgressCallback | None,
        cancelled: CancellationPredicate,
    ) -> Tuple[Network, List[Position]] | None:
        iteration_count = self.train_settings.iteration_count
        network = Network(
            size,
            size,
            data.shape[1],
            rng=np.random.default_rng(self._seed),
            init_bounds=(data.min(axis=0), data.max(axis=0)),
        )
        network.set_data_weights(weights)

        def on_progress(iteration: CurrentIteration) -> None:
            self.progress = iteration
            logger.debug("Current pass = %s / %s", iteration.current_iteration, iteration.total_iterations)
            if progress_callback is not None:
                progress_callback(iteration)

        logger.debug("Training network...")
        if not network.train(data, iteration_count, on_progress, cancelled):
            return None
        logger.debug("Training network DONE")

        positions: List[Position] = []
        for sample in data:
            if cancelled():
                return None
            positions.append(network.get_closest_ref_vector_position(sample))
        return network, positions

    async def _build_snapshot(
        self,
        network: Network,
        track_positions: Mapping[TrackId, List[Position]],
        normalizer: DataNormalizer | None,
        feature_weights: Dict[str, float] | None,
        cancelled: CancellationPredicate,
    ) -> EngineSnapshot | None:
        logger.debug("Constructing maps...")
        relations: Dict[TrackId, Optional[TrackRelations]] = {}
        for track_id in track_positions:
            if cancelled():
                logger.info("Load cancelled while constructing maps")
                return None
            relations[track_id] = await self._relationship_lookup.get_relations(track_id)

        indices = build_indices(network.width, network.height, track_positions, relations)
        median = network.compute_ref_vectors_distance_median()
        logger.debug("Median distance between ref vectors = %s", median)
        return EngineSnapshot(
            network=network,
            indices=indices,
            track_positions={
                track_id: sorted(positions) for track_id, positions in indices.track_positions.items()
            },
            normalizer=normalizer,
            feature_weights=feature_weights,
            ref_vectors_distance_median=median,
        )

    @staticmethod
    def _to_cache(snapshot: EngineSnapshot) -> CacheSnapshot:
        return CacheSnapshot(
            network=snapshot.network,
            track_positions=snapshot.track_positions,
            normalization_factors=snapshot.normalizer.factors if snapshot.normalizer is not None else None,
            feature_weights=snapshot.feature_weights,
        )

    def to_cache(self) -> CacheSnapshot | None:
        snapshot = self.snapshot
        return self._to_cache(snapshot) if snapshot is not None else None

    def _similar(self, seed_ids: Iterable, matrix: Mapping, positions: Mapping, max_count: int, indices: EntityIndices) -> Set:
        with self._query_rng_lock:
            return get_similar_objects(
                seed_ids,
                matrix,
                positions,
                max_count,
                width=indices.width,
                height=indices.height,
                rng=self._query_rng,
                policy=self._policy,
            )

    def get_similar_tracks(self, track_ids: Iterable[TrackId], max_count: int) -> Set[TrackId]:
        snapshot = self.snapshot
        if snapshot is None:
            return set()
        indices = snapshot.indices
        return self._similar(track_ids, indices.track_matrix, indices.track_positions, max_count, indices)

    def get_similar_releases(self, release_id: ReleaseId, max_count: int) -> Set[ReleaseId]:
        snapshot = self.snapshot
        if snapshot is None:
            return set()
        indices = snapshot.indices
        return self._similar([release_id], indices.release_matrix, indices.release_positions, max_count, indices)

    def get_similar_artists(
        self, artist_id: ArtistId, link_types: Iterable[LinkType], max_count: int
    ) -> Set[ArtistId]:
        snapshot = self.snapshot
        if snapshot is None:
            return set()
        indices = snapshot.indices

        found: Set[ArtistId] = set()
        for link_type in sorted(set(link_types)):
            matrix = indices.artist_matrices.get(link_type)
            if matrix is None:
                continue
            found |= self._similar([artist_id], matrix, indices.artist_positions, max_count, indices)

        if len(found) > max_count:
            with self._query_rng_lock:
                found = sample_ids(found, max_count, self._query_rng)
        return found

    def locate(self, values_map: Mapping[str, List[float]]) -> Position | None:
        """Best matching neuron for a raw feature map, using the snapshot's factors."""
        snapshot = self.snapshot
        if snapshot is None or snapshot.normalizer is None:
            return None
        feature_settings = self.train_settings.feature_settings
        dimension_count = get_dimension_count(feature_settings)
        if dimension_count != snapshot.network.dimension_count:
            return None
        vector = to_input_vector("<query>", values_map, feature_settings, dimension_count)
        if vector is None:
            return None
        snapshot.normalizer.normalize_data(vector)
        return snapshot.network.get_closest_ref_vector_position(vector)

    def status(self) -> EngineStatus:
        snapshot = self.snapshot
        if snapshot is None:
            return EngineStatus(state=self.state, ready=False, progress=self.progress)
        indices = snapshot.indices
        return EngineStatus(
            state=self.state,
            ready=True,
            grid_width=snapshot.network.width,
            grid_height=snapshot.network.height,
            track_count=len(indices.track_positions),
            release_count=len(indices.release_positions),
            artist_count=len(indices.artist_positions),
            progress=self.progress,
            ref_vectors_distance_median=snapshot.ref_vectors_distance_median,
        )
