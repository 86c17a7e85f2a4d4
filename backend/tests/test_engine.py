from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from soundmap.cache.codec import CacheSnapshot
from soundmap.cache.store import FileCacheStore
from soundmap.services.engine import FeaturesEngine, LoadState, TrainSettings, compute_grid_size
from soundmap.services.features import FeatureSettings, FeatureValuesMap
from soundmap.services.index import TrackRelations
from soundmap.services.network import Network, Position

FEATURES = {
    "rhythm.bpm": FeatureSettings(1.0),
    "lowlevel.spectral_contrast_valleys.var": FeatureSettings(1.0),
}
TRAIN_SETTINGS = TrainSettings(feature_settings=FEATURES, iteration_count=4, sample_count_per_neuron=4)


class _StubCatalog:
    def __init__(
        self,
        features: Dict[int, FeatureValuesMap],
        relations: Dict[int, TrackRelations],
        on_fetch: Callable[[int], None] | None = None,
    ) -> None:
        self.features = features
        self.relations = relations
        self.on_fetch = on_fetch
        self.fetch_calls = 0

    async def list_track_ids(self) -> List[int]:
        return sorted(self.features)

    async def fetch(self, track_id: int, feature_names: Iterable[str]) -> Optional[FeatureValuesMap]:
        self.fetch_calls += 1
        if self.on_fetch is not None:
            self.on_fetch(track_id)
        values = self.features.get(track_id)
        if values is None:
            return None
        return {name: values[name] for name in feature_names if name in values} or None

    async def get_relations(self, track_id: int) -> Optional[TrackRelations]:
        return self.relations.get(track_id)


class _MemoryCacheStore:
    def __init__(self, snapshot: CacheSnapshot | None = None) -> None:
        self.snapshot = snapshot
        self.writes = 0
        self.invalidations = 0

    def read(self) -> CacheSnapshot | None:
        return self.snapshot

    def write(self, snapshot: CacheSnapshot) -> None:
        self.snapshot = snapshot
        self.writes += 1

    def invalidate(self) -> None:
        self.snapshot = None
        self.invalidations += 1


def _make_catalog(track_count: int = 32, seed: int = 0, **kwargs) -> _StubCatalog:
    rng = np.random.default_rng(seed)
    features: Dict[int, FeatureValuesMap] = {}
    relations: Dict[int, TrackRelations] = {}
    for track_id in range(1, track_count + 1):
        cluster = track_id % 2
        features[track_id] = {
            "rhythm.bpm": [float(80 + 80 * cluster + rng.normal(0.0, 2.0))],
            "lowlevel.spectral_contrast_valleys.var": [float(v) for v in cluster + rng.normal(0.0, 0.05, 6)],
        }
        relations[track_id] = TrackRelations(
            release_id=1000 + track_id // 4,
            artist_links=((2000 + track_id % 3, "artist"), (3000 + track_id % 5, "composer")),
        )
    return _StubCatalog(features, relations, **kwargs)


def _engine(catalog: _StubCatalog, store=None, *, seed: int = 7, settings: TrainSettings = TRAIN_SETTINGS) -> FeaturesEngine:
    return FeaturesEngine(catalog, catalog, store or _MemoryCacheStore(), train_settings=settings, seed=seed)


def _run(engine: FeaturesEngine, coro_factory):
    async def runner():
        try:
            return await coro_factory()
        finally:
            engine.close()

    return asyncio.run(runner())


@pytest.mark.parametrize(
    "sample_count, per_neuron, expected",
    [(400, 100, 2), (16, 100, 2), (0, 4, 2), (1600, 4, 20), (99, 4, 4)],
)
def test_grid_size(sample_count, per_neuron, expected):
    assert compute_grid_size(sample_count, per_neuron) == expected


def test_training_installs_a_queryable_snapshot():
    catalog = _make_catalog()
    store = _MemoryCacheStore()
    engine = _engine(catalog, store)
    progress = []

    loaded = _run(engine, lambda: engine.load(progress_callback=progress.append))

    assert loaded is True
    status = engine.status()
    assert status.ready
    assert status.state is LoadState.IDLE
    assert (status.grid_width, status.grid_height) == (2, 2)
    assert status.track_count == 32
    assert [p.current_iteration for p in progress] == [1, 2, 3, 4]
    assert store.writes == 1

    snapshot = engine.snapshot
    for positions in snapshot.track_positions.values():
        for position in positions:
            assert snapshot.network.contains(position)

    similar = engine.get_similar_tracks([1], 5)
    assert len(similar) == 5
    assert 1 not in similar
    assert similar <= set(catalog.features)


def test_same_seed_and_catalog_give_identical_assignments():
    first = _engine(_make_catalog())
    second = _engine(_make_catalog())

    _run(first, first.load)
    _run(second, second.load)

    assert first.snapshot.track_positions == second.snapshot.track_positions
    assert np.array_equal(first.snapshot.network.ref_vectors, second.snapshot.network.ref_vectors)


def test_empty_catalog_is_a_no_op():
    store = _MemoryCacheStore()
    engine = _engine(_StubCatalog({}, {}), store)

    assert _run(engine, engine.load) is False
    assert not engine.ready
    assert engine.get_similar_tracks([1], 10) == set()
    assert engine.get_similar_releases(1, 10) == set()
    assert engine.get_similar_artists(1, ["artist"], 10) == set()
    assert engine.to_cache() is None
    assert store.writes == 0


def test_unusable_tracks_are_skipped(caplog):
    catalog = _make_catalog(16)
    catalog.features[3]["rhythm.bpm"] = [1.0, 2.0]
    del catalog.features[4]["lowlevel.spectral_contrast_valleys.var"]
    catalog.features.pop(5)
    engine = _engine(catalog)

    with caplog.at_level(logging.WARNING):
        assert _run(engine, engine.load) is True

    positions = engine.snapshot.track_positions
    assert not {3, 4, 5} & set(positions)
    assert len(positions) == 13
    assert "Dimension mismatch" in caplog.text


def test_cancelled_retraining_keeps_previous_snapshot():
    catalog = _make_catalog()
    store = _MemoryCacheStore()
    engine = _engine(catalog, store)
    seen_during_training = []

    def on_progress(iteration):
        seen_during_training.append((engine.state, engine.snapshot is before))
        engine.request_cancel_load()

    async def scenario():
        nonlocal before
        await engine.load()
        before = engine.snapshot
        results_before = (engine.get_similar_tracks([2], 100), engine.get_similar_releases(1001, 100))
        loaded = await engine.load(force_reload=True, progress_callback=on_progress)
        results_after = (engine.get_similar_tracks([2], 100), engine.get_similar_releases(1001, 100))
        return loaded, results_before, results_after

    before = None
    loaded, results_before, results_after = _run(engine, scenario)

    assert loaded is False
    assert engine.snapshot is before
    assert results_after == results_before
    assert seen_during_training == [(LoadState.TRAINING, True)]
    assert store.invalidations == 1
    assert store.writes == 1
    assert engine.state is LoadState.IDLE


def test_cancel_during_extraction_installs_nothing():
    engine: FeaturesEngine

    def cancel_on_third(track_id: int) -> None:
        if track_id == 3:
            engine.request_cancel_load()

    catalog = _make_catalog(on_fetch=cancel_on_third)
    engine = _engine(catalog)

    assert _run(engine, engine.load) is False
    assert not engine.ready
    assert catalog.fetch_calls == 3


def test_cancel_request_before_load_does_not_leak_into_it():
    engine = _engine(_make_catalog())
    engine.request_cancel_load()

    assert _run(engine, engine.load) is True


def test_cache_reload_reproduces_track_positions(tmp_path: Path):
    store = FileCacheStore(tmp_path / "cache.json")
    trained = _engine(_make_catalog(), store)
    _run(trained, trained.load)

    catalog = _make_catalog()
    reloaded = _engine(catalog, store, seed=123)
    assert _run(reloaded, reloaded.load) is True

    assert catalog.fetch_calls == 0
    assert reloaded.snapshot.track_positions == trained.snapshot.track_positions
    assert reloaded.snapshot.indices.release_positions == trained.snapshot.indices.release_positions
    assert reloaded.snapshot.indices.artist_matrices == trained.snapshot.indices.artist_matrices
    assert reloaded.get_similar_tracks([1], 100) == trained.get_similar_tracks([1], 100)


def test_cache_from_other_features_is_ignored(tmp_path: Path):
    store = FileCacheStore(tmp_path / "cache.json")
    trained = _engine(_make_catalog(), store)
    _run(trained, trained.load)

    catalog = _make_catalog()
    settings = TrainSettings(feature_settings={"rhythm.bpm": FeatureSettings(1.0)}, iteration_count=2)
    other = _engine(catalog, store, settings=settings)
    assert _run(other, other.load) is True

    assert catalog.fetch_calls == 32
    assert other.snapshot.network.dimension_count == 1


def _cached_engine(catalog: _StubCatalog) -> FeaturesEngine:
    network = Network.from_ref_vectors(2, 2, [[0.0] * 7, [1.0] * 7, [2.0] * 7, [3.0] * 7])
    snapshot = CacheSnapshot(
        network=network,
        track_positions={
            1: [Position(0, 0)],
            2: [Position(1, 1)],
            3: [Position(0, 0)],
            4: [Position(1, 1)],
            5: [Position(1, 0)],
        },
        feature_weights=TRAIN_SETTINGS.feature_weights(),
    )
    return _engine(catalog, _MemoryCacheStore(snapshot))


def test_release_spanning_two_neurons_searches_both():
    relations = {
        1: TrackRelations(release_id=10, artist_links=((100, "artist"),)),
        2: TrackRelations(release_id=10, artist_links=((100, "artist"),)),
        3: TrackRelations(release_id=20, artist_links=((200, "artist"), (201, "composer"))),
        4: TrackRelations(release_id=30, artist_links=((300, "artist"),)),
        5: TrackRelations(release_id=40, artist_links=((400, "composer"),)),
    }
    catalog = _StubCatalog({}, relations)
    engine = _cached_engine(catalog)

    assert _run(engine, engine.load) is True

    assert engine.snapshot.indices.release_positions[10] == {Position(0, 0), Position(1, 1)}
    assert engine.get_similar_releases(10, 2) == {20, 30}
    assert engine.get_similar_releases(10, 10) == {20, 30, 40}
    assert engine.get_similar_tracks([1], 1) == {3}
    assert engine.get_similar_artists(100, ["artist"], 10) == {200, 300}
    assert engine.get_similar_artists(100, ["composer"], 10) == {201, 400}
    assert engine.get_similar_artists(100, ["artist", "composer"], 10) == {200, 201, 300, 400}
    assert len(engine.get_similar_artists(100, ["artist", "composer"], 3)) == 3
    assert engine.get_similar_artists(100, ["lyricist"], 10) == set()


def test_cached_tracks_missing_from_catalog_are_dropped():
    relations = {1: TrackRelations(release_id=10), 3: TrackRelations(release_id=20)}
    engine = _cached_engine(_StubCatalog({}, relations))

    _run(engine, engine.load)

    assert set(engine.snapshot.track_positions) == {1, 3}
    assert engine.get_similar_tracks([1], 10) == {3}


def test_same_neuron_policy_does_not_expand():
    relations = {i: TrackRelations(release_id=i * 10) for i in range(1, 6)}
    catalog = _StubCatalog({}, relations)
    network = Network.from_ref_vectors(2, 2, [[0.0] * 7] * 4)
    store = _MemoryCacheStore(
        CacheSnapshot(
            network=network,
            track_positions={1: [Position(0, 0)], 2: [Position(1, 1)]},
            feature_weights=TRAIN_SETTINGS.feature_weights(),
        )
    )
    engine = FeaturesEngine(catalog, catalog, store, train_settings=TRAIN_SETTINGS, expand_neighbors=False)

    _run(engine, engine.load)

    assert engine.get_similar_tracks([1], 10) == set()


def test_locate_places_raw_features_like_training_did():
    catalog = _make_catalog()
    engine = _engine(catalog)
    _run(engine, engine.load)

    for track_id in (1, 2, 9):
        assert engine.locate(catalog.features[track_id]) == engine.snapshot.track_positions[track_id][0]
    assert engine.locate({"rhythm.bpm": [120.0]}) is None


def test_cache_write_failure_keeps_loaded_state(tmp_path: Path):
    blocker = tmp_path / "blocker"
    blocker.write_text("occupied", encoding="utf-8")
    engine = _engine(_make_catalog(), FileCacheStore(blocker / "cache.json"))

    assert _run(engine, engine.load) is True
    assert engine.ready


def test_cancel_before_a_scheduled_load_first_runs_stops_it():
    catalog = _make_catalog()
    engine = _engine(catalog)

    async def scenario():
        task = asyncio.create_task(engine.load())
        engine.request_cancel_load()
        return await task

    assert _run(engine, scenario) is False
    assert not engine.ready
    assert catalog.fetch_calls == 0


def test_cancel_reaches_loads_waiting_behind_a_running_one():
    catalog = _make_catalog()
    engine = _engine(catalog)

    async def scenario():
        running = asyncio.create_task(engine.load(progress_callback=lambda _: engine.request_cancel_load()))
        queued = asyncio.create_task(engine.load(force_reload=True))
        return await running, await queued

    assert _run(engine, scenario) == (False, False)
    assert not engine.ready


def test_load_requested_after_a_cancel_still_runs():
    engine = _engine(_make_catalog())

    async def scenario():
        first = asyncio.create_task(engine.load())
        engine.request_cancel_load()
        second = asyncio.create_task(engine.load())
        return await first, await second

    assert _run(engine, scenario) == (False, True)
    assert engine.ready


def test_closed_engine_refuses_to_load():
    catalog = _make_catalog()
    engine = _engine(catalog)
    engine.close()

    assert asyncio.run(engine.load()) is False
    assert catalog.fetch_calls == 0
