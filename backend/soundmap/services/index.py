from __future__ import annotations

from dataclasses import dataclass, field
from typing import (
    AbstractSet,
    Callable,
    Dict,
    Hashable,
    Iterable,
    Mapping,
    Optional,
    Set,
    Tuple,
    TypeVar,
)

import numpy as np

from .network import Coordinate, Position

IdT = TypeVar("IdT", bound=Hashable)

TrackId = int
ReleaseId = int
ArtistId = int
LinkType = str

NeighborhoodPolicy = Callable[[AbstractSet[Position], Coordinate, Coordinate], np.ndarray]


@dataclass(frozen=True, slots=True)
class TrackRelations:
    release_id: Optional[ReleaseId] = None
    artist_links: Tuple[Tuple[ArtistId, LinkType], ...] = ()


@dataclass(slots=True)
class EntityIndices:
    width: Coordinate
    height: Coordinate
    track_positions: Dict[TrackId, Set[Position]] = field(default_factory=dict)
    track_matrix: Dict[Position, Set[TrackId]] = field(default_factory=dict)
    release_positions: Dict[ReleaseId, Set[Position]] = field(default_factory=dict)
    release_matrix: Dict[Position, Set[ReleaseId]] = field(default_factory=dict)
    artist_positions: Dict[ArtistId, Set[Position]] = field(default_factory=dict)
    artist_matrices: Dict[LinkType, Dict[Position, Set[ArtistId]]] = field(default_factory=dict)


def _register(positions: Dict, matrix: Dict, entity_id: Hashable, position: Position) -> None:
    positions.setdefault(entity_id, set()).add(position)
    matrix.setdefault(position, set()).add(entity_id)


def build_indices(
    width: Coordinate,
    height: Coordinate,
    track_positions: Mapping[TrackId, Iterable[Position]],
    relations: Mapping[TrackId, Optional[TrackRelations]],
) -> EntityIndices:
    """Build forward and inverse maps for every entity domain.

    Releases and artists inherit the positions of their tracks, so an entity
    whose tracks landed on different neurons occupies all of them. Tracks
    without relations are no longer in the catalog and are left out.
    """
    indices = EntityIndices(width=width, height=height)
    for track_id, positions in track_positions.items():
        track_relations = relations.get(track_id)
        if track_relations is None:
            continue
        for position in positions:
            if not (0 <= position.x < width and 0 <= position.y < height):
                raise ValueError(f"{position} of track {track_id} is outside a {width}x{height} grid")
            _register(indices.track_positions, indices.track_matrix, track_id, position)
            if track_relations.release_id is not None:
                _register(indices.release_positions, indices.release_matrix, track_relations.release_id, position)
            for artist_id, link_type in track_relations.artist_links:
                matrix = indices.artist_matrices.setdefault(link_type, {})
                _register(indices.artist_positions, matrix, artist_id, position)
    return indices


def expand_rings(origins: AbstractSet[Position], width: Coordinate, height: Coordinate) -> np.ndarray:
    """Chebyshev distance from every neuron to the closest of ``origins``.

    The result is a ``(height, width)`` array; neurons at distance ``r`` form
    ring ``r`` around the origins.
    """
    xs = np.arange(width)
    ys = np.arange(height)
    rings = np.full((height, width), max(width, height), dtype=np.int64)
    for origin in origins:
        distances = np.maximum(np.abs(ys - origin.y)[:, np.newaxis], np.abs(xs - origin.x)[np.newaxis, :])
        np.minimum(rings, distances, out=rings)
    return rings


def same_neuron_only(origins: AbstractSet[Position], width: Coordinate, height: Coordinate) -> np.ndarray:
    rings = np.full((height, width), -1, dtype=np.int64)
    for origin in origins:
        rings[origin.y, origin.x] = 0
    return rings


def sample_ids(ids: AbstractSet[IdT], count: int, rng: np.random.Generator) -> Set[IdT]:
    """Uniform random subset of at most ``count`` ids."""
    if len(ids) <= count:
        return set(ids)
    ordered = sorted(ids)
    picked = rng.choice(len(ordered), size=count, replace=False)
    return {ordered[int(i)] for i in picked}


def get_similar_objects(
    seed_ids: Iterable[IdT],
    matrix: Mapping[Position, AbstractSet[IdT]],
    positions: Mapping[IdT, AbstractSet[Position]],
    max_count: int,
    *,
    width: Coordinate,
    height: Coordinate,
    rng: np.random.Generator,
    policy: NeighborhoodPolicy = expand_rings,
) -> Set[IdT]:
    """Entities sharing (or neighbouring) the neurons of ``seed_ids``.

    ``policy`` assigns every neuron a ring number around the seeds' neurons
    (negative means out of reach). Only occupied neurons are visited, ring by
    ring outward, until ``max_count`` candidates are found. Candidates from
    inner rings are always kept; the ring that overflows is down-sampled at
    random. Seeds are never returned. Ids are not checked against the live
    catalog.
    """
    seeds = set(seed_ids)
    if max_count <= 0:
        return set()

    origins: Set[Position] = set()
    for seed_id in seeds:
        origins.update(positions.get(seed_id, ()))
    if not origins:
        return set()

    rings = policy(origins, width, height)
    by_ring: Dict[int, Set[IdT]] = {}
    for position, ids in matrix.items():
        ring = int(rings[position.y, position.x])
        if ring >= 0:
            by_ring.setdefault(ring, set()).update(ids)

    found: Set[IdT] = set()
    for ring in sorted(by_ring):
        ring_ids = by_ring[ring] - seeds - found
        found |= sample_ids(ring_ids, max_count - len(found), rng)
        if len(found) >= max_count:
            break
    return found
