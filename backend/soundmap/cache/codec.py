from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np

from ..services.index import TrackId
from ..services.network import Network, Position
from ..services.normalizer import NormalizationFactors

logger = logging.getLogger("cache")

CACHE_FORMAT_VERSION = 1


@dataclass(frozen=True, slots=True)
class CacheSnapshot:
    network: Network
    track_positions: Dict[TrackId, List[Position]]
    normalization_factors: Optional[NormalizationFactors] = None
    feature_weights: Optional[Dict[str, float]] = None


def encode_snapshot(snapshot: CacheSnapshot) -> bytes:
    network = snapshot.network
    factors = snapshot.normalization_factors
    document: Dict[str, Any] = {
        "version": CACHE_FORMAT_VERSION,
        "width": network.width,
        "height": network.height,
        "ref_vectors": network.ref_vectors.tolist(),
        "weights": network.weights.tolist(),
        "normalization": None
        if factors is None
        else {"scale": factors.scale.tolist(), "offset": factors.offset.tolist()},
        "features": snapshot.feature_weights,
        "track_positions": {
            str(track_id): [[position.x, position.y] for position in sorted(positions)]
            for track_id, positions in snapshot.track_positions.items()
        },
    }
    return json.dumps(document, separators=(",", ":")).encode("utf-8")


def decode_snapshot(data: bytes) -> Optional[CacheSnapshot]:
    try:
        document = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable cache snapshot: %s", exc)
        return None

    version = document.get("version") if isinstance(document, dict) else None
    if version != CACHE_FORMAT_VERSION:
        logger.warning("Ignoring cache snapshot with format version %s (expected %s)", version, CACHE_FORMAT_VERSION)
        return None

    try:
        network = Network.from_ref_vectors(
            int(document["width"]),
            int(document["height"]),
            document["ref_vectors"],
            document["weights"],
        )

        factors: Optional[NormalizationFactors] = None
        raw_factors = document.get("normalization")
        if raw_factors is not None:
            factors = NormalizationFactors(
                scale=np.array(raw_factors["scale"], dtype=np.float64),
                offset=np.array(raw_factors["offset"], dtype=np.float64),
            )
            if factors.scale.shape != (network.dimension_count,) or factors.offset.shape != (network.dimension_count,):
                raise ValueError("normalization factors do not match the network dimension")

        feature_weights: Optional[Dict[str, float]] = None
        raw_features = document.get("features")
        if raw_features is not None:
            feature_weights = {str(name): float(weight) for name, weight in raw_features.items()}

        track_positions: Dict[TrackId, List[Position]] = {}
        for key, coordinates in document["track_positions"].items():
            positions = [Position(int(x), int(y)) for x, y in coordinates]
            for position in positions:
                if not network.contains(position):
                    raise ValueError(f"track {key} has out of bounds position {position}")
            track_positions[int(key)] = positions
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        logger.warning("Ignoring malformed cache snapshot: %s", exc)
        return None

    return CacheSnapshot(
        network=network,
        track_positions=track_positions,
        normalization_factors=factors,
        feature_weights=feature_weights,
    )
