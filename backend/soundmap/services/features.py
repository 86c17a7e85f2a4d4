from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

import numpy as np

logger = logging.getLogger("som")


class UnknownFeatureError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class FeatureDef:
    dimension_count: int


@dataclass(frozen=True, slots=True)
class FeatureSettings:
    weight: float = 1.0


FeatureSettingsMap = Dict[str, FeatureSettings]
FeatureValuesMap = Dict[str, List[float]]


FEATURE_DEFS: Dict[str, FeatureDef] = {
    "lowlevel.average_loudness": FeatureDef(1),
    "lowlevel.barkbands.mean": FeatureDef(27),
    "lowlevel.dissonance.mean": FeatureDef(1),
    "lowlevel.dynamic_complexity": FeatureDef(1),
    "lowlevel.erbbands.mean": FeatureDef(40),
    "lowlevel.gfcc.mean": FeatureDef(13),
    "lowlevel.hfc.mean": FeatureDef(1),
    "lowlevel.melbands.mean": FeatureDef(40),
    "lowlevel.mfcc.mean": FeatureDef(13),
    "lowlevel.pitch_salience.mean": FeatureDef(1),
    "lowlevel.silence_rate_30dB.mean": FeatureDef(1),
    "lowlevel.spectral_centroid.mean": FeatureDef(1),
    "lowlevel.spectral_complexity.mean": FeatureDef(1),
    "lowlevel.spectral_contrast_coeffs.mean": FeatureDef(6),
    "lowlevel.spectral_contrast_valleys.mean": FeatureDef(6),
    "lowlevel.spectral_contrast_valleys.var": FeatureDef(6),
    "lowlevel.spectral_energy.mean": FeatureDef(1),
    "lowlevel.spectral_energyband_high.mean": FeatureDef(1),
    "lowlevel.spectral_energyband_low.mean": FeatureDef(1),
    "lowlevel.spectral_energyband_middle_high.mean": FeatureDef(1),
    "lowlevel.spectral_energyband_middle_low.mean": FeatureDef(1),
    "lowlevel.spectral_entropy.mean": FeatureDef(1),
    "lowlevel.spectral_flux.mean": FeatureDef(1),
    "lowlevel.spectral_rolloff.mean": FeatureDef(1),
    "lowlevel.spectral_rolloff.median": FeatureDef(1),
    "lowlevel.zerocrossingrate.mean": FeatureDef(1),
    "rhythm.bpm": FeatureDef(1),
    "rhythm.danceability": FeatureDef(1),
    "rhythm.onset_rate": FeatureDef(1),
    "tonal.chords_strength.mean": FeatureDef(1),
    "tonal.hpcp.mean": FeatureDef(36),
    "tonal.hpcp_entropy.mean": FeatureDef(1),
    "tonal.key_strength": FeatureDef(1),
    "tonal.tuning_frequency": FeatureDef(1),
}

DEFAULT_TRAIN_FEATURE_SETTINGS: Dict[str, FeatureSettings] = {
    "lowlevel.spectral_energyband_high.mean": FeatureSettings(1.0),
    "lowlevel.spectral_rolloff.median": FeatureSettings(1.0),
    "lowlevel.spectral_contrast_valleys.var": FeatureSettings(1.0),
    "lowlevel.erbbands.mean": FeatureSettings(1.0),
    "lowlevel.gfcc.mean": FeatureSettings(1.0),
}


def get_feature_def(name: str) -> FeatureDef:
    try:
        return FEATURE_DEFS[name]
    except KeyError:
        raise UnknownFeatureError(f"unknown feature '{name}'") from None


def feature_order(settings_map: Mapping[str, FeatureSettings]) -> List[str]:
    # vectors and weights must agree on slot layout regardless of config ordering
    return sorted(settings_map)


def validate_feature_settings(settings_map: Mapping[str, FeatureSettings]) -> None:
    if not settings_map:
        raise ValueError("at least one feature must be enabled for training")
    for name, settings in settings_map.items():
        get_feature_def(name)
        if not np.isfinite(settings.weight) or settings.weight < 0:
            raise ValueError(f"feature '{name}' has an invalid weight ({settings.weight})")
    # all-zero weights make every neuron equally close to every track
    if not any(settings.weight > 0 for settings in settings_map.values()):
        raise ValueError("at least one feature must have a positive weight")


def get_dimension_count(settings_map: Mapping[str, FeatureSettings]) -> int:
    return sum(get_feature_def(name).dimension_count for name in settings_map)


def build_weights(settings_map: Mapping[str, FeatureSettings], total_dims: int) -> np.ndarray:
    """Per-dimension distance weights.

    Every slot of a feature spanning ``d`` dimensions gets ``weight / d`` so the
    feature as a whole contributes exactly its configured weight.
    """
    weights = np.empty(total_dims, dtype=np.float64)
    index = 0
    for name in feature_order(settings_map):
        dims = get_feature_def(name).dimension_count
        weights[index:index + dims] = settings_map[name].weight / dims
        index += dims
    if index != total_dims:
        raise ValueError(f"weights cover {index} dimensions, expected {total_dims}")
    return weights


def to_input_vector(
    track_id: object,
    values_map: Mapping[str, List[float]],
    settings_map: Mapping[str, FeatureSettings],
    total_dims: int,
) -> Optional[np.ndarray]:
    vector = np.empty(total_dims, dtype=np.float64)
    index = 0
    for name in feature_order(settings_map):
        expected = get_feature_def(name).dimension_count
        values = values_map.get(name)
        if values is None:
            logger.warning("Track %s has no value for feature '%s', skipping", track_id, name)
            return None
        if len(values) != expected:
            logger.warning(
                "Dimension mismatch for feature '%s' on track %s: expected %s, got %s",
                name,
                track_id,
                expected,
                len(values),
            )
            return None
        try:
            vector[index:index + expected] = [float(v) for v in values]
        except (TypeError, ValueError):
            logger.warning("Non numeric value for feature '%s' on track %s, skipping", name, track_id)
            return None
        index += expected
    if not np.all(np.isfinite(vector)):
        logger.warning("Track %s has non finite feature values, skipping", track_id)
        return None
    return vector
