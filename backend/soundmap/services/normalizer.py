from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
from sklearn.preprocessing import MinMaxScaler


class NormalizerNotReadyError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class NormalizationFactors:
    scale: np.ndarray
    offset: np.ndarray

    @property
    def dimension_count(self) -> int:
        return int(self.scale.shape[0])


class DataNormalizer:
    """Maps each dimension of the training samples into [0, 1].

    Factors are computed once from the training set and then applied unchanged
    to every vector compared against the network, training or query time.
    Values outside the observed training range are clipped.
    """

    def __init__(self, dimension_count: int) -> None:
        self.dimension_count = dimension_count
        self._factors: NormalizationFactors | None = None

    @classmethod
    def from_factors(cls, factors: NormalizationFactors) -> "DataNormalizer":
        normalizer = cls(factors.dimension_count)
        normalizer._factors = factors
        return normalizer

    @property
    def factors(self) -> NormalizationFactors:
        if self._factors is None:
            raise NormalizerNotReadyError("normalization factors have not been computed")
        return self._factors

    @property
    def ready(self) -> bool:
        return self._factors is not None

    def compute_normalization_factors(self, samples: Sequence[np.ndarray] | np.ndarray) -> NormalizationFactors:
        matrix = np.asarray(samples, dtype=np.float64)
        if matrix.ndim != 2 or matrix.shape[0] == 0:
            raise ValueError("samples must be a non-empty 2-D array")
        if matrix.shape[1] != self.dimension_count:
            raise ValueError(f"samples have {matrix.shape[1]} dimensions, expected {self.dimension_count}")

        scaler = MinMaxScaler(feature_range=(0.0, 1.0), clip=True)
        scaler.fit(matrix)
        self._factors = NormalizationFactors(
            scale=np.asarray(scaler.scale_, dtype=np.float64).copy(),
            offset=np.asarray(scaler.min_, dtype=np.float64).copy(),
        )
        return self._factors

    def normalize_data(self, vector: np.ndarray) -> None:
        factors = self.factors
        if vector.shape[-1] != self.dimension_count:
            raise ValueError(f"vector has {vector.shape[-1]} dimensions, expected {self.dimension_count}")
        vector *= factors.scale
        vector += factors.offset
        np.clip(vector, 0.0, 1.0, out=vector)

    def normalize_samples(self, samples: Sequence[np.ndarray] | np.ndarray) -> np.ndarray:
        matrix = np.array(samples, dtype=np.float64)
        if matrix.ndim == 1:
            matrix = matrix.reshape(1, -1)
        self.normalize_data(matrix)
        return matrix
