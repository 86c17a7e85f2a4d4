from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger("som")

Coordinate = int


class NetworkStateError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True, order=True)
class Position:
    x: Coordinate
    y: Coordinate


@dataclass(frozen=True, slots=True)
class CurrentIteration:
    current_iteration: int
    total_iterations: int


ProgressCallback = Callable[[CurrentIteration], None]
CancellationPredicate = Callable[[], bool]


def _decay(start: float, end: float, progress: float) -> float:
    return start * (end / start) ** progress


class Network:
    """Rectangular self-organizing map.

    Neuron ``(x, y)`` lives at row ``y * width + x`` of the reference vector
    matrix, so scanning rows is a row-major scan of the grid and ``argmin``
    ties resolve to the first neuron in that order.

    A network is trained once. Retraining means building a new instance.
    """

    def __init__(
        self,
        width: Coordinate,
        height: Coordinate,
        dimension_count: int,
        *,
        rng: np.random.Generator | None = None,
        init_bounds: Tuple[np.ndarray | float, np.ndarray | float] | None = None,
        learning_rate: Tuple[float, float] = (0.5, 0.01),
        neighborhood_radius: Tuple[float, float] | None = None,
    ) -> None:
        if width < 2 or height < 2:
            raise ValueError(f"network must be at least 2x2 (got {width}x{height})")
        if dimension_count < 1:
            raise ValueError("network needs at least one dimension")

        self.width = width
        self.height = height
        self.dimension_count = dimension_count
        self._rng = rng if rng is not None else np.random.default_rng()

        if neighborhood_radius is None:
            neighborhood_radius = (max(max(width, height) / 2.0, 1.0), 0.5)
        for start, end in (learning_rate, neighborhood_radius):
            if start <= 0 or end <= 0:
                raise ValueError("decay schedules must be strictly positive")
        self._learning_rate = learning_rate
        self._neighborhood_radius = neighborhood_radius

        lower, upper = init_bounds if init_bounds is not None else (0.0, 1.0)
        lower = np.broadcast_to(np.asarray(lower, dtype=np.float64), (dimension_count,))
        upper = np.broadcast_to(np.asarray(upper, dtype=np.float64), (dimension_count,))
        self._ref_vectors = self._rng.uniform(lower, upper, size=(width * height, dimension_count))
        self._weights = np.ones(dimension_count, dtype=np.float64)

        index = np.arange(width * height)
        self._coords = np.stack([index % width, index // width], axis=1).astype(np.float64)
        self._trained = False

    @classmethod
    def from_ref_vectors(
        cls,
        width: Coordinate,
        height: Coordinate,
        ref_vectors: Sequence[Sequence[float]] | np.ndarray,
        weights: Sequence[float] | np.ndarray | None = None,
    ) -> "Network":
        matrix = np.array(ref_vectors, dtype=np.float64)
        if matrix.ndim != 2 or matrix.shape[0] != width * height:
            raise ValueError(f"expected {width * height} reference vectors, got shape {matrix.shape}")
        network = cls(width, height, matrix.shape[1], rng=np.random.default_rng(0))
        network._ref_vectors = matrix
        if weights is not None:
            network.set_data_weights(weights)
        network._trained = True
        return network

    @property
    def trained(self) -> bool:
        return self._trained

    @property
    def ref_vectors(self) -> np.ndarray:
        view = self._ref_vectors.view()
        view.flags.writeable = False
        return view

    @property
    def weights(self) -> np.ndarray:
        view = self._weights.view()
        view.flags.writeable = False
        return view

    def set_data_weights(self, weights: Sequence[float] | np.ndarray) -> None:
        array = np.array(weights, dtype=np.float64)
        if array.shape != (self.dimension_count,):
            raise ValueError(f"weights must have {self.dimension_count} entries, got {array.shape}")
        if np.any(array < 0):
            raise ValueError("weights must be non-negative")
        self._weights = array

    def contains(self, position: Position) -> bool:
        return 0 <= position.x < self.width and 0 <= position.y < self.height

    def ref_vector_at(self, position: Position) -> np.ndarray:
        if not self.contains(position):
            raise ValueError(f"{position} is outside a {self.width}x{self.height} network")
        return self.ref_vectors[position.y * self.width + position.x]

    def _as_matrix(self, samples: Sequence[np.ndarray] | np.ndarray) -> np.ndarray:
        data = np.asarray(samples, dtype=np.float64)
        if data.ndim != 2 or data.shape[0] == 0:
            raise ValueError("samples must be a non-empty 2-D array")
        if data.shape[1] != self.dimension_count:
            raise ValueError(f"samples have {data.shape[1]} dimensions, expected {self.dimension_count}")
        return data

    def _closest_index(self, vector: np.ndarray) -> int:
        distances = ((self._ref_vectors - vector) ** 2) @ self._weights
        return int(np.argmin(distances))

    def _position_of(self, index: int) -> Position:
        return Position(index % self.width, index // self.width)

    def train(
        self,
        samples: Sequence[np.ndarray] | np.ndarray,
        iteration_count: int,
        progress_callback: Optional[ProgressCallback] = None,
        cancellation_predicate: Optional[CancellationPredicate] = None,
    ) -> bool:
        """Online training, one shuffled pass over ``samples`` per iteration.

        Learning rate and neighbourhood radius both decay exponentially over
        the whole run. Returns ``False`` when cancelled; the network is then
        left untrained and must not be used for classification.
        """
        if self._trained:
            raise NetworkStateError("network is already trained")
        if iteration_count < 1:
            raise ValueError("iteration_count must be at least 1")
        data = self._as_matrix(samples)

        sample_count = data.shape[0]
        total_steps = iteration_count * sample_count
        step = 0
        for iteration in range(iteration_count):
            if cancellation_predicate is not None and cancellation_predicate():
                logger.debug("Training cancelled before pass %s / %s", iteration + 1, iteration_count)
                return False

            for index in self._rng.permutation(sample_count):
                progress = step / total_steps
                learning_rate = _decay(*self._learning_rate, progress)
                sigma = _decay(*self._neighborhood_radius, progress)
                self._update_ref_vectors(data[index], learning_rate, sigma)
                step += 1

            if progress_callback is not None:
                progress_callback(CurrentIteration(iteration + 1, iteration_count))

        self._trained = True
        return True

    def _update_ref_vectors(self, sample: np.ndarray, learning_rate: float, sigma: float) -> None:
        bmu = self._closest_index(sample)
        grid_distances = np.sum((self._coords - self._coords[bmu]) ** 2, axis=1)
        influence = learning_rate * np.exp(-grid_distances / (2.0 * sigma * sigma))
        self._ref_vectors += influence[:, np.newaxis] * (sample - self._ref_vectors)

    def get_closest_ref_vector_position(self, vector: Sequence[float] | np.ndarray) -> Position:
        array = np.asarray(vector, dtype=np.float64)
        if array.shape != (self.dimension_count,):
            raise ValueError(f"vector must have {self.dimension_count} dimensions, got {array.shape}")
        return self._position_of(self._closest_index(array))

    def compute_ref_vectors_distance_median(self) -> float:
        """Median weighted euclidean distance between grid-adjacent neurons."""
        grid = self._ref_vectors.reshape(self.height, self.width, self.dimension_count)
        horizontal = ((grid[:, 1:] - grid[:, :-1]) ** 2) @ self._weights
        vertical = ((grid[1:, :] - grid[:-1, :]) ** 2) @ self._weights
        distances = np.sqrt(np.concatenate([horizontal.ravel(), vertical.ravel()]))
        return float(np.median(distances))
