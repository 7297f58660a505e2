"""Distance metrics used for sparsification and kernel evaluation.

A metric is a small strategy object: it evaluates the distance between two
points, all pairwise distances of a point set, and knows how to configure a
:class:`sklearn.neighbors.BallTree` for range queries.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import numpy as np
from jaxtyping import Float
from scipy.spatial.distance import cdist

from .errors import ConfigurationError, DimensionMismatch

__all__ = ['Metric', 'Euclidean', 'Minkowski', 'STMetric']


class Metric(ABC):
    """Distance between points given as rows of an array."""

    #: Exponent of the underlying power mean or p-norm.
    p: float = 2.0

    @abstractmethod
    def __call__(self, x: Float[np.ndarray, 'd'], y: Float[np.ndarray, 'd']) -> float:
        """Distance between two points."""

    @abstractmethod
    def pairwise(self, points: Float[np.ndarray, 'N d']) -> Float[np.ndarray, 'N N']:
        """Dense matrix of pairwise distances."""

    @abstractmethod
    def balltree_params(self) -> dict[str, Any]:
        """Keyword arguments selecting this metric in a ``BallTree``."""

    def check_tree_compatible(self) -> None:
        """Raise if ball-tree sparsification is invalid for this metric.

        Exponents below one break the triangle inequality, so range queries
        on a metric tree would silently miss neighbours.
        """
        if self.p < 1:
            raise ConfigurationError(
                f'Cannot use ball trees for sparsification with p={self.p} < 1.'
            )


@dataclass(frozen=True)
class Euclidean(Metric):
    """Euclidean distance."""

    def __call__(self, x, y) -> float:
        return float(np.linalg.norm(np.asarray(x) - np.asarray(y)))

    def pairwise(self, points):
        points = np.asarray(points, dtype=np.float64)
        return cdist(points, points, metric='euclidean')

    def balltree_params(self) -> dict[str, Any]:
        return {'metric': 'euclidean'}


@dataclass(frozen=True)
class Minkowski(Metric):
    """Generalised p-norm distance ``(sum |x_i - y_i|^p)^(1/p)``."""

    p: float = 1.0

    def __post_init__(self) -> None:
        if not self.p > 0:
            raise ConfigurationError('Minkowski exponent must be positive.')

    def __call__(self, x, y) -> float:
        diff = np.abs(np.asarray(x, dtype=np.float64) - np.asarray(y, dtype=np.float64))
        if np.isinf(self.p):
            return float(diff.max())
        return float(np.sum(diff**self.p) ** (1.0 / self.p))

    def pairwise(self, points):
        points = np.asarray(points, dtype=np.float64)
        diff = np.abs(points[:, None, :] - points[None, :, :])
        if np.isinf(self.p):
            return diff.max(axis=-1)
        return np.sum(diff**self.p, axis=-1) ** (1.0 / self.p)

    def balltree_params(self) -> dict[str, Any]:
        if np.isinf(self.p):
            return {'metric': 'chebyshev'}
        return {'metric': 'minkowski', 'p': self.p}


@dataclass(frozen=True)
class STMetric(Metric):
    """Spatiotemporal metric on time-concatenated trajectories.

    A point is a flat vector of ``q`` consecutive ``dim``-dimensional
    positions. The spatial metric is applied per time block and the block
    distances are combined by the power mean with exponent ``p``
    (``p = inf`` gives the maximum, ``p = -inf`` the minimum).
    """

    dim: int = 2
    p: float = 1.0
    spatial: Metric = field(default_factory=Euclidean)

    def __post_init__(self) -> None:
        if self.dim < 1:
            raise ConfigurationError('dim must be positive.')
        if self.p == 0:
            raise ConfigurationError('STMetric exponent must be non-zero.')

    def _blocks(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64)
        if x.shape[-1] % self.dim != 0:
            raise DimensionMismatch(
                f'Point length {x.shape[-1]} is not a multiple of dim={self.dim}.'
            )
        return x.reshape(x.shape[:-1] + (x.shape[-1] // self.dim, self.dim))

    def _reduce(self, d: np.ndarray, axis: int) -> np.ndarray:
        if np.isposinf(self.p):
            return d.max(axis=axis)
        if np.isneginf(self.p):
            return d.min(axis=axis)
        return np.mean(d**self.p, axis=axis) ** (1.0 / self.p)

    def __call__(self, x, y) -> float:
        xb, yb = self._blocks(x), self._blocks(y)
        d = np.array([self.spatial(a, b) for a, b in zip(xb, yb)])
        return float(self._reduce(d, axis=0))

    def pairwise(self, points):
        blocks = self._blocks(points)  # (N, q, dim)
        d = np.stack(
            [self.spatial.pairwise(blocks[:, t, :]) for t in range(blocks.shape[1])]
        )
        return self._reduce(d, axis=0)

    def balltree_params(self) -> dict[str, Any]:
        return {'metric': 'pyfunc', 'func': self}
