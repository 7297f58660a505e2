"""Miscellaneous utilities."""

from typing import Sequence, Union

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import LinearOperator

from .errors import ConfigurationError, DimensionMismatch


def check_square(A: Union[np.ndarray, sparse.spmatrix, LinearOperator]) -> int:
    """Return the size of a square operator, raise if it is not square."""
    shape = A.shape
    if len(shape) != 2 or shape[0] != shape[1]:
        raise DimensionMismatch(f'Operator must be square, got shape {shape}.')
    return int(shape[0])


def as_time_span(
    tspan: Sequence[float],
    *,
    uniform: bool = False,
    rtol: float = 1e-8,
) -> np.ndarray:
    """Validate a time span and return it as a float array.

    The span needs at least two strictly increasing times. With
    ``uniform=True`` all steps must agree up to ``rtol`` relative to the
    first step.
    """
    times = np.asarray(tspan, dtype=np.float64).reshape(-1)
    if times.size < 2:
        raise ConfigurationError('tspan must contain at least two times.')
    if not np.all(np.isfinite(times)):
        raise ConfigurationError('tspan must be finite.')
    steps = np.diff(times)
    if np.any(steps <= 0):
        raise ConfigurationError('tspan must be strictly increasing.')
    if uniform and not np.allclose(steps, steps[0], rtol=rtol, atol=0.0):
        raise ConfigurationError('tspan must be uniformly spaced.')
    return times


def time_step(times: np.ndarray) -> float:
    """Step of a uniform time span (see :func:`as_time_span`)."""
    return float((times[-1] - times[0]) / (times.size - 1))
