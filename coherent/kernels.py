"""Radial basis function kernels.

Kernels act elementwise on arrays of distances (not squared distances).
"""

import numpy as np
from jaxtyping import Float

from .errors import ConfigurationError

__all__ = ['gaussian_kernel', 'scaled_gaussian_kernel']


def gaussian_kernel(distances: Float[np.ndarray, '...']) -> Float[np.ndarray, '...']:
    """Gaussian kernel ``exp(-|x|^2)``."""
    return np.exp(-np.abs(distances) ** 2)


def scaled_gaussian_kernel(
    distances: Float[np.ndarray, '...'], sigma: float
) -> Float[np.ndarray, '...']:
    """Gaussian kernel with bandwidth.

    Parameters
    ----------
    distances : array
        Array of distances.

    sigma : float
        Spatial scale parameter; the kernel is ``exp(-x^2 / (4 sigma))``.

    Returns
    -------
    value : array
        Evaluated kernel. Bind ``sigma`` with :func:`functools.partial`
        to obtain a picklable one-argument kernel.

    """
    if sigma <= 0:
        raise ConfigurationError('sigma must be positive.')
    return np.exp(-np.abs(distances) ** 2 / (4.0 * sigma))
