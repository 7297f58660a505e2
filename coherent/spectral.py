"""Stationary distributions and diffusion coordinates of Markov operators.

The operators may be dense arrays, sparse matrices or
:class:`scipy.sparse.linalg.LinearOperator` chains such as those returned by
:func:`coherent.heatflow.compose_operators`.
"""

from __future__ import annotations

__all__ = [
    'DiffusionEmbedding',
    'stationary_distribution',
    'l_mul_lt',
    'diffusion_coordinates',
    'diffusion_distance',
]

from dataclasses import dataclass
from typing import Union

import numpy as np
from jaxtyping import Float
from scipy import sparse
from scipy.sparse.linalg import (
    ArpackNoConvergence,
    LinearOperator,
    aslinearoperator,
    eigs,
    eigsh,
)
from scipy.spatial.distance import pdist, squareform

from .errors import ConfigurationError, DimensionMismatch, NumericalFailure
from .utils import check_square

Operator = Union[np.ndarray, sparse.spmatrix, LinearOperator]

ARPACK_MAXITER: int = 1000


@dataclass(frozen=True)
class DiffusionEmbedding:
    """Diffusion coordinates and their weights.

    ``weights`` holds the singular values of the Markov operator in
    decreasing order, ``coordinates`` one row per data point and one column
    per coordinate.
    """

    weights: np.ndarray
    coordinates: np.ndarray

    def __iter__(self):
        """Allow unpacking as ``(weights, coordinates)``."""
        return iter((self.weights, self.coordinates))


def _to_dense(P: Operator) -> np.ndarray:
    if isinstance(P, LinearOperator):
        return P.matmat(np.eye(P.shape[0]))
    if sparse.issparse(P):
        return P.toarray()
    return np.asarray(P, dtype=np.float64)


def stationary_distribution(
    P: Operator,
    *,
    maxiter: int = ARPACK_MAXITER,
    sign_tol: float = 1e-12,
    normalize: bool = False,
) -> Float[np.ndarray, 'n']:
    """Eigenvector of ``P`` for its largest-magnitude eigenvalue.

    For a row-stochastic transition matrix pass its transpose to obtain
    the stationary distribution. The vector is returned non-negative; if
    entries larger than ``sign_tol * max|pi|`` carry both signs the
    distribution is ill-defined and :class:`NumericalFailure` is raised.
    With ``normalize=True`` it is scaled to unit sum, otherwise it has unit
    Euclidean norm.
    """
    n = check_square(P)
    if n < 3:
        # ARPACK needs k < n - 1.
        vals, vecs = np.linalg.eig(_to_dense(P))
        pi = np.real(vecs[:, np.argmax(np.abs(vals))])
    else:
        try:
            _, vecs = eigs(P, k=1, which='LM', maxiter=maxiter)
        except ArpackNoConvergence as exc:
            raise NumericalFailure(
                f'Leading eigenvector did not converge within {maxiter} iterations.'
            ) from exc
        pi = np.real(vecs[:, 0])

    scale = np.max(np.abs(pi))
    if not np.isfinite(scale) or scale == 0:
        raise NumericalFailure('Leading eigenvector is zero or not finite.')
    significant = pi[np.abs(pi) > sign_tol * scale]
    if np.any(significant > 0) and np.any(significant < 0):
        raise NumericalFailure('Both signs in stationary distribution.')
    pi = np.abs(pi)
    if normalize:
        pi = pi / pi.sum()
    return pi


def l_mul_lt(L: Operator, pi: Float[np.ndarray, 'n']) -> LinearOperator:
    """Symmetric operator ``diag(sqrt(pi)) L diag(1/pi) L^T diag(sqrt(pi))``.

    Its eigenvalues are the squared singular values of
    ``diag(sqrt(pi)) L diag(1/sqrt(pi))``. Linear-operator inputs are
    chained lazily; explicit matrices are reweighted once and the result is
    the outer product of the reweighted matrix with its transpose. ``L`` is
    not modified.
    """
    n = check_square(L)
    pi = np.asarray(pi, dtype=np.float64).reshape(-1)
    if pi.shape[0] != n:
        raise DimensionMismatch(f'pi has length {pi.shape[0]}, operator has size {n}.')
    if np.any(pi <= 0):
        raise NumericalFailure('Stationary distribution must be strictly positive.')
    sqrt_pi = np.sqrt(pi)

    if isinstance(L, LinearOperator):
        sqrt_op = aslinearoperator(sparse.diags(sqrt_pi))
        inv_op = aslinearoperator(sparse.diags(1.0 / pi))
        return sqrt_op @ L @ inv_op @ L.T @ sqrt_op

    if sparse.issparse(L):
        W = sparse.diags(sqrt_pi) @ L @ sparse.diags(1.0 / sqrt_pi)
    else:
        W = (sqrt_pi[:, None] * np.asarray(L, dtype=np.float64)) / sqrt_pi[None, :]
    W_op = aslinearoperator(W)
    return W_op @ W_op.T


def diffusion_coordinates(
    P: Operator,
    n_coords: int,
    *,
    maxiter: int = ARPACK_MAXITER,
) -> DiffusionEmbedding:
    """Compute (time-coupled) diffusion coordinates of a Markov operator.

    Parameters
    ----------
    P : array, sparse matrix or LinearOperator
        Row-stochastic transition operator, possibly a composition of
        several time steps.
    n_coords : int
        Number of diffusion coordinates, ``1 <= n_coords < N``.
    maxiter : int
        ARPACK iteration cap; exceeding it raises :class:`NumericalFailure`.

    Returns
    -------
    DiffusionEmbedding
        Weights ``sigma`` (square roots of the leading eigenvalues of
        :func:`l_mul_lt`) and coordinates ``Psi`` whose columns are the
        eigenvectors scaled by ``sigma`` and whose rows are scaled by
        ``1 / sqrt(pi)``.

    """
    n = check_square(P)
    n_coords = int(n_coords)
    if n_coords < 1 or n_coords >= n:
        raise ConfigurationError(
            f'n_coords must satisfy 1 <= n_coords < N = {n}, got {n_coords}.'
        )

    pi = stationary_distribution(P.T, maxiter=maxiter)
    if np.any(pi <= 0):
        raise NumericalFailure(
            'Stationary distribution has zero entries; the operator is reducible.'
        )

    # SVD information of P from the eigendecomposition of P P^T.
    S = l_mul_lt(P, pi)
    try:
        vals, vecs = eigsh(S, k=n_coords, which='LM', maxiter=maxiter)
    except ArpackNoConvergence as exc:
        raise NumericalFailure(
            f'Diffusion coordinates did not converge within {maxiter} iterations.'
        ) from exc
    order = np.argsort(vals)[::-1]
    sigma = np.sqrt(np.clip(vals[order], 0.0, None))
    psi = vecs[:, order] * sigma[None, :]
    psi /= np.sqrt(pi)[:, None]
    return DiffusionEmbedding(weights=sigma, coordinates=psi)


def diffusion_distance(psi: Float[np.ndarray, 'N k']) -> Float[np.ndarray, 'N N']:
    """Symmetric matrix of Euclidean distances between rows of ``psi``."""
    psi = np.asarray(psi, dtype=np.float64)
    if psi.ndim != 2:
        raise DimensionMismatch('Diffusion coordinates must be a 2D array.')
    return squareform(pdist(psi, metric='euclidean'))
