"""Diffusion maps module.

Sparse diffusion (Markov) operators from point-cloud trajectory data, as
used for the diffusion-map approach to coherent sets:

Coifman, R. R., & Lafon, S. (2006). Diffusion maps. Applied and
Computational Harmonic Analysis, 21(1),
5–30. DOI:10.1016/j.acha.2006.04.006

Banisch, R., & Koltai, P. (2017). Understanding the geometry of transport:
Diffusion maps for Lagrangian trajectory data unravel coherent sets.
Chaos, 27(3), 035804. DOI:10.1063/1.4971788

Data arrays hold one point per column. Rows may be the concatenation of
``q`` time instances of ``dim``-dimensional positions.
"""

__all__ = [
    'sparse_affinity_kernel',
    'alpha_normalize',
    'markov_normalize',
    'sparse_diff_op',
    'diff_op',
    'sparse_diff_op_family',
    'average_operators',
    'sparse_adjacency_list',
    'sparse_adjacency',
    'dm_heatflow',
]

from functools import partial
from typing import Any, Callable, Optional, Sequence, Union
import warnings

import numpy as np
from jaxtyping import Float
from scipy import sparse
from sklearn.neighbors import BallTree

from .advection import parallel_flow
from .config import DEFAULT_ALPHA, DiffusionMapConfig
from .distance import Euclidean, Metric, STMetric
from .errors import ConfigurationError, DimensionMismatch, NumericalFailure
from .heatflow import compose_operators
from .kernels import gaussian_kernel
from .parallel import ordered_map
from .utils import check_square

Kernel = Callable[[np.ndarray], np.ndarray]
Matrix = Union[np.ndarray, sparse.spmatrix]


def _as_data(data: Float[np.ndarray, 'd N']) -> np.ndarray:
    data = np.asarray(data, dtype=np.float64)
    if data.ndim != 2:
        raise DimensionMismatch('data must be a 2D array with points as columns.')
    if data.shape[1] == 0:
        raise DimensionMismatch('data contains no points.')
    return data


def _check_epsilon(epsilon: float) -> float:
    epsilon = float(epsilon)
    if not epsilon > 0:
        raise ConfigurationError('epsilon must be positive.')
    return epsilon


def _ball_tree(points: np.ndarray, metric: Metric) -> BallTree:
    metric.check_tree_compatible()
    leaf_size = 20 if isinstance(metric, STMetric) else 10
    return BallTree(points, leaf_size=leaf_size, **metric.balltree_params())


def _is_csr(A: Matrix) -> bool:
    return sparse.issparse(A) and A.format == 'csr'


def _row_sums(A: Matrix) -> np.ndarray:
    return np.asarray(A.sum(axis=1)).reshape(-1)


def _scale_rows(A: Matrix, weights: np.ndarray) -> None:
    if _is_csr(A):
        A.data *= np.repeat(weights, np.diff(A.indptr))
    else:
        A *= weights[:, None]


def _scale_columns(A: Matrix, weights: np.ndarray) -> None:
    if _is_csr(A):
        A.data *= weights[A.indices]
    else:
        A *= weights[None, :]


def _check_inplace(A: Matrix) -> None:
    if sparse.issparse(A) and not _is_csr(A):
        raise ConfigurationError('In-place normalisation needs a CSR matrix; call .tocsr().')


def _check_nonzero_rows(sums: np.ndarray) -> None:
    bad = np.flatnonzero(~(sums > 0))
    if bad.size:
        raise NumericalFailure(
            f'{bad.size} row(s) have non-positive sums (first: {bad[0]}); isolated '
            f'points need a larger epsilon or a different kernel.'
        )


def _check_connected(K: Matrix) -> None:
    n = K.shape[0]
    if n < 2:
        return
    total = K.count_nonzero() if sparse.issparse(K) else np.count_nonzero(K)
    off_diagonal = total - np.count_nonzero(K.diagonal())
    if off_diagonal == 0:
        raise ConfigurationError(
            'No pair of distinct points lies within epsilon; the diffusion '
            'operator would be trivial.'
        )


def sparse_affinity_kernel(
    data: Float[np.ndarray, 'd N'],
    kernel: Kernel,
    epsilon: float,
    metric: Optional[Metric] = None,
) -> sparse.csr_matrix:
    """Return a sparse matrix ``K`` with ``k_ij = kernel(metric(x_i, x_j))``.

    The ``x_i`` are the columns of ``data``. Entries are only computed for
    pairs with ``metric(x_i, x_j) <= epsilon``, found with a ball-tree range
    query; every point is its own neighbour. The default metric is
    Euclidean.
    """
    metric = Euclidean() if metric is None else metric
    data = _as_data(data)
    epsilon = _check_epsilon(epsilon)
    points = np.ascontiguousarray(data.T)
    n = points.shape[0]

    tree = _ball_tree(points, metric)
    idxs, dists = tree.query_radius(points, r=epsilon, return_distance=True)
    counts = np.array([len(i) for i in idxs], dtype=np.intp)
    Is = np.repeat(np.arange(n, dtype=np.intp), counts)
    Js = np.concatenate(idxs).astype(np.intp)
    Vs = np.asarray(kernel(np.concatenate(dists)), dtype=np.float64)
    if Vs.shape != Js.shape:
        raise DimensionMismatch('Kernel must act elementwise on an array of distances.')
    if np.any(Vs < 0):
        warnings.warn(
            'Kernel produced negative affinities; the result is not a Markov operator.',
            RuntimeWarning,
        )
    return sparse.csr_matrix((Vs, (Is, Js)), shape=(n, n))


def alpha_normalize(A: Matrix, alpha: float = DEFAULT_ALPHA) -> Matrix:
    """Normalise rows and columns of ``A`` in place.

    Returns ``A`` with ``a_ij := a_ij / q_i^alpha / q_j^alpha`` where
    ``q_k = sum_l a_kl`` are the row sums before normalisation. ``A`` must
    be a dense array or a CSR matrix.
    """
    check_square(A)
    _check_inplace(A)
    if alpha < 0:
        raise ConfigurationError('alpha must be non-negative.')
    q = _row_sums(A)
    _check_nonzero_rows(q)
    weights = np.power(q, -alpha)
    _scale_rows(A, weights)
    _scale_columns(A, weights)
    return A


def markov_normalize(A: Matrix) -> Matrix:
    """Normalise rows of ``A`` in place by their sums (row-stochastic result)."""
    check_square(A)
    _check_inplace(A)
    q = _row_sums(A)
    _check_nonzero_rows(q)
    _scale_rows(A, 1.0 / q)
    return A


def sparse_diff_op(
    data: Float[np.ndarray, 'd N'],
    epsilon: float,
    kernel: Kernel = gaussian_kernel,
    *,
    alpha: float = DEFAULT_ALPHA,
    metric: Optional[Metric] = None,
) -> sparse.csr_matrix:
    """Return a sparse diffusion/Markov matrix ``P``.

    Parameters
    ----------
    data : (d, N) array
        Points as columns.
    epsilon : float
        Distance threshold for sparsification.
    kernel : callable
        Diffusion kernel acting on distances, e.g. ``x -> exp(-x**2 / (4 s))``.
    alpha : float
        Exponent of the diffusion-map normalisation.
    metric : Metric, optional
        Distance used for the threshold and the kernel. Metrics with
        exponent ``p < 1`` are rejected.

    """
    metric = Euclidean() if metric is None else metric
    metric.check_tree_compatible()
    P = sparse_affinity_kernel(data, kernel, epsilon, metric)
    _check_connected(P)
    alpha_normalize(P, alpha)
    markov_normalize(P)
    return P


def diff_op(
    data: Float[np.ndarray, 'd N'],
    epsilon: float,
    kernel: Kernel = gaussian_kernel,
    *,
    alpha: float = DEFAULT_ALPHA,
    metric: Optional[Metric] = None,
) -> sparse.csr_matrix:
    """Diffusion/Markov matrix from all pairwise distances.

    Same result as :func:`sparse_diff_op` but without a spatial index, so
    any metric is allowed. Quadratic in the number of points.
    """
    metric = Euclidean() if metric is None else metric
    data = _as_data(data)
    epsilon = _check_epsilon(epsilon)
    D = metric.pairwise(data.T)
    mask = D <= epsilon
    K = np.zeros_like(D)
    K[mask] = np.asarray(kernel(D[mask]), dtype=np.float64)
    P = sparse.csr_matrix(K)
    _check_connected(P)
    alpha_normalize(P, alpha)
    markov_normalize(P)
    return P


def average_operators(ops: Sequence[Matrix]) -> Matrix:
    """Time-average of per-timestep operators, an alternative ``op_reduce``."""
    ops = list(ops)
    if not ops:
        raise ConfigurationError('Cannot average an empty sequence of operators.')
    total = ops[0].copy()
    for op in ops[1:]:
        total = total + op
    return total / len(ops)


def _time_blocks(data: np.ndarray, dim: int) -> list[np.ndarray]:
    if dim < 1:
        raise ConfigurationError('dim must be positive.')
    q, r = divmod(data.shape[0], dim)
    if r != 0:
        raise DimensionMismatch(
            f'First dimension of data ({data.shape[0]}) is not a multiple of the '
            f'spatial dimension {dim}.'
        )
    return [data[t * dim:(t + 1) * dim] for t in range(q)]


def sparse_diff_op_family(
    data: Float[np.ndarray, 'qd N'],
    epsilon: float,
    kernel: Kernel = gaussian_kernel,
    dim: int = 2,
    *,
    op_reduce: Optional[Callable[[list], Any]] = None,
    alpha: float = DEFAULT_ALPHA,
    metric: Optional[Metric] = None,
    n_jobs: Optional[int] = 1,
    progress: bool = False,
):
    """Reduce per-timestep sparse diffusion operators to one operator.

    Rows of ``data`` are interpreted as ``q`` stacked blocks of
    ``dim``-dimensional positions. One operator is built per block with
    :func:`sparse_diff_op` (in a worker pool) and the time-ordered list is
    passed to ``op_reduce``. The default reduction is
    :func:`coherent.heatflow.compose_operators`, the same ordering contract
    as the heat-flow composer; :func:`average_operators` is an alternative.
    """
    metric = Euclidean() if metric is None else metric
    metric.check_tree_compatible()
    _check_epsilon(epsilon)
    blocks = _time_blocks(_as_data(data), dim)
    ops = ordered_map(
        partial(sparse_diff_op, epsilon=epsilon, kernel=kernel, alpha=alpha, metric=metric),
        blocks,
        n_jobs=n_jobs,
        desc='Diffusion operators',
        progress=progress,
    )
    reduce_fn = compose_operators if op_reduce is None else op_reduce
    return reduce_fn(ops)


def sparse_adjacency_list(
    data: Float[np.ndarray, 'd N'],
    epsilon: float,
    *,
    metric: Optional[Metric] = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Return row and column indices of all pairs within ``epsilon``."""
    metric = Euclidean() if metric is None else metric
    data = _as_data(data)
    epsilon = _check_epsilon(epsilon)
    points = np.ascontiguousarray(data.T)
    idxs = _ball_tree(points, metric).query_radius(points, r=epsilon)
    counts = np.array([len(i) for i in idxs], dtype=np.intp)
    Is = np.repeat(np.arange(points.shape[0], dtype=np.intp), counts)
    Js = np.concatenate(idxs).astype(np.intp)
    return Is, Js


def sparse_adjacency(
    data: Float[np.ndarray, 'qd N'],
    epsilon: float,
    dim: Optional[int] = None,
    *,
    metric: Optional[Metric] = None,
    n_jobs: Optional[int] = 1,
    progress: bool = False,
) -> sparse.csr_matrix:
    """Return a boolean sparse adjacency matrix of the epsilon-graph.

    If ``dim`` is given, ``data`` is split into ``dim``-row time blocks and
    two points are adjacent if they are within ``epsilon`` at any time.
    Otherwise ``metric`` is applied to whole columns.
    """
    metric = Euclidean() if metric is None else metric
    metric.check_tree_compatible()
    data = _as_data(data)
    n = data.shape[1]
    blocks = [data] if dim is None else _time_blocks(data, dim)
    pairs = ordered_map(
        partial(sparse_adjacency_list, epsilon=epsilon, metric=metric),
        blocks,
        n_jobs=n_jobs,
        desc='Adjacency',
        progress=progress,
    )
    Is = np.concatenate([I for I, _ in pairs])
    Js = np.concatenate([J for _, J in pairs])
    A = sparse.csr_matrix(
        (np.ones(Is.size, dtype=bool), (Is, Js)), shape=(n, n), dtype=bool
    )
    # Duplicate pairs from several time blocks are summed; reduce them with OR.
    A.data[:] = True
    return A


def dm_heatflow(
    flow_fun: Callable[[np.ndarray], np.ndarray],
    p0: Float[np.ndarray, 'd N'],
    epsilon: float,
    dim: int = 2,
    *,
    config: Optional[DiffusionMapConfig] = None,
):
    """Diffusion-map heat flow of trajectories started at the columns of ``p0``.

    ``flow_fun(x)`` returns the ``(q, dim)`` trajectory of ``x``; see
    :func:`coherent.advection.parallel_flow`.
    """
    cfg = DiffusionMapConfig() if config is None else config
    data = parallel_flow(flow_fun, p0, n_jobs=cfg.n_jobs, progress=cfg.progress)
    return sparse_diff_op_family(
        data,
        epsilon,
        cfg.kernel,
        dim,
        op_reduce=cfg.op_reduce,
        alpha=cfg.alpha,
        metric=cfg.metric,
        n_jobs=cfg.n_jobs,
        progress=cfg.progress,
    )
