"""Heat flow of the advection-diffusion equation in Lagrangian coordinates.

The time span is split into uniform steps. For each step an implicit-Euler
propagator ``v -> (M - dt kappa K_t)^{-1} M v`` is built from the mass
matrix ``M`` and the stiffness matrix ``K_t`` assembled with the diffusion
tensors at the end of the step. The step propagators are then composed
into a single operator.
"""

from __future__ import annotations

from functools import partial, reduce
import operator
from typing import Any, Callable, Optional, Sequence
import warnings

import numpy as np
from jaxtyping import Float
from scipy import sparse
from scipy.sparse.linalg import (
    LinearOperator,
    MatrixRankWarning,
    aslinearoperator,
    cg,
    splu,
    spsolve,
)

from .advection import Trajectory, advect_serialized_quadpoints
from .config import HeatFlowConfig, LinearSolver
from .errors import ConfigurationError, DimensionMismatch, NumericalFailure
from .grid import BoundaryData, GridContext, TensorFieldFn
from .parallel import ordered_map
from .tensors import _stiffness_task
from .utils import as_time_span, check_square, time_step

__all__ = [
    'ImplicitEulerStep',
    'implicit_euler_step',
    'implicit_euler_step_operator',
    'implicit_euler_step_family',
    'compose_operators',
    'fem_heatflow',
]


class ImplicitEulerStep(LinearOperator):
    """Linear map ``v -> A^{-1} M v`` for a symmetric positive definite ``A``.

    ``solve`` applies ``A^{-1}``. The adjoint is ``v -> M A^{-1} v`` since
    both ``M`` and ``A`` are symmetric.
    """

    def __init__(self, M: sparse.spmatrix, solve: Callable[[np.ndarray], np.ndarray]):
        super().__init__(dtype=np.float64, shape=M.shape)
        self.M = M
        self._solve = solve

    def _matvec(self, v):
        return self._solve(self.M @ v)

    def _rmatvec(self, v):
        return self.M @ self._solve(v)


def _factorize_spd(A: sparse.spmatrix) -> Callable[[np.ndarray], np.ndarray]:
    """Factor a symmetric positive definite matrix once and return its solver.

    SuperLU runs in symmetric mode without threshold pivoting, so its pivots
    are those of an ``L D L^T`` factorisation of the symmetrically permuted
    matrix; a non-positive pivot means ``A`` is not positive definite.
    """
    A = sparse.csc_matrix(A, dtype=np.float64)
    try:
        lu = splu(
            A,
            permc_spec='MMD_AT_PLUS_A',
            diag_pivot_thresh=0.0,
            options={'SymmetricMode': True},
        )
    except RuntimeError as exc:
        raise NumericalFailure('Step matrix is singular; factorisation failed.') from exc
    pivots = lu.U.diagonal()
    if not np.all(np.isfinite(pivots)) or np.any(pivots <= 0.0):
        raise NumericalFailure(
            'Step matrix is not positive definite; check the sign convention of '
            'the stiffness matrix and the diffusivity.'
        )
    return lu.solve


def _cg_solve(
    A: sparse.spmatrix,
    b: np.ndarray,
    *,
    rtol: float,
    maxiter: Optional[int],
) -> np.ndarray:
    shape = b.shape
    x, info = cg(A, np.ravel(b), rtol=rtol, atol=0.0, maxiter=maxiter)
    if info > 0:
        raise NumericalFailure(
            f'Conjugate gradients did not reach rtol={rtol} within {info} iterations.'
        )
    if info < 0:
        raise NumericalFailure('Conjugate gradients broke down (illegal input).')
    return x.reshape(shape)


def implicit_euler_step_operator(
    M: sparse.spmatrix,
    A: sparse.spmatrix,
    *,
    linear_solver: LinearSolver = 'cholesky',
    cg_rtol: float = 1e-10,
    cg_maxiter: Optional[int] = None,
) -> ImplicitEulerStep:
    """Return the step ``v -> A^{-1} M v``.

    Parameters
    ----------
    M : sparse matrix
        Mass matrix.
    A : sparse matrix
        Step matrix ``M - dt kappa K``, symmetric positive definite.
    linear_solver : {'cholesky', 'cg'}
        ``'cholesky'`` factors ``A`` once and reuses the factors on every
        application; ``'cg'`` runs conjugate gradients per application,
        which keeps memory low for very large systems.
    cg_rtol, cg_maxiter :
        Stopping rule of the conjugate-gradient path. Failing to converge
        raises :class:`NumericalFailure`.

    """
    n = check_square(A)
    if check_square(M) != n:
        raise DimensionMismatch(
            f'Mass matrix has shape {M.shape}, step matrix has shape {A.shape}.'
        )
    M = sparse.csr_matrix(M, dtype=np.float64)
    if linear_solver == 'cholesky':
        solve = _factorize_spd(A)
    elif linear_solver == 'cg':
        solve = partial(
            _cg_solve, sparse.csr_matrix(A, dtype=np.float64), rtol=cg_rtol, maxiter=cg_maxiter
        )
    else:
        raise ConfigurationError("linear_solver must be 'cholesky' or 'cg'.")
    return ImplicitEulerStep(M, solve)


def compose_operators(ops: Sequence[Any], *, lazy: bool = True) -> Any:
    """Compose per-interval operators ordered by time.

    ``ops[0]`` belongs to the earliest interval and ``ops[-1]`` to the
    latest. The result equals the product ``ops[0] @ ops[1] @ ... @
    ops[-1]``: acting on a vector, the latest interval's operator is
    applied first and the earliest interval's operator last.

    With ``lazy=True`` the result is a :class:`LinearOperator` chain.
    Otherwise the product is formed explicitly; linear operators are
    materialised as dense matrices first.
    """
    ops = list(ops)
    if not ops:
        raise ConfigurationError('Cannot compose an empty sequence of operators.')
    n = check_square(ops[0])
    for op in ops[1:]:
        if check_square(op) != n:
            raise DimensionMismatch('All composed operators must share one shape.')
    if lazy:
        return reduce(operator.matmul, [aslinearoperator(op) for op in ops])
    identity = np.eye(n)
    ops = [op.matmat(identity) if isinstance(op, LinearOperator) else op for op in ops]
    return reduce(operator.matmul, ops)


def implicit_euler_step(
    ctx: GridContext,
    u: Float[np.ndarray, 'n'],
    edt: float,
    *,
    tensor_field: Optional[TensorFieldFn] = None,
    params: Any = None,
    M: Optional[sparse.spmatrix] = None,
    K: Optional[sparse.spmatrix] = None,
) -> Float[np.ndarray, 'n']:
    """Single implicit-Euler step ``(M - edt K)^{-1} M u``.

    ``edt`` is the time step times the diffusivity. Matrices that are not
    passed are assembled from ``ctx``.
    """
    if M is None:
        M = ctx.assemble_mass()
    if K is None:
        K = ctx.assemble_stiffness(tensor_field=tensor_field, params=params)
    if M.shape != K.shape:
        raise DimensionMismatch(f'Mass {M.shape} and stiffness {K.shape} differ.')
    u = np.asarray(u, dtype=np.float64)
    if u.shape[0] != M.shape[0]:
        raise DimensionMismatch(f'Vector of length {u.shape[0]} for {M.shape[0]} dofs.')
    with warnings.catch_warnings():
        warnings.simplefilter('error', MatrixRankWarning)
        try:
            result = spsolve(sparse.csc_matrix(M - edt * K), M @ u)
        except MatrixRankWarning as exc:
            raise NumericalFailure('Implicit-Euler matrix is singular.') from exc
    return result


def implicit_euler_step_family(
    ctx: GridContext,
    sol: Optional[Trajectory],
    tspan: Sequence[float],
    kappa: float,
    delta: float,
    *,
    linear_solver: LinearSolver = 'cholesky',
    bdata: Optional[BoundaryData] = None,
    cg_rtol: float = 1e-10,
    cg_maxiter: Optional[int] = None,
    n_jobs: Optional[int] = 1,
    lazy: bool = True,
    progress: bool = False,
):
    """Compose implicit-Euler steps over ``tspan`` into one heat-flow operator.

    The mass matrix is assembled once. Stiffness matrices for
    ``tspan[1:]`` are assembled in a worker pool and collected in time
    order; each is scaled in place by ``-dt * kappa`` and ``M`` is added
    before its step operator is built. See :func:`compose_operators` for
    the order in which the steps act.

    Returns
    -------
    LinearOperator or matrix
        Square operator on the reduced degrees of freedom.

    """
    times = as_time_span(tspan, uniform=True)
    if kappa < 0:
        raise ConfigurationError('Diffusivity kappa must be non-negative.')
    bdata = BoundaryData() if bdata is None else bdata

    M = sparse.csc_matrix(ctx.assemble_mass(bdata=bdata), dtype=np.float64)
    n = check_square(M)
    expected = bdata.n_reduced(ctx.n_dofs)
    if n != expected:
        raise DimensionMismatch(
            f'Mass matrix has {n} rows but the boundary reduction leaves {expected} dofs.'
        )
    scale = -time_step(times) * kappa
    if sol is None and np.any(times[1:] >= 0):
        raise ConfigurationError('A trajectory is required for t >= 0.')

    # States are sampled here so that workers never need the interpolant.
    items = [(t, None if t < 0 else sol(t)) for t in times[1:]]
    stiffness = ordered_map(
        partial(_stiffness_task, ctx, delta, bdata),
        items,
        n_jobs=n_jobs,
        desc='Stiffness',
        progress=progress,
    )

    steps = []
    for K in stiffness:
        K = sparse.csc_matrix(K, dtype=np.float64, copy=True)
        if K.shape != M.shape:
            raise DimensionMismatch(
                f'Stiffness matrix has shape {K.shape}, mass matrix {M.shape}.'
            )
        K.data *= scale
        K = K + M
        steps.append(
            implicit_euler_step_operator(
                M, K, linear_solver=linear_solver, cg_rtol=cg_rtol, cg_maxiter=cg_maxiter
            )
        )
    return compose_operators(steps, lazy=lazy)


def fem_heatflow(
    velocity: Callable,
    ctx: GridContext,
    tspan: Sequence[float],
    kappa: float,
    p: Any = None,
    bdata: Optional[BoundaryData] = None,
    *,
    config: Optional[HeatFlowConfig] = None,
    inplace: bool = False,
    vectorized: bool = False,
):
    """Heat-flow operator of the advection-diffusion equation.

    Advects the quadrature-point stencils with ``velocity`` (see
    :func:`coherent.advection.large_rhs` for its signature) and composes
    the implicit-Euler steps over ``tspan`` with diffusivity ``kappa``.
    ``bdata`` defaults to homogeneous Neumann conditions.
    """
    cfg = HeatFlowConfig() if config is None else config
    sol = advect_serialized_quadpoints(
        ctx,
        tspan,
        velocity,
        p,
        cfg.delta,
        method=cfg.ode_method,
        tolerance=cfg.tolerance,
        inplace=inplace,
        vectorized=vectorized,
    )
    return implicit_euler_step_family(
        ctx,
        sol,
        tspan,
        kappa,
        cfg.delta,
        linear_solver=cfg.linear_solver,
        bdata=bdata,
        cg_rtol=cfg.cg_rtol,
        cg_maxiter=cfg.cg_maxiter,
        n_jobs=cfg.n_jobs,
        lazy=cfg.lazy,
        progress=cfg.progress,
    )
