"""Advection of quadrature points and their finite-difference stencils.

Every quadrature point ``q`` of a 2D grid is replaced by the four stencil
points ``q + delta e1``, ``q + delta e2``, ``q - delta e1`` and
``q - delta e2``. All ``4 N`` points are integrated as one ODE system, so a
single adaptive step sequence is shared by the whole stencil and the
centred differences taken later see correlated integration errors.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Optional, Sequence

import numpy as np
from jaxtyping import Float
from scipy.integrate import OdeSolution, solve_ivp

from .config import DEFAULT_DELTA_ADVECTION, DEFAULT_ODE_METHOD, DEFAULT_TOLERANCE
from .errors import ConfigurationError, DimensionMismatch, NumericalFailure
from .grid import GridContext
from .parallel import ordered_map
from .utils import as_time_span

__all__ = [
    'Trajectory',
    'setup_fd_quadpoints_serialized',
    'large_rhs',
    'advect_serialized_quadpoints',
    'flow',
    'parallel_flow',
]

STENCIL_SIZE: int = 4  # Stencil points per quadrature point.
SPATIAL_DIM: int = 2


@dataclass(frozen=True)
class Trajectory:
    """Continuous-time interpolant of the advected stencil state.

    Calling the trajectory at a time inside ``[t0, t1]`` returns a fresh
    copy of the flat state vector (length ``8 * n_quadpoints``).
    """

    t0: float
    t1: float
    solution: OdeSolution
    n_quadpoints: int

    def __call__(self, t: float) -> Float[np.ndarray, 'n']:
        t = float(t)
        slack = 1e-12 * max(1.0, abs(self.t0), abs(self.t1))
        if t < self.t0 - slack or t > self.t1 + slack:
            raise ConfigurationError(
                f'Time {t} lies outside the solved range [{self.t0}, {self.t1}].'
            )
        return np.array(self.solution(t), dtype=np.float64, copy=True)


def setup_fd_quadpoints_serialized(
    ctx: GridContext, delta: float = DEFAULT_DELTA_ADVECTION
) -> Float[np.ndarray, 'n']:
    """Set up the flat initial state of all finite-difference stencils.

    Only 2D grids are supported. Point ``i`` occupies entries
    ``[8 i, 8 i + 8)`` as ``(q + delta e1, q + delta e2, q - delta e1,
    q - delta e2)``.
    """
    if not delta > 0:
        raise ConfigurationError('delta must be positive.')
    points = np.asarray(ctx.quadrature_points, dtype=np.float64)
    if points.ndim != 2 or points.shape[1] != SPATIAL_DIM:
        raise DimensionMismatch(
            f'Stencil advection is only implemented in 2D; got quadrature points '
            f'of shape {points.shape}.'
        )
    stencil = np.repeat(points[:, None, :], STENCIL_SIZE, axis=1)
    stencil[:, 0, 0] += delta
    stencil[:, 1, 1] += delta
    stencil[:, 2, 0] -= delta
    stencil[:, 3, 1] -= delta
    return stencil.reshape(-1)


def large_rhs(
    velocity: Callable,
    u: np.ndarray,
    p: Any,
    t: float,
    *,
    inplace: bool = False,
    vectorized: bool = False,
) -> np.ndarray:
    """Apply a 2D velocity field independently to every point of ``u``.

    ``u`` is a flat array of consecutive 2D points. The velocity field is
    ``velocity(x, p, t) -> dx`` or, with ``inplace=True``,
    ``velocity(dx, x, p, t)``. With ``vectorized=True`` it receives all
    points at once as a ``(2, m)`` array instead of one point at a time.
    """
    points = u.reshape(-1, SPATIAL_DIM)
    if vectorized:
        if inplace:
            du = np.empty_like(points.T)
            velocity(du, points.T, p, t)
        else:
            du = np.asarray(velocity(points.T, p, t), dtype=np.float64)
        if du.shape != points.T.shape:
            raise DimensionMismatch(
                f'Vectorized velocity returned shape {du.shape}, expected {points.T.shape}.'
            )
        return np.ascontiguousarray(du.T).reshape(-1)

    du = np.empty_like(points)
    for i, x in enumerate(points):
        if inplace:
            velocity(du[i], x, p, t)
        else:
            du[i] = velocity(x, p, t)
    return du.reshape(-1)


def advect_serialized_quadpoints(
    ctx: GridContext,
    tspan: Sequence[float],
    velocity: Callable,
    p: Any = None,
    delta: float = DEFAULT_DELTA_ADVECTION,
    *,
    method: str = DEFAULT_ODE_METHOD,
    tolerance: float = DEFAULT_TOLERANCE,
    inplace: bool = False,
    vectorized: bool = False,
) -> Trajectory:
    """Advect all quadrature points and their stencils.

    Parameters
    ----------
    ctx : GridContext
        Grid providing the quadrature points.
    tspan : sequence of float
        Increasing times; the system is integrated from ``tspan[0]`` to
        ``tspan[-1]``.
    velocity : callable
        Velocity field of a single 2D point, see :func:`large_rhs`.
    p : object, optional
        Parameters forwarded to ``velocity``.
    delta : float
        Stencil half-width.
    method : str
        Integrator passed to :func:`scipy.integrate.solve_ivp`.
    tolerance : float
        Absolute and relative integration tolerance.

    Returns
    -------
    Trajectory
        Dense-output interpolant of the flat stencil state.

    """
    times = as_time_span(tspan)
    u0 = setup_fd_quadpoints_serialized(ctx, delta)
    rhs = partial(large_rhs, velocity, inplace=inplace, vectorized=vectorized)

    result = solve_ivp(
        lambda t, u: rhs(u, p, t),
        (times[0], times[-1]),
        u0,
        method=method,
        dense_output=True,
        atol=tolerance,
        rtol=tolerance,
    )
    if not result.success:
        raise NumericalFailure(f'Stencil advection failed: {result.message}')
    return Trajectory(
        t0=float(times[0]),
        t1=float(times[-1]),
        solution=result.sol,
        n_quadpoints=u0.size // (STENCIL_SIZE * SPATIAL_DIM),
    )


def flow(
    velocity: Callable,
    x0: Sequence[float],
    tspan: Sequence[float],
    p: Any = None,
    *,
    method: str = DEFAULT_ODE_METHOD,
    tolerance: float = DEFAULT_TOLERANCE,
) -> Float[np.ndarray, 'q d']:
    """Positions of a single trajectory at every time in ``tspan``.

    ``velocity`` has the pure signature ``velocity(x, p, t) -> dx``.
    """
    times = as_time_span(tspan)
    x0 = np.asarray(x0, dtype=np.float64)
    result = solve_ivp(
        lambda t, x: np.asarray(velocity(x, p, t), dtype=np.float64),
        (times[0], times[-1]),
        x0,
        method=method,
        t_eval=times,
        atol=tolerance,
        rtol=tolerance,
    )
    if not result.success:
        raise NumericalFailure(f'Trajectory integration failed: {result.message}')
    return result.y.T


def parallel_flow(
    flow_fun: Callable[[np.ndarray], np.ndarray],
    p0: Float[np.ndarray, 'd N'],
    *,
    n_jobs: Optional[int] = 1,
    progress: bool = False,
) -> Float[np.ndarray, 'qd N']:
    """Evaluate ``flow_fun`` on every initial point (column of ``p0``).

    ``flow_fun(x)`` returns the trajectory of ``x`` as a ``(q, dim)`` array
    (or its row-major flattening). The trajectories are stacked as columns,
    giving the ``(dim * q, N)`` layout expected by
    :func:`coherent.diffusion_maps.sparse_diff_op_family`.
    """
    p0 = np.asarray(p0, dtype=np.float64)
    if p0.ndim != 2:
        raise DimensionMismatch('p0 must be a 2D array with points as columns.')
    trajectories = ordered_map(
        lambda x: np.asarray(flow_fun(x), dtype=np.float64).reshape(-1),
        list(p0.T),
        n_jobs=n_jobs,
        desc='Trajectories',
        progress=progress,
    )
    lengths = {traj.size for traj in trajectories}
    if len(lengths) != 1:
        raise DimensionMismatch(f'Trajectories have differing lengths {sorted(lengths)}.')
    return np.column_stack(trajectories)
