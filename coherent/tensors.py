"""Diffusion tensors from advected finite-difference stencils."""

from typing import Any, Optional

import numpy as np
from jaxtyping import Float
from scipy import sparse

from .advection import SPATIAL_DIM, STENCIL_SIZE, Trajectory
from .config import DEFAULT_DELTA_ADVECTION
from .errors import ConfigurationError, DimensionMismatch, NumericalFailure
from .grid import BoundaryData, GridContext

__all__ = [
    'dott',
    'deformation_gradients',
    'diffusion_tensors',
    'precomputed_tensor',
    'stiffness_matrix_at_time',
]

_MAX_CONDITION: float = 1.0 / np.finfo(np.float64).eps  # Beyond this J is numerically singular.


def dott(A: Float[np.ndarray, '... d d']) -> Float[np.ndarray, '... d d']:
    """Return ``A @ A.T`` for a matrix or a stack of matrices."""
    A = np.asarray(A)
    return A @ np.swapaxes(A, -1, -2)


def deformation_gradients(
    state: Float[np.ndarray, 'n'], delta: float
) -> Float[np.ndarray, 'N 2 2']:
    """Centred-difference Jacobians of the flow map at every quadrature point.

    Column ``j`` of ``J[i]`` is the derivative of the flow map along the
    ``j``-th reference axis, ``(Phi(q + delta e_j) - Phi(q - delta e_j)) /
    (2 delta)``.
    """
    if not delta > 0:
        raise ConfigurationError('delta must be positive.')
    state = np.asarray(state, dtype=np.float64)
    block = STENCIL_SIZE * SPATIAL_DIM
    if state.ndim != 1 or state.size % block != 0:
        raise DimensionMismatch(
            f'Stencil state of length {state.size} is not a multiple of {block}.'
        )
    stencil = state.reshape(-1, STENCIL_SIZE, SPATIAL_DIM)
    columns = (stencil[:, :2, :] - stencil[:, 2:, :]) / (2.0 * delta)  # (N, axis, comp)
    return np.swapaxes(columns, 1, 2)


def diffusion_tensors(
    state: Float[np.ndarray, 'n'], delta: float
) -> Float[np.ndarray, 'N 2 2']:
    """Return ``dott(inv(J))`` for the Jacobian ``J`` at every quadrature point."""
    J = deformation_gradients(state, delta)
    if not np.all(np.isfinite(J)):
        raise NumericalFailure('Deformation gradient contains non-finite entries.')
    cond = np.linalg.cond(J)
    singular = ~(cond <= _MAX_CONDITION)
    if np.any(singular):
        idx = int(np.flatnonzero(singular)[0])
        raise NumericalFailure(
            f'Deformation gradient at quadrature point {idx} is singular '
            f'(cond={cond[idx]:.3e}).'
        )
    try:
        J_inv = np.linalg.inv(J)
    except np.linalg.LinAlgError as exc:
        raise NumericalFailure('Deformation gradient inversion failed.') from exc
    if not np.all(np.isfinite(J_inv)):
        raise NumericalFailure('Inverse deformation gradient contains non-finite entries.')
    return dott(J_inv)


def precomputed_tensor(x: np.ndarray, index: int, tensors: np.ndarray) -> np.ndarray:
    """Coefficient field returning the precomputed tensor of a quadrature point."""
    return tensors[index]


def stiffness_matrix_at_time(
    ctx: GridContext,
    sol: Optional[Trajectory],
    t: float,
    delta: float = DEFAULT_DELTA_ADVECTION,
    *,
    bdata: Optional[BoundaryData] = None,
) -> sparse.spmatrix:
    """Assemble the stiffness matrix with the diffusion tensors at time ``t``.

    A negative ``t`` is a sentinel for the static configuration: the tensor
    step is skipped and the isotropic stiffness matrix is assembled, so
    ``sol`` may be ``None`` in that case.
    """
    if t < 0:
        return ctx.assemble_stiffness(bdata=bdata)
    if sol is None:
        raise ConfigurationError('A trajectory is required for t >= 0.')
    return _stiffness_from_state(ctx, sol(t), delta, bdata)


def _stiffness_from_state(
    ctx: GridContext,
    state: np.ndarray,
    delta: float,
    bdata: Optional[BoundaryData],
) -> sparse.spmatrix:
    tensors = diffusion_tensors(state, delta)
    n_qp = len(ctx.quadrature_points)
    if tensors.shape[0] != n_qp:
        raise DimensionMismatch(
            f'State describes {tensors.shape[0]} quadrature points, grid has {n_qp}.'
        )
    return ctx.assemble_stiffness(
        tensor_field=precomputed_tensor, params=tensors, bdata=bdata
    )


def _stiffness_task(
    ctx: GridContext,
    delta: float,
    bdata: Optional[BoundaryData],
    item: tuple[float, Any],
) -> sparse.spmatrix:
    """Worker task for one time of a step family; ``item`` is ``(t, state)``."""
    t, state = item
    if t < 0:
        return ctx.assemble_stiffness(bdata=bdata)
    return _stiffness_from_state(ctx, state, delta, bdata)
