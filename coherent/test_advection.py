from functools import partial

import numpy as np
import pytest

from coherent.advection import (
    advect_serialized_quadpoints,
    flow,
    large_rhs,
    parallel_flow,
    setup_fd_quadpoints_serialized,
)
from coherent.errors import ConfigurationError, DimensionMismatch, NumericalFailure
from coherent.grid import GridContext


def _still(x, p, t):
    return np.zeros(2)


def _rotation(x, p, t):
    return np.array([-x[1], x[0]])


def _rotation_vec(x, p, t):
    return np.stack([-x[1], x[0]])


def _rotation_inplace(dx, x, p, t):
    dx[0] = -x[1]
    dx[1] = x[0]


def _blow_up(x, p, t):
    return np.array([x[0] ** 2 + 10.0, 0.0])


def _duplicate_or_fail(x):
    if x[0] < 0:
        raise ValueError('negative start')
    return np.stack([x, x])


class _LineGrid:
    quadrature_points = np.zeros((3, 3))
    n_dofs = 3


def test_grid_double_satisfies_protocol(grid):
    assert isinstance(grid, GridContext)


def test_stencil_layout(grid):
    delta = 1e-3
    state = setup_fd_quadpoints_serialized(grid, delta)
    q = grid.quadrature_points[0]
    expected = np.concatenate(
        [q + [delta, 0.0], q + [0.0, delta], q - [delta, 0.0], q - [0.0, delta]]
    )
    assert state.shape == (8 * len(grid.quadrature_points),)
    assert np.allclose(state[:8], expected)


def test_stencil_rejects_bad_input(grid):
    with pytest.raises(ConfigurationError):
        setup_fd_quadpoints_serialized(grid, 0.0)
    with pytest.raises(DimensionMismatch):
        setup_fd_quadpoints_serialized(_LineGrid(), 1e-6)


def test_zero_velocity_keeps_initial_state(grid):
    delta = 1e-6
    sol = advect_serialized_quadpoints(grid, [0.0, 0.5, 1.0], _still, delta=delta)
    u0 = setup_fd_quadpoints_serialized(grid, delta)
    for t in (0.0, 0.3, 1.0):
        assert np.array_equal(sol(t), u0)


def test_trajectory_returns_copies(grid):
    sol = advect_serialized_quadpoints(grid, [0.0, 1.0], _still)
    first = sol(0.5)
    first[:] = 42.0
    assert not np.any(sol(0.5) == 42.0)


def test_trajectory_outside_span_raises(grid):
    sol = advect_serialized_quadpoints(grid, [0.0, 1.0], _still)
    with pytest.raises(ConfigurationError):
        sol(1.5)
    with pytest.raises(ConfigurationError):
        sol(-0.1)


def test_bad_time_span_raises(grid):
    with pytest.raises(ConfigurationError):
        advect_serialized_quadpoints(grid, [0.0], _still)
    with pytest.raises(ConfigurationError):
        advect_serialized_quadpoints(grid, [1.0, 0.0], _still)


def test_velocity_calling_conventions_agree(grid):
    tspan = [0.0, 1.0]
    kwargs = dict(delta=1e-4, tolerance=1e-10)
    plain = advect_serialized_quadpoints(grid, tspan, _rotation, **kwargs)
    vec = advect_serialized_quadpoints(grid, tspan, _rotation_vec, vectorized=True, **kwargs)
    inplace = advect_serialized_quadpoints(grid, tspan, _rotation_inplace, inplace=True, **kwargs)
    assert np.allclose(plain(1.0), vec(1.0), atol=1e-9)
    assert np.allclose(plain(1.0), inplace(1.0), atol=1e-9)


def test_large_rhs_vectorized_shape_check():
    u = np.arange(8.0)
    with pytest.raises(DimensionMismatch):
        large_rhs(lambda x, p, t: np.zeros(3), u, None, 0.0, vectorized=True)


def test_rotation_stencil_is_rigid(grid):
    # A rigid rotation keeps the stencil arms at length delta.
    delta = 1e-3
    sol = advect_serialized_quadpoints(
        grid, [0.0, np.pi / 3], _rotation, delta=delta, tolerance=1e-10
    )
    stencil = sol(np.pi / 3).reshape(-1, 4, 2)
    arms = stencil[:, :2] - stencil[:, 2:]
    assert np.allclose(np.linalg.norm(arms, axis=-1), 2 * delta, rtol=1e-6)


def test_flow_rotation_quarter_turn():
    traj = flow(_rotation, [1.0, 0.0], [0.0, np.pi / 4, np.pi / 2], tolerance=1e-10)
    assert traj.shape == (3, 2)
    assert np.allclose(traj[0], [1.0, 0.0])
    assert np.allclose(traj[1], [np.sqrt(0.5), np.sqrt(0.5)], atol=1e-7)
    assert np.allclose(traj[2], [0.0, 1.0], atol=1e-7)


def test_parallel_flow_layout():
    p0 = np.array([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]])
    data = parallel_flow(lambda x: np.stack([x, 2 * x]), p0)
    assert data.shape == (4, 3)
    assert np.allclose(data[:2], p0)
    assert np.allclose(data[2:], 2 * p0)


def test_parallel_flow_ragged_trajectories_raise():
    p0 = np.array([[1.0, 2.0], [0.0, 0.0]])
    with pytest.raises(DimensionMismatch):
        parallel_flow(lambda x: np.zeros(int(x[0]) * 2), p0)


def test_integration_failure_raises(grid):
    with np.errstate(over='ignore', invalid='ignore'):
        with pytest.raises(NumericalFailure):
            flow(_blow_up, [0.0, 0.0], [0.0, 10.0])
        with pytest.raises(NumericalFailure):
            advect_serialized_quadpoints(grid, [0.0, 10.0], _blow_up)


def test_parallel_flow_workers_match_serial():
    p0 = np.random.default_rng(0).random((2, 6))
    flow_fun = partial(flow, _rotation, tspan=[0.0, 0.5, 1.0], tolerance=1e-8)
    serial = parallel_flow(flow_fun, p0)
    pooled = parallel_flow(flow_fun, p0, n_jobs=2)
    assert pooled.shape == (6, 6)
    assert np.allclose(serial, pooled)


def test_parallel_flow_failing_task_aborts_batch():
    p0 = np.array([[1.0, -1.0, 2.0], [0.0, 0.0, 0.0]])
    with pytest.raises(ValueError):
        parallel_flow(_duplicate_or_fail, p0)
    with pytest.raises(ValueError):
        parallel_flow(_duplicate_or_fail, p0, n_jobs=2)
