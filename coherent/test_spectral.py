import numpy as np
import pytest
from scipy import sparse

from coherent.diffusion_maps import sparse_diff_op
from coherent.errors import ConfigurationError, DimensionMismatch, NumericalFailure
from coherent.heatflow import compose_operators
from coherent.spectral import (
    DiffusionEmbedding,
    diffusion_coordinates,
    diffusion_distance,
    l_mul_lt,
    stationary_distribution,
)

BIRTH_DEATH = np.array(
    [
        [0.5, 0.5, 0.0, 0.0],
        [0.25, 0.5, 0.25, 0.0],
        [0.0, 0.25, 0.5, 0.25],
        [0.0, 0.0, 0.5, 0.5],
    ]
)


def _lattice_operator(shear=0.0):
    xs = np.arange(6) * 0.2
    X, Y = np.meshgrid(xs, xs, indexing='ij')
    data = np.vstack([X.ravel() + shear * Y.ravel(), Y.ravel()])
    return sparse_diff_op(data, 0.45)


def test_stationary_distribution_of_chain():
    pi = stationary_distribution(BIRTH_DEATH.T, normalize=True)
    assert np.all(pi >= 0)
    assert np.isclose(pi.sum(), 1.0)
    assert np.allclose(pi, [1 / 6, 1 / 3, 1 / 3, 1 / 6])
    assert np.allclose(pi @ BIRTH_DEATH, pi)


def test_stationary_distribution_unit_norm_by_default():
    pi = stationary_distribution(sparse.csr_matrix(BIRTH_DEATH.T))
    assert np.isclose(np.linalg.norm(pi), 1.0)
    assert np.all(pi > 0)


def test_stationary_distribution_small_operator():
    P = np.array([[0.9, 0.1], [0.3, 0.7]])
    pi = stationary_distribution(P.T, normalize=True)
    assert np.allclose(pi, [0.75, 0.25])


@pytest.mark.parametrize(
    'A',
    [
        np.array([[1.0, -2.0], [-2.0, 1.0]]),
        np.array([[1.0, -2.0, 0.0], [-2.0, 1.0, 0.0], [0.0, 0.0, 0.5]]),
    ],
)
def test_mixed_sign_leading_vector_raises(A):
    with pytest.raises(NumericalFailure):
        stationary_distribution(A)


def test_non_square_operator_raises():
    with pytest.raises(DimensionMismatch):
        stationary_distribution(np.ones((2, 3)))


def test_coordinate_count_bounds():
    P = _lattice_operator()
    with pytest.raises(ConfigurationError):
        diffusion_coordinates(P, 36)
    with pytest.raises(ConfigurationError):
        diffusion_coordinates(P, 0)


def test_diffusion_coordinates_of_markov_matrix():
    P = _lattice_operator()
    embedding = diffusion_coordinates(P, 3)
    assert isinstance(embedding, DiffusionEmbedding)
    sigma, psi = embedding
    assert sigma.shape == (3,)
    assert psi.shape == (36, 3)
    assert np.all(np.diff(sigma) <= 1e-12)
    assert np.isclose(sigma[0], 1.0, atol=1e-8)
    # The leading coordinate is constant for a connected graph.
    assert np.allclose(psi[:, 0], psi[0, 0], rtol=1e-6)


def test_diffusion_coordinates_of_composed_operator():
    P = compose_operators([_lattice_operator(), _lattice_operator(shear=0.5)])
    sigma, psi = diffusion_coordinates(P, 2)
    assert np.isclose(sigma[0], 1.0, atol=1e-8)
    assert sigma[1] < sigma[0]
    assert psi.shape == (36, 2)


def test_l_mul_lt_lazy_and_explicit_agree():
    P = _lattice_operator()
    pi = stationary_distribution(P.T)
    explicit = l_mul_lt(P, pi)
    lazy = l_mul_lt(compose_operators([P]), pi)
    v = np.random.default_rng(0).random(36)
    assert np.allclose(explicit @ v, lazy @ v)
    assert np.allclose(explicit @ np.sqrt(pi), np.sqrt(pi))


def test_l_mul_lt_rejects_bad_weights():
    P = _lattice_operator()
    with pytest.raises(DimensionMismatch):
        l_mul_lt(P, np.ones(5))
    with pytest.raises(NumericalFailure):
        l_mul_lt(P, np.zeros(36))


def test_diffusion_distance():
    psi = np.array([[0.0, 0.0], [3.0, 4.0], [1.0, 0.0]])
    D = diffusion_distance(psi)
    assert D.shape == (3, 3)
    assert np.allclose(D, D.T)
    assert np.allclose(np.diag(D), 0.0)
    assert np.isclose(D[0, 1], 5.0)
    assert np.isclose(D[1, 2], np.sqrt(20.0))


def test_coordinates_iteration_cap_raises():
    data = np.random.default_rng(0).random((2, 200))
    P = sparse_diff_op(data, 0.2)
    with pytest.raises(NumericalFailure):
        diffusion_coordinates(P, 5, maxiter=1)
