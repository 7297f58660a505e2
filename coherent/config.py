from dataclasses import dataclass, field
from typing import Callable, Literal, Optional

import numpy as np

from .distance import Euclidean, Metric
from .errors import ConfigurationError
from .kernels import gaussian_kernel

DEFAULT_DELTA_ADVECTION: float = 1e-9  # Stencil half-width for advection.
DEFAULT_DELTA_HEATFLOW: float = 1e-6  # Stencil half-width used by fem_heatflow.
DEFAULT_TOLERANCE: float = 1e-3  # Absolute and relative ODE tolerance.
DEFAULT_ODE_METHOD: str = 'RK45'
DEFAULT_ALPHA: float = 0.5  # Diffusion-map renormalization exponent.

LinearSolver = Literal['cholesky', 'cg']

_ODE_METHODS = ('RK23', 'RK45', 'DOP853', 'Radau', 'BDF', 'LSODA')


@dataclass
class HeatFlowConfig:
    delta: float = DEFAULT_DELTA_HEATFLOW
    linear_solver: LinearSolver = 'cholesky'
    ode_method: str = DEFAULT_ODE_METHOD
    tolerance: float = DEFAULT_TOLERANCE
    cg_rtol: float = 1e-10
    cg_maxiter: Optional[int] = None
    n_jobs: Optional[int] = 1
    lazy: bool = True  # Keep the composed operator as a LinearOperator chain.
    progress: bool = False

    def __post_init__(self) -> None:
        if self.delta <= 0:
            raise ConfigurationError('delta must be positive.')
        if self.linear_solver not in ('cholesky', 'cg'):
            raise ConfigurationError("linear_solver must be 'cholesky' or 'cg'.")
        if self.ode_method not in _ODE_METHODS:
            raise ConfigurationError(
                f'ode_method must be one of {_ODE_METHODS}, got {self.ode_method!r}.'
            )
        if self.tolerance <= 0 or self.cg_rtol <= 0:
            raise ConfigurationError('Tolerances must be positive.')


@dataclass
class DiffusionMapConfig:
    kernel: Callable[[np.ndarray], np.ndarray] = gaussian_kernel
    alpha: float = DEFAULT_ALPHA
    metric: Metric = field(default_factory=Euclidean)
    op_reduce: Optional[Callable] = None  # Defaults to compose_operators.
    n_jobs: Optional[int] = 1
    progress: bool = False

    def __post_init__(self) -> None:
        if self.alpha < 0:
            raise ConfigurationError('alpha must be non-negative.')
