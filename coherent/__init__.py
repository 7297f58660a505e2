__version__ = '0.1.0'

from .advection import (
    Trajectory,
    advect_serialized_quadpoints,
    flow,
    parallel_flow,
    setup_fd_quadpoints_serialized,
)
from .config import DiffusionMapConfig, HeatFlowConfig
from .diffusion_maps import (
    alpha_normalize,
    average_operators,
    diff_op,
    dm_heatflow,
    markov_normalize,
    sparse_adjacency,
    sparse_affinity_kernel,
    sparse_diff_op,
    sparse_diff_op_family,
)
from .distance import Euclidean, Minkowski, STMetric
from .errors import (
    CoherentError,
    ConfigurationError,
    DimensionMismatch,
    NumericalFailure,
)
from .grid import BoundaryData, GridContext
from .heatflow import (
    compose_operators,
    fem_heatflow,
    implicit_euler_step,
    implicit_euler_step_family,
)
from .kernels import gaussian_kernel
from .spectral import (
    DiffusionEmbedding,
    diffusion_coordinates,
    diffusion_distance,
    stationary_distribution,
)
from .tensors import diffusion_tensors, dott, stiffness_matrix_at_time

__all__ = [
    '__version__',
    'Trajectory',
    'advect_serialized_quadpoints',
    'flow',
    'parallel_flow',
    'setup_fd_quadpoints_serialized',
    'DiffusionMapConfig',
    'HeatFlowConfig',
    'alpha_normalize',
    'average_operators',
    'diff_op',
    'dm_heatflow',
    'markov_normalize',
    'sparse_adjacency',
    'sparse_affinity_kernel',
    'sparse_diff_op',
    'sparse_diff_op_family',
    'Euclidean',
    'Minkowski',
    'STMetric',
    'CoherentError',
    'ConfigurationError',
    'DimensionMismatch',
    'NumericalFailure',
    'BoundaryData',
    'GridContext',
    'compose_operators',
    'fem_heatflow',
    'implicit_euler_step',
    'implicit_euler_step_family',
    'gaussian_kernel',
    'DiffusionEmbedding',
    'diffusion_coordinates',
    'diffusion_distance',
    'stationary_distribution',
    'diffusion_tensors',
    'dott',
    'stiffness_matrix_at_time',
]
