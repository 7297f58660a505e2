"""Exceptions raised by the coherent-structure pipelines."""

__all__ = [
    'CoherentError',
    'ConfigurationError',
    'NumericalFailure',
    'DimensionMismatch',
]


class CoherentError(Exception):
    """Base class for all errors raised by :mod:`coherent`."""


class ConfigurationError(CoherentError, ValueError):
    """Invalid parameter or parameter combination.

    Examples are a metric with exponent ``p < 1`` used for tree-based
    sparsification, a non-uniform time span for the heat-flow composer, or
    asking for as many diffusion coordinates as there are points.
    """


class NumericalFailure(CoherentError, ArithmeticError):
    """A numerical step could not produce a valid result.

    Raised for singular deformation gradients, indefinite or singular
    step matrices, non-converged iterative or eigen solvers, failed ODE
    integration and sign-inconsistent stationary distributions.
    """


class DimensionMismatch(CoherentError, ValueError):
    """Array sizes disagree with the declared layout or boundary reduction."""
