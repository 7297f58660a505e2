"""Interface of the finite-element grid collaborator.

Grid construction and basis-function assembly live outside this package.
The heat-flow pipeline only needs the small surface described by
:class:`GridContext`; any object providing it can be passed in.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Tuple, runtime_checkable

import numpy as np
from scipy import sparse

__all__ = [
    'BoundaryData',
    'GridContext',
    'TensorFieldFn',
]


# tensor_field(x, index, params) -> (2, 2) coefficient at quadrature point ``index``.
TensorFieldFn = Callable[[np.ndarray, int, Any], np.ndarray]


@dataclass(frozen=True)
class BoundaryData:
    """Boundary conditions applied while assembling.

    The default instance carries no constraints, i.e. homogeneous Neumann
    conditions. ``dirichlet_dofs`` are removed from the system;
    each pair in ``periodic_dofs`` identifies its second dof with its first.
    """

    dirichlet_dofs: Tuple[int, ...] = ()
    periodic_dofs: Tuple[Tuple[int, int], ...] = ()

    def n_reduced(self, n_dofs: int) -> int:
        """Number of dofs left after applying the boundary conditions."""
        removed = set(self.dirichlet_dofs)
        removed.update(dst for _, dst in self.periodic_dofs)
        return n_dofs - len(removed)


@runtime_checkable
class GridContext(Protocol):
    """Grid collaborator consumed by :mod:`coherent.heatflow`.

    ``assemble_stiffness`` returns the weak form of ``div(A grad u)``, which
    is negative semidefinite; ``M - dt * K`` is then symmetric positive
    definite for every ``dt >= 0``. Without ``tensor_field`` the isotropic
    coefficient ``A = I`` is used.
    """

    @property
    def quadrature_points(self) -> np.ndarray:
        """Quadrature points as an ``(n_qp, dim)`` array."""

    @property
    def n_dofs(self) -> int:
        """Number of degrees of freedom before boundary reduction."""

    def assemble_mass(self, bdata: Optional[BoundaryData] = None) -> sparse.spmatrix:
        ...

    def assemble_stiffness(
        self,
        tensor_field: Optional[TensorFieldFn] = None,
        params: Any = None,
        bdata: Optional[BoundaryData] = None,
    ) -> sparse.spmatrix:
        ...
