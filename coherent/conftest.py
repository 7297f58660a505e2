"""Shared fixtures: a small P1 finite-element grid standing in for the grid collaborator."""

from typing import Optional

import numpy as np
import pytest
from scipy import sparse

from coherent.grid import BoundaryData

_REF_GRADIENTS = np.array([[-1.0, -1.0], [1.0, 0.0], [0.0, 1.0]])
_REF_MASS = (np.ones((3, 3)) + np.eye(3)) / 12.0


class P1Grid:
    """Linear triangles on a regular grid of a rectangle.

    One quadrature point (the centroid) per triangle, so quadrature point
    ``index`` is triangle ``index``. Stiffness is the weak form of
    ``div(A grad u)``, i.e. negative semidefinite.
    """

    def __init__(self, nx=5, ny=5, lower=(0.0, 0.0), upper=(1.0, 1.0)):
        xs = np.linspace(lower[0], upper[0], nx)
        ys = np.linspace(lower[1], upper[1], ny)
        X, Y = np.meshgrid(xs, ys, indexing='ij')
        self.nodes = np.column_stack([X.ravel(), Y.ravel()])
        cells = []
        for i in range(nx - 1):
            for j in range(ny - 1):
                a, b = i * ny + j, (i + 1) * ny + j
                c, d = (i + 1) * ny + j + 1, i * ny + j + 1
                cells.extend([(a, b, c), (a, c, d)])
        self.cells = np.array(cells)
        corners = self.nodes[self.cells]
        B = np.stack([corners[:, 1] - corners[:, 0], corners[:, 2] - corners[:, 0]], axis=2)
        self.areas = np.abs(np.linalg.det(B)) / 2.0
        self.gradients = _REF_GRADIENTS @ np.linalg.inv(B)
        self._quadrature_points = corners.mean(axis=1)

    @property
    def quadrature_points(self):
        return self._quadrature_points

    @property
    def n_dofs(self):
        return self.nodes.shape[0]

    def _assemble(self, local):
        rows = np.broadcast_to(self.cells[:, :, None], local.shape)
        cols = np.broadcast_to(self.cells[:, None, :], local.shape)
        return sparse.csr_matrix(
            (local.ravel(), (rows.ravel(), cols.ravel())), shape=(self.n_dofs, self.n_dofs)
        )

    def _reduce(self, A, bdata: Optional[BoundaryData]):
        if bdata is None:
            return A
        removed = set(bdata.dirichlet_dofs) | {dst for _, dst in bdata.periodic_dofs}
        kept = [i for i in range(self.n_dofs) if i not in removed]
        index = {dof: k for k, dof in enumerate(kept)}
        rows, cols = list(range(len(kept))), list(kept)
        for src, dst in bdata.periodic_dofs:
            rows.append(index[src])
            cols.append(dst)
        R = sparse.csr_matrix(
            (np.ones(len(rows)), (rows, cols)), shape=(len(kept), self.n_dofs)
        )
        return (R @ A @ R.T).tocsr()

    def assemble_mass(self, bdata=None):
        local = self.areas[:, None, None] * _REF_MASS[None, :, :]
        return self._reduce(self._assemble(local), bdata)

    def assemble_stiffness(self, tensor_field=None, params=None, bdata=None):
        if tensor_field is None:
            tensors = np.broadcast_to(np.eye(2), (len(self.cells), 2, 2))
        else:
            tensors = np.array(
                [
                    tensor_field(x, index, params)
                    for index, x in enumerate(self.quadrature_points)
                ]
            )
        local = -self.areas[:, None, None] * np.einsum(
            'cak,ckl,cbl->cab', self.gradients, tensors, self.gradients
        )
        return self._reduce(self._assemble(local), bdata)


@pytest.fixture
def grid():
    return P1Grid(5, 5)


@pytest.fixture
def unit_square_points():
    return np.array([[0.0, 1.0, 0.0, 1.0], [0.0, 0.0, 1.0, 1.0]])
