"""
Matrix-Free Differential Operators

Applies the discretized gradient / strain operator B and its adjoint B^T
as direct stencil operations:
- ElasticOperator: linear elasticity on a staggered grid
- FEMGradient: cell-wise gradient of nodal fields on simplex meshes
- ElasticHessian: x -> M x + scale * B^T B x built on an ElasticOperator

None of these objects own an assembled B; memory stays O(n).
"""

from typing import List, Optional, Tuple
import numpy as np
from scipy import sparse
from scipy.sparse.linalg import LinearOperator

from .base import DimensionError, ConfigurationError, split_components
from .geometry import StaggeredGrid, SimplexMesh


def _short(v: np.ndarray, axis: int, h: float) -> np.ndarray:
    """Nodes -> cell centers."""
    return np.diff(v, axis=axis) / h


def _short_adjoint(w: np.ndarray, axis: int, h: float) -> np.ndarray:
    pad = [(0, 0)] * w.ndim
    pad[axis] = (1, 1)
    return -np.diff(np.pad(w, pad), axis=axis) / h


def _long(v: np.ndarray, axis: int, h: float) -> np.ndarray:
    """Cell centers -> nodes, zero outside the domain."""
    return -_short_adjoint(v, axis, h)


def _long_adjoint(w: np.ndarray, axis: int, h: float) -> np.ndarray:
    return -_short(w, axis, h)


def _along_axis(profile: np.ndarray, shape: Tuple[int, ...], axis: int) -> np.ndarray:
    """Broadcast a 1-D profile along one axis of shape."""
    view = [1] * len(shape)
    view[axis] = shape[axis]
    return np.broadcast_to(profile.reshape(view), shape)


class ElasticOperator:
    """
    Matrix-free elasticity operator on a staggered grid.

    B y = [ sqrt(mu) * (d_j y_i for each component i and axis j) ;
            sqrt(lam + mu) * sum_i d_i y_i ]

    d_i y_i uses the short difference (nodes -> cell centers), the mixed
    derivatives d_j y_i (j != i) the long difference (cell centers -> nodes).
    The row ordering matches geometry.elastic_matrix.
    """

    def __init__(self, grid: StaggeredGrid, mu: float = 1.0, lam: float = 0.0):
        if mu < 0 or lam + mu < 0:
            raise ConfigurationError(f"Need mu >= 0 and lam + mu >= 0, got mu={mu}, lam={lam}")
        self.grid = grid
        self.mu = float(mu)
        self.lam = float(lam)
        self._grad_scale = np.sqrt(self.mu)
        self._div_scale = np.sqrt(self.lam + self.mu)

    def __repr__(self) -> str:
        return f"ElasticOperator({self.grid!r}, mu={self.mu}, lam={self.lam})"

    def _block_shapes(self) -> List[Tuple[int, ...]]:
        """Shapes of the row blocks of B, in row order."""
        grid = self.grid
        m = tuple(int(s) for s in grid.m)
        shapes = []
        for i, shape in enumerate(grid.component_shapes):
            for j in range(grid.dim):
                if j == i:
                    shapes.append(m)
                else:
                    out = list(shape)
                    out[j] += 1
                    shapes.append(tuple(out))
        shapes.append(m)
        return shapes

    @property
    def input_size(self) -> int:
        return self.grid.vector_size

    @property
    def output_size(self) -> int:
        return int(sum(np.prod(s) for s in self._block_shapes()))

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.output_size, self.input_size)

    def _components(self, v: np.ndarray) -> List[np.ndarray]:
        grid = self.grid
        parts = split_components(v, grid.component_sizes)
        return [p.reshape(s, order='F') for p, s in zip(parts, grid.component_shapes)]

    def apply(self, v: np.ndarray) -> np.ndarray:
        """Compute B v."""
        v = self.grid.check_vector(v, "B input")
        grid = self.grid
        h = grid.h
        comps = self._components(v)

        blocks = []
        div = np.zeros(tuple(grid.m))
        for i, yi in enumerate(comps):
            for j in range(grid.dim):
                if j == i:
                    dij = _short(yi, j, h[j])
                    div += dij
                else:
                    dij = _long(yi, j, h[j])
                blocks.append(self._grad_scale * dij.ravel(order='F'))
        blocks.append(self._div_scale * div.ravel(order='F'))
        return np.concatenate(blocks)

    def apply_adjoint(self, z: np.ndarray) -> np.ndarray:
        """Compute B^T z."""
        z = np.asarray(z, dtype=float).ravel()
        if z.size != self.output_size:
            raise DimensionError(f"B^T input has length {z.size}, expected {self.output_size}")
        grid = self.grid
        h = grid.h
        shapes = self._block_shapes()
        parts = split_components(z, [int(np.prod(s)) for s in shapes])
        blocks = [p.reshape(s, order='F') for p, s in zip(parts, shapes)]
        div = blocks[-1]

        out = []
        for i, shape in enumerate(grid.component_shapes):
            yi = np.zeros(shape)
            for j in range(grid.dim):
                block = blocks[i * grid.dim + j]
                if j == i:
                    yi += self._grad_scale * _short_adjoint(block, j, h[j])
                else:
                    yi += self._grad_scale * _long_adjoint(block, j, h[j])
            yi += self._div_scale * _short_adjoint(div, i, h[i])
            out.append(yi.ravel(order='F'))
        return np.concatenate(out)

    def diagonal(self) -> np.ndarray:
        """Diagonal of B^T B, from the squared column norms of the stencils."""
        grid = self.grid
        out = []
        for i, shape in enumerate(grid.component_shapes):
            n = int(grid.m[i])
            # columns of the short difference hit one row at the ends, two inside
            hits = np.full(n + 1, 2.0)
            hits[0] = hits[-1] = 1.0
            weight = (self.mu + self.lam + self.mu) / grid.h[i] ** 2
            di = weight * _along_axis(hits, shape, i)
            for j in range(grid.dim):
                if j != i:
                    di = di + 2.0 * self.mu / grid.h[j] ** 2
            out.append(np.asarray(di, dtype=float).ravel(order='F'))
        return np.concatenate(out)

    def as_linear_operator(self) -> LinearOperator:
        return LinearOperator(self.shape, matvec=self.apply, rmatvec=self.apply_adjoint,
                              dtype=float)


class ElasticHessian:
    """
    Matrix-free x -> mass * x + scale * B^T B x.

    Used as the second-derivative access of the matrix-free elastic
    regularizer and as the level operator inside the multigrid hierarchy.
    """

    def __init__(self, operator: ElasticOperator, scale: float,
                 mass: Optional[np.ndarray] = None):
        self.operator = operator
        self.scale = float(scale)
        n = operator.input_size
        if mass is None:
            mass = np.zeros(n)
        mass = np.broadcast_to(np.asarray(mass, dtype=float), (n,)).copy()
        self.mass = mass

    @property
    def grid(self) -> StaggeredGrid:
        return self.operator.grid

    @property
    def size(self) -> int:
        return self.operator.input_size

    def apply(self, x: np.ndarray) -> np.ndarray:
        x = self.grid.check_vector(x, "Hessian input")
        op = self.operator
        return self.mass * x + self.scale * op.apply_adjoint(op.apply(x))

    def diagonal(self) -> np.ndarray:
        return self.mass + self.scale * self.operator.diagonal()

    def by(self, v: np.ndarray) -> np.ndarray:
        return self.operator.apply(v)

    def bty(self, z: np.ndarray) -> np.ndarray:
        return self.operator.apply_adjoint(z)

    def as_linear_operator(self) -> LinearOperator:
        n = self.size
        return LinearOperator((n, n), matvec=self.apply, rmatvec=self.apply, dtype=float)


class FEMGradient:
    """
    Matrix-free cell-wise gradient of nodal vector fields on a simplex mesh.

    For y stored component-major, the cell gradient tensor G has
    G[c, i, j] = d_j y_i on cell c. The flat form orders entries by
    component, then axis, then cell.
    """

    def __init__(self, mesh: SimplexMesh):
        self.mesh = mesh
        self.dim = mesh.dim
        self.cells = mesh.connectivity()
        self.dphi = mesh.shape_function_gradients()
        self.num_nodes = mesh.num_points
        self.num_cells = self.cells.shape[0]

    def node_sum(self, values: np.ndarray, k: int) -> np.ndarray:
        """Scatter-add per-cell values onto the k-th local vertex of each cell."""
        return np.bincount(self.cells[:, k], weights=values, minlength=self.num_nodes)

    def cell_gradients(self, y: np.ndarray) -> np.ndarray:
        y = self.mesh.check_vector(y, "nodal field")
        Y = y.reshape(self.dim, self.num_nodes)
        return np.einsum('kcj,ick->cij', self.dphi, Y[:, self.cells])

    def cell_gradients_adjoint(self, G: np.ndarray) -> np.ndarray:
        if G.shape != (self.num_cells, self.dim, self.dim):
            raise DimensionError(
                f"Cell tensor has shape {G.shape}, expected {(self.num_cells, self.dim, self.dim)}"
            )
        out = np.zeros((self.dim, self.num_nodes))
        for k in range(self.dim + 1):
            T = np.einsum('cj,cij->ic', self.dphi[k], G)
            for i in range(self.dim):
                out[i] += self.node_sum(T[i], k)
        return out.ravel()

    def apply(self, y: np.ndarray) -> np.ndarray:
        """Compute B y in flat form."""
        return np.transpose(self.cell_gradients(y), (1, 2, 0)).ravel()

    def apply_adjoint(self, z: np.ndarray) -> np.ndarray:
        """Compute B^T z for z in flat form."""
        z = np.asarray(z, dtype=float).ravel()
        expected = self.num_cells * self.dim ** 2
        if z.size != expected:
            raise DimensionError(f"B^T input has length {z.size}, expected {expected}")
        G = np.transpose(z.reshape(self.dim, self.dim, self.num_cells), (2, 0, 1))
        return self.cell_gradients_adjoint(G)

    def matrix(self) -> sparse.csr_matrix:
        """Explicit B with the row order of apply()."""
        D = sparse.vstack([self.mesh.gradient_stencil(j) for j in range(self.dim)])
        return sparse.block_diag([D] * self.dim, format='csr')

    def linearize(self, C: np.ndarray) -> sparse.csr_matrix:
        """
        Sparse Jacobian of q_c = sum_ij C[c, i, j] * d_j y_i with respect to y.

        Parameters
        ----------
        C : np.ndarray
            Coefficients, shape (ncells, dim, dim)

        Returns
        -------
        J : scipy.sparse.csr_matrix
            Shape (ncells, nnodes * dim)
        """
        stencils = [self.mesh.gradient_stencil(j) for j in range(self.dim)]
        blocks = []
        for i in range(self.dim):
            Ji = sparse.csr_matrix((self.num_cells, self.num_nodes))
            for j in range(self.dim):
                Ji = Ji + sparse.diags(C[:, i, j]) @ stencils[j]
            blocks.append(Ji)
        return sparse.hstack(blocks, format='csr')

    def diagonal_of_rank_one(self, weights: np.ndarray, C: np.ndarray) -> np.ndarray:
        """Diagonal of linearize(C)^T diag(weights) linearize(C), matrix-free."""
        out = np.zeros((self.dim, self.num_nodes))
        for k in range(self.dim + 1):
            T = np.einsum('cij,cj->ic', C, self.dphi[k])
            for i in range(self.dim):
                out[i] += self.node_sum(weights * T[i] ** 2, k)
        return out.ravel()

    def diagonal_of_gradient_norm(self, weights: np.ndarray) -> np.ndarray:
        """Diagonal of B^T diag(weights per cell) B."""
        d = np.zeros(self.num_nodes)
        for k in range(self.dim + 1):
            d += self.node_sum(weights * np.sum(self.dphi[k] ** 2, axis=1), k)
        return np.tile(d, self.dim)
