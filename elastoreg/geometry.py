"""
Grid and Mesh Descriptors

Concrete discretizations of a rectangular registration domain:
- StaggeredGrid: displacement component i stored on the faces normal to axis i
- TriangularMesh: 2-D linear finite elements, two triangles per cell
- TetrahedralMesh: 3-D linear finite elements, six tetrahedra per cell

Also provides the explicit sparse elasticity operator on a staggered grid,
used to verify the matrix-free implementation.
"""

from functools import reduce
from itertools import permutations
from typing import List, Sequence, Tuple
import numpy as np
from scipy import sparse

from .base import MeshDescriptor, ConfigurationError, HierarchyError


def short_difference(n: int, h: float) -> sparse.csr_matrix:
    """Forward difference from n+1 nodes to n cell centers, shape (n, n+1)."""
    return sparse.diags([-np.ones(n), np.ones(n)], [0, 1], shape=(n, n + 1), format='csr') / h


def long_difference(n: int, h: float) -> sparse.csr_matrix:
    """Difference from n cell centers to n+1 nodes with zero extension, shape (n+1, n)."""
    return (-short_difference(n, h).T).tocsr()


def axis_operator(op: sparse.spmatrix, shape: Sequence[int], axis: int) -> sparse.csr_matrix:
    """
    Lift a 1-D operator to act along one axis of a column-major array.

    Parameters
    ----------
    op : sparse matrix
        1-D operator with op.shape[1] == shape[axis]
    shape : sequence of int
        Shape of the array the operator acts on
    axis : int
        Axis to act along

    Returns
    -------
    A : sparse matrix
        Operator on the flattened (order='F') array
    """
    factors = [sparse.identity(n, format='csr') for n in shape]
    factors[axis] = sparse.csr_matrix(op)
    # column-major: the first axis varies fastest, so it is the rightmost factor
    return reduce(lambda a, b: sparse.kron(a, b, format='csr'), reversed(factors))


class StaggeredGrid(MeshDescriptor):
    """
    Regular staggered grid on omega with m cells per axis.

    Component i of a vector field lives on an array of shape m + e_i
    (nodal along axis i, cell-centered along the other axes). Vectors are
    the concatenation of the components flattened in column-major order.
    """

    def __init__(self, omega: Sequence[float], m: Sequence[int]):
        m = np.asarray(m, dtype=int).ravel()
        super().__init__(omega, m.size)
        if np.any(m < 1):
            raise ConfigurationError(f"Cell counts must be positive, got m={m.tolist()}")
        self.m = m
        self.h = (self.omega[1::2] - self.omega[0::2]) / m
        self.hd = float(np.prod(self.h))

    def __repr__(self) -> str:
        return f"StaggeredGrid(omega={self.omega.tolist()}, m={self.m.tolist()})"

    @property
    def component_shapes(self) -> List[Tuple[int, ...]]:
        shapes = []
        for i in range(self.dim):
            shape = self.m.copy()
            shape[i] += 1
            shapes.append(tuple(int(s) for s in shape))
        return shapes

    @property
    def component_sizes(self) -> List[int]:
        return [int(np.prod(s)) for s in self.component_shapes]

    @property
    def num_points(self) -> int:
        return int(np.prod(self.m))

    @property
    def vector_size(self) -> int:
        return int(sum(self.component_sizes))

    def node_coordinates(self) -> np.ndarray:
        """Coordinate i of every staggered location of component i."""
        coords = []
        for i, shape in enumerate(self.component_shapes):
            a = self.omega[2 * i]
            nodal = a + self.h[i] * np.arange(self.m[i] + 1)
            reps = [1] * self.dim
            grid_shape = [1] * self.dim
            grid_shape[i] = shape[i]
            for k in range(self.dim):
                if k != i:
                    reps[k] = shape[k]
            xi = np.tile(nodal.reshape(grid_shape), reps)
            coords.append(xi.ravel(order='F'))
        return np.concatenate(coords)

    def cell_volumes(self) -> np.ndarray:
        return np.full(self.num_points, self.hd)

    def gradient_stencil(self, axis: int) -> sparse.csr_matrix:
        return short_difference(int(self.m[axis]), float(self.h[axis]))

    def coarsen(self) -> 'StaggeredGrid':
        """Grid with half the cells per axis on the same domain."""
        if np.any(self.m % 2):
            raise HierarchyError(f"Cannot coarsen grid with odd cell counts m={self.m.tolist()}")
        return StaggeredGrid(self.omega, self.m // 2)


def elastic_matrix(grid: StaggeredGrid, mu: float = 1.0, lam: float = 0.0) -> sparse.csr_matrix:
    """
    Explicit elasticity operator B on a staggered grid.

    B = [ sqrt(mu) * grad (per component) ; sqrt(lam + mu) * div ]

    Parameters
    ----------
    grid : StaggeredGrid
        Discretization
    mu, lam : float
        Lame constants

    Returns
    -------
    B : scipy.sparse.csr_matrix
        Shape (rows, grid.vector_size)
    """
    m, h = grid.m, grid.h
    grad_blocks = []
    div_blocks = []
    for i, shape in enumerate(grid.component_shapes):
        rows = []
        for j in range(grid.dim):
            if j == i:
                op = short_difference(int(m[j]), float(h[j]))
            else:
                op = long_difference(int(m[j]), float(h[j]))
            rows.append(axis_operator(op, shape, j))
        grad_blocks.append(sparse.vstack(rows))
        div_blocks.append(axis_operator(short_difference(int(m[i]), float(h[i])), shape, i))
    grad = sparse.block_diag(grad_blocks)
    div = sparse.hstack(div_blocks)
    return sparse.vstack([np.sqrt(mu) * grad, np.sqrt(lam + mu) * div]).tocsr()


class SimplexMesh(MeshDescriptor):
    """
    Linear simplex finite-element mesh.

    Nodal vector fields are stored component-major:
    [y_1(all nodes), y_2(all nodes), ...].
    """

    def __init__(self, omega: Sequence[float], nodes: np.ndarray, cells: np.ndarray):
        nodes = np.asarray(nodes, dtype=float)
        cells = np.asarray(cells, dtype=int)
        super().__init__(omega, nodes.shape[1])
        if cells.shape[1] != self.dim + 1:
            raise ConfigurationError(
                f"{self.dim}-D simplices need {self.dim + 1} vertices, got {cells.shape[1]}"
            )
        self.nodes = nodes
        self.cells = cells
        self.vol, self.dphi = self._shape_function_derivatives(nodes, cells)

    @staticmethod
    def _shape_function_derivatives(nodes: np.ndarray,
                                    cells: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Cell volumes and gradients of the barycentric basis functions."""
        dim = nodes.shape[1]
        X = nodes[cells]                                   # (ncells, dim+1, dim)
        E = np.transpose(X[:, 1:, :] - X[:, :1, :], (0, 2, 1))  # columns are edges
        det = np.linalg.det(E)
        vol = np.abs(det) / float(np.prod(np.arange(1, dim + 1)))
        Einv = np.linalg.inv(E)                            # row k = grad of phi_{k+1}
        dphi = np.empty((dim + 1, cells.shape[0], dim))
        dphi[1:] = np.transpose(Einv, (1, 0, 2))
        dphi[0] = -dphi[1:].sum(axis=0)
        return vol, dphi

    @property
    def num_points(self) -> int:
        return self.nodes.shape[0]

    @property
    def num_cells(self) -> int:
        return self.cells.shape[0]

    def node_coordinates(self) -> np.ndarray:
        return self.nodes.ravel(order='F')

    def cell_volumes(self) -> np.ndarray:
        return self.vol

    def shape_function_gradients(self) -> np.ndarray:
        return self.dphi

    def connectivity(self) -> np.ndarray:
        return self.cells

    def gradient_stencil(self, axis: int) -> sparse.csr_matrix:
        """Cell-wise partial derivative along axis, shape (ncells, nnodes)."""
        ncells = self.num_cells
        rows = np.tile(np.arange(ncells), self.dim + 1)
        cols = self.cells.T.ravel()
        vals = self.dphi[:, :, axis].ravel()
        return sparse.csr_matrix((vals, (rows, cols)), shape=(ncells, self.num_points))


def _lattice_nodes(omega: np.ndarray, m: np.ndarray) -> np.ndarray:
    """Nodes of the regular lattice, first axis fastest."""
    axes = [np.linspace(omega[2 * k], omega[2 * k + 1], m[k] + 1) for k in range(m.size)]
    grids = np.meshgrid(*axes, indexing='ij')
    return np.stack([g.ravel(order='F') for g in grids], axis=1)


class TriangularMesh(SimplexMesh):
    """Structured triangulation of a 2-D box, each cell split into two triangles."""

    def __init__(self, omega: Sequence[float], m: Sequence[int]):
        omega = np.asarray(omega, dtype=float).ravel()
        m = np.asarray(m, dtype=int).ravel()
        if m.size != 2:
            raise ConfigurationError(f"TriangularMesh is 2-D, got m={m.tolist()}")
        nodes = _lattice_nodes(omega, m)

        ix, iy = np.meshgrid(np.arange(m[0]), np.arange(m[1]), indexing='ij')
        ix, iy = ix.ravel(order='F'), iy.ravel(order='F')
        stride = m[0] + 1
        n1 = ix + stride * iy
        n2 = n1 + 1
        n3 = n2 + stride
        n4 = n1 + stride
        # counterclockwise pair per cell
        cells = np.concatenate([
            np.stack([n1, n2, n4], axis=1),
            np.stack([n2, n3, n4], axis=1),
        ])
        self.m = m
        super().__init__(omega, nodes, cells)


class TetrahedralMesh(SimplexMesh):
    """Structured tetrahedralization of a 3-D box, six tetrahedra per cell."""

    def __init__(self, omega: Sequence[float], m: Sequence[int]):
        omega = np.asarray(omega, dtype=float).ravel()
        m = np.asarray(m, dtype=int).ravel()
        if m.size != 3:
            raise ConfigurationError(f"TetrahedralMesh is 3-D, got m={m.tolist()}")
        nodes = _lattice_nodes(omega, m)

        idx = np.meshgrid(*[np.arange(n) for n in m], indexing='ij')
        base = [g.ravel(order='F') for g in idx]
        strides = np.array([1, m[0] + 1, (m[0] + 1) * (m[1] + 1)])

        def corner(offset):
            return sum((base[k] + offset[k]) * strides[k] for k in range(3))

        cells = []
        # one tetrahedron per monotone path from corner (0,0,0) to (1,1,1)
        for perm in permutations(range(3)):
            offset = [0, 0, 0]
            path = [corner(offset)]
            for axis in perm:
                offset[axis] = 1
                path.append(corner(offset))
            cells.append(np.stack(path, axis=1))
        self.m = m
        super().__init__(omega, nodes, np.concatenate(cells))
