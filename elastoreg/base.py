"""
Base Mesh Descriptor Interface

Defines the narrow interface through which the regularizers and solvers
read geometry:
- Node coordinates and per-cell volumes
- Finite-difference / finite-element gradient building blocks
- Element connectivity and shape-function gradients (meshes only)

Also collects the exception taxonomy shared by the package.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Hashable, List, Optional, Sequence
import threading
import numpy as np
from scipy import sparse


class MeshDescriptor(ABC):
    """
    Abstract base class for discretizations of the registration domain.

    Implementations are immutable for the lifetime of a registration level.
    Regularizers and solvers only read them through the methods below.
    """

    def __init__(self, omega: Sequence[float], dim: int):
        """
        Initialize descriptor.

        Parameters
        ----------
        omega : sequence of float
            Domain bounds [a1, b1, ..., ad, bd]
        dim : int
            Spatial dimension
        """
        omega = np.asarray(omega, dtype=float).ravel()
        if dim not in (2, 3):
            raise ConfigurationError(f"Only 2-D and 3-D domains are supported, got dim={dim}")
        if omega.size != 2 * dim:
            raise ConfigurationError(
                f"omega must contain {2 * dim} bounds for a {dim}-D domain, got {omega.size}"
            )
        if np.any(omega[1::2] <= omega[0::2]):
            raise ConfigurationError("omega must satisfy a_i < b_i on every axis")
        self.omega = omega
        self.dim = dim

    @property
    @abstractmethod
    def num_points(self) -> int:
        """Number of discretization points carrying one displacement vector."""
        pass

    @abstractmethod
    def node_coordinates(self) -> np.ndarray:
        """
        Reference coordinates of the discretization points.

        Returns
        -------
        coords : np.ndarray
            Flat vector of length num_points * dim, component-major
        """
        pass

    @abstractmethod
    def cell_volumes(self) -> np.ndarray:
        """
        Volume (area in 2-D) of every cell.

        Returns
        -------
        vol : np.ndarray
            One weight per cell
        """
        pass

    @abstractmethod
    def gradient_stencil(self, axis: int) -> sparse.spmatrix:
        """
        Explicit gradient building block for one spatial direction.

        Parameters
        ----------
        axis : int
            Spatial direction (0-based)

        Returns
        -------
        D : scipy.sparse matrix
            Difference stencil (grids) or cell-wise partial derivative (meshes)
        """
        pass

    def shape_function_gradients(self) -> np.ndarray:
        """Gradients of the local basis functions, shape (dim+1, ncells, dim)."""
        raise ConfigurationError(f"{type(self).__name__} has no finite-element basis")

    def connectivity(self) -> np.ndarray:
        """Cell-to-node table, shape (ncells, dim+1)."""
        raise ConfigurationError(f"{type(self).__name__} has no element connectivity")

    @property
    def vector_size(self) -> int:
        """Length of a displacement vector on this discretization."""
        return self.num_points * self.dim

    def check_vector(self, v: np.ndarray, name: str = "vector") -> np.ndarray:
        """
        Return v as a flat float array, failing fast on a layout mismatch.

        Only flat vectors (or single columns) are accepted; a (points, dim)
        array would otherwise be read with interleaved components.
        """
        v = np.asarray(v, dtype=float)
        if v.ndim == 2 and v.shape[1] == 1:
            v = v[:, 0]
        if v.ndim != 1:
            raise DimensionError(
                f"{name} must be a flat component-major vector, got shape {v.shape}"
            )
        if v.size != self.vector_size:
            raise DimensionError(
                f"{name} has length {v.size}, expected {self.vector_size} "
                f"for {type(self).__name__} with dim={self.dim}"
            )
        return v


def split_components(v: np.ndarray, sizes: List[int]) -> List[np.ndarray]:
    """Split a concatenated vector into per-component views."""
    offsets = np.cumsum([0] + list(sizes))
    return [v[offsets[k]:offsets[k + 1]] for k in range(len(sizes))]


class DimensionError(ValueError):
    """Raised when a vector length does not match the discretization."""
    pass


class ConfigurationError(ValueError):
    """Raised when parameters or dimensionality are invalid or unsupported."""
    pass


class HierarchyError(ValueError):
    """Raised when a multigrid hierarchy is inconsistent with the grid size."""
    pass


class MatrixCache:
    """
    Single-entry cache for an assembled operator.

    The entry is keyed on a hashable key plus the identity of the mesh it was
    built for and is replaced as a whole under a lock, so concurrent callers
    never see a matrix paired with the wrong key.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entry = None
        self.builds = 0

    def get(self, key: Hashable, mesh: Any, build: Callable[[], Any]) -> Any:
        with self._lock:
            entry = self._entry
            if entry is not None and entry[0] == key and entry[1] is mesh:
                return entry[2]
            value = build()
            self._entry = (key, mesh, value)
            self.builds += 1
            return value

    def invalidate(self):
        with self._lock:
            self._entry = None


@dataclass
class EnergyResult:
    """
    Energy value with optional derivatives.

    hessian is a scipy.sparse matrix in matrix-based mode and an operator
    exposing apply(x) / diagonal() in matrix-free mode.
    """

    value: float
    gradient: Optional[np.ndarray] = None
    hessian: Optional[Any] = None

    def __iter__(self):
        return iter((self.value, self.gradient, self.hessian))
