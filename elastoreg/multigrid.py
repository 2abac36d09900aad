"""
Geometric Multigrid for Elastic Systems

Solves (M + alpha * hd * B^T B) u = f on a staggered grid with V-cycles:
- Damped Jacobi smoothing through the matrix-free level operator
- Restriction / prolongation by per-axis linear interpolation
- Direct (or many-sweep Jacobi) solve on the coarsest level

B^T B is never assembled. The hierarchy is built once per grid and reused
for any number of right-hand sides.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union
import logging
import numpy as np

from .base import ConfigurationError, HierarchyError, split_components
from .geometry import StaggeredGrid
from .operators import ElasticOperator, ElasticHessian
from .parameters import ElasticParameters

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# 1-D transfers along axis 0
# ---------------------------------------------------------------------------

def _prolong_nodal(c: np.ndarray) -> np.ndarray:
    f = np.empty((2 * c.shape[0] - 1,) + c.shape[1:])
    f[0::2] = c
    f[1::2] = 0.5 * (c[:-1] + c[1:])
    return f


def _prolong_nodal_adjoint(f: np.ndarray) -> np.ndarray:
    c = f[0::2].copy()
    c[:-1] += 0.5 * f[1::2]
    c[1:] += 0.5 * f[1::2]
    return c


def _prolong_cell(c: np.ndarray) -> np.ndarray:
    # linear interpolation, constant extension at the boundary
    prev = np.concatenate([c[:1], c[:-1]])
    nxt = np.concatenate([c[1:], c[-1:]])
    f = np.empty((2 * c.shape[0],) + c.shape[1:])
    f[0::2] = 0.75 * c + 0.25 * prev
    f[1::2] = 0.75 * c + 0.25 * nxt
    return f


def _prolong_cell_adjoint(f: np.ndarray) -> np.ndarray:
    even, odd = f[0::2], f[1::2]
    c = 0.75 * (even + odd)
    c[:-1] += 0.25 * even[1:]
    c[0] += 0.25 * even[0]
    c[1:] += 0.25 * odd[:-1]
    c[-1] += 0.25 * odd[-1]
    return c


def _along(fn, v: np.ndarray, axis: int) -> np.ndarray:
    return np.moveaxis(fn(np.moveaxis(v, axis, 0)), 0, axis)


def _prolong_component(c: np.ndarray, nodal_axis: int) -> np.ndarray:
    for axis in range(c.ndim):
        fn = _prolong_nodal if axis == nodal_axis else _prolong_cell
        c = _along(fn, c, axis)
    return c


def _restrict_component(f: np.ndarray, nodal_axis: int) -> np.ndarray:
    """Row-normalized transpose of the prolongation, so constants are preserved."""
    weights = np.ones_like(f)
    for axis in range(f.ndim):
        fn = _prolong_nodal_adjoint if axis == nodal_axis else _prolong_cell_adjoint
        f = _along(fn, f, axis)
        weights = _along(fn, weights, axis)
    return f / weights


def prolongate(v: np.ndarray, coarse: StaggeredGrid) -> np.ndarray:
    """Interpolate a staggered field from coarse to the grid with twice the cells."""
    v = coarse.check_vector(v, "coarse vector")
    parts = split_components(v, coarse.component_sizes)
    out = []
    for i, (p, shape) in enumerate(zip(parts, coarse.component_shapes)):
        out.append(_prolong_component(p.reshape(shape, order='F'), i).ravel(order='F'))
    return np.concatenate(out)


def restrict(v: np.ndarray, fine: StaggeredGrid) -> np.ndarray:
    """Transfer a staggered field from fine to the grid with half the cells."""
    v = fine.check_vector(v, "fine vector")
    parts = split_components(v, fine.component_sizes)
    out = []
    for i, (p, shape) in enumerate(zip(parts, fine.component_shapes)):
        out.append(_restrict_component(p.reshape(shape, order='F'), i).ravel(order='F'))
    return np.concatenate(out)


# ---------------------------------------------------------------------------
# Hierarchy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MultigridOptions:
    """
    V-cycle settings.

    omega : Jacobi damping factor, 0 < omega <= 1
    presmooth, postsmooth : Jacobi sweeps before / after the coarse correction
    coarse_solver : 'direct' (dense solve of the probed coarsest operator)
                    or 'jacobi' (coarse_iterations sweeps)
    """

    omega: float = 2.0 / 3.0
    presmooth: int = 3
    postsmooth: int = 3
    coarse_solver: str = 'direct'
    coarse_iterations: int = 200

    def __post_init__(self):
        if not 0.0 < self.omega <= 1.0:
            raise ConfigurationError(f"omega must lie in (0, 1], got {self.omega}")
        if self.presmooth < 0 or self.postsmooth < 0:
            raise ConfigurationError("Number of smoothing sweeps must be non-negative")
        if self.coarse_solver not in ('direct', 'jacobi'):
            raise ConfigurationError(f"Unknown coarse solver: {self.coarse_solver}")
        if self.coarse_iterations < 1:
            raise ConfigurationError("coarse_iterations must be positive")


class MultigridLevel:
    """One grid of the hierarchy with its operator and Jacobi diagonal."""

    def __init__(self, grid: StaggeredGrid, operator: ElasticHessian):
        self.grid = grid
        self.operator = operator
        self.diagonal = operator.diagonal()
        self._dense = None

    def __repr__(self) -> str:
        return f"MultigridLevel(m={self.grid.m.tolist()}, n={self.grid.vector_size})"

    def apply(self, u: np.ndarray) -> np.ndarray:
        return self.operator.apply(u)

    def restrict(self, v: np.ndarray) -> np.ndarray:
        """Map a vector on this level to the next coarser level."""
        return restrict(v, self.grid)

    def prolong(self, v: np.ndarray, coarse: StaggeredGrid) -> np.ndarray:
        """Map a vector on the coarser grid below this level to this level."""
        return prolongate(v, coarse)

    def dense_operator(self) -> np.ndarray:
        """Operator probed column by column; only used on the coarsest level."""
        if self._dense is None:
            n = self.grid.vector_size
            self._dense = np.column_stack([self.apply(e) for e in np.eye(n)])
        return self._dense


class MultigridHierarchy:
    """Grid levels ordered coarsest to finest."""

    def __init__(self, levels: List[MultigridLevel]):
        if not levels:
            raise HierarchyError("A hierarchy needs at least one level")
        for k, (coarse, fine) in enumerate(zip(levels[:-1], levels[1:])):
            cg, fg = coarse.grid, fine.grid
            if cg.dim != fg.dim or not np.allclose(cg.omega, fg.omega):
                raise HierarchyError(
                    f"Levels {k} and {k + 1} do not discretize the same domain: "
                    f"{cg.omega.tolist()} vs {fg.omega.tolist()}"
                )
            if np.any(fg.m % 2) or np.any(cg.m != fg.m // 2):
                raise HierarchyError(
                    f"Level {k} has m={cg.m.tolist()}, expected half of "
                    f"m={fg.m.tolist()} on level {k + 1}"
                )
        self.levels = levels

    def __len__(self) -> int:
        return len(self.levels)

    def __getitem__(self, k: int) -> MultigridLevel:
        return self.levels[k]

    @property
    def finest(self) -> MultigridLevel:
        return self.levels[-1]

    @staticmethod
    def default_levels(m: Sequence[int]) -> int:
        """log2 of the smallest cell count, plus one."""
        return int(np.floor(np.log2(min(m)))) + 1

    @classmethod
    def build(cls, grid: StaggeredGrid,
              params: Optional[ElasticParameters] = None,
              mass: Optional[Union[float, np.ndarray]] = None,
              levels: Optional[int] = None) -> 'MultigridHierarchy':
        """
        Build the hierarchy for (M + alpha * hd * B^T B).

        Parameters
        ----------
        grid : StaggeredGrid
            Finest grid
        params : ElasticParameters
            alpha, mu, lambda
        mass : float or np.ndarray
            Diagonal of M (default identity)
        levels : int
            Number of levels (default log2(min(m)) + 1)

        Returns
        -------
        hierarchy : MultigridHierarchy

        Raises
        ------
        HierarchyError
            If some m_i is not divisible by 2**(levels - 1)
        """
        params = params if params is not None else ElasticParameters()
        m = grid.m
        if levels is None:
            levels = cls.default_levels(m)
        if levels < 1:
            raise HierarchyError(f"Number of levels must be positive, got {levels}")
        factor = 2 ** (levels - 1)
        if np.any(m % factor):
            raise HierarchyError(
                f"Grid m={m.tolist()} cannot be coarsened {levels - 1} times; "
                f"every m_i must be divisible by {factor}"
            )

        if mass is None:
            mass = 1.0
        mass = np.broadcast_to(np.asarray(mass, dtype=float), (grid.vector_size,)).copy()
        # coarse levels discretize the same continuous problem as the finest one
        scale = params.alpha * grid.hd

        built = []
        current = grid
        for k in range(levels):
            op = ElasticHessian(ElasticOperator(current, params.mu, params.lam), scale, mass)
            built.append(MultigridLevel(current, op))
            if k < levels - 1:
                mass = restrict(mass, current)
                current = current.coarsen()
        built.reverse()
        logger.debug("Built %d-level hierarchy for m=%s", levels, m.tolist())
        return cls(built)


# ---------------------------------------------------------------------------
# V-cycle
# ---------------------------------------------------------------------------

@dataclass
class MultigridResult:
    """Approximate solution with the residual norm before every cycle and at exit."""

    solution: np.ndarray
    residual_norm: float
    cycles: int
    converged: bool
    history: List[float] = field(default_factory=list)


def _smooth(level: MultigridLevel, u: np.ndarray, f: np.ndarray,
            sweeps: int, omega: float) -> np.ndarray:
    # synchronous update: each sweep reads the complete iterate
    for _ in range(sweeps):
        u = u + omega * (f - level.apply(u)) / level.diagonal
    return u


def _coarse_solve(level: MultigridLevel, u: np.ndarray, f: np.ndarray,
                  options: MultigridOptions) -> np.ndarray:
    if options.coarse_solver == 'direct':
        return np.linalg.solve(level.dense_operator(), f)
    return _smooth(level, u, f, options.coarse_iterations, options.omega)


def _cycle(hierarchy: MultigridHierarchy, k: int, u: np.ndarray, f: np.ndarray,
           options: MultigridOptions) -> np.ndarray:
    level = hierarchy[k]
    if k == 0:
        return _coarse_solve(level, u, f, options)

    u = _smooth(level, u, f, options.presmooth, options.omega)
    r = f - level.apply(u)
    rc = level.restrict(r)
    ec = _cycle(hierarchy, k - 1, np.zeros_like(rc), rc, options)
    u = u + level.prolong(ec, hierarchy[k - 1].grid)
    return _smooth(level, u, f, options.postsmooth, options.omega)


def vcycle(hierarchy: MultigridHierarchy, u0: np.ndarray, rhs: np.ndarray,
           tol: float = 1e-12, level: Optional[int] = None, max_cycles: int = 5,
           options: Optional[MultigridOptions] = None) -> MultigridResult:
    """
    Run up to max_cycles V-cycles from u0, stopping once |rhs - A u| < tol.

    Parameters
    ----------
    hierarchy : MultigridHierarchy
        Prebuilt levels
    u0 : np.ndarray
        Initial guess on the grid of the starting level
    rhs : np.ndarray
        Right-hand side on the same grid
    tol : float
        Absolute residual tolerance
    level : int
        Starting level, 1 = coarsest, len(hierarchy) = finest (default)
    max_cycles : int
        Maximum number of V-cycles
    options : MultigridOptions
        Smoother and coarse-solver settings

    Returns
    -------
    result : MultigridResult
    """
    options = options if options is not None else MultigridOptions()
    if level is None:
        level = len(hierarchy)
    if not 1 <= level <= len(hierarchy):
        raise HierarchyError(f"level must lie in [1, {len(hierarchy)}], got {level}")
    if max_cycles < 0:
        raise ConfigurationError(f"max_cycles must be non-negative, got {max_cycles}")

    k = level - 1
    grid = hierarchy[k].grid
    u = grid.check_vector(u0, "u0").copy()
    f = grid.check_vector(rhs, "rhs")

    history = []
    cycles = 0
    rnorm = float(np.linalg.norm(f - hierarchy[k].apply(u)))
    while True:
        history.append(rnorm)
        logger.debug("V-cycle %d: |r| = %.3e", cycles, rnorm)
        if rnorm < tol or cycles >= max_cycles:
            break
        u = _cycle(hierarchy, k, u, f, options)
        cycles += 1
        rnorm = float(np.linalg.norm(f - hierarchy[k].apply(u)))

    if rnorm < tol:
        logger.info("Multigrid converged after %d cycles, |r| = %.3e", cycles, rnorm)
    else:
        logger.info("Multigrid stopped after %d cycles, |r| = %.3e > tol = %.1e",
                    cycles, rnorm, tol)
    return MultigridResult(u, rnorm, cycles, rnorm < tol, history)


def solve(hierarchy: MultigridHierarchy, rhs: np.ndarray, tolerance: float = 1e-10,
          max_level: Optional[int] = None, max_cycles: int = 10,
          options: Optional[MultigridOptions] = None) -> MultigridResult:
    """Approximate solution of A u = rhs starting from u = 0."""
    if max_level is None:
        max_level = len(hierarchy)
    grid = hierarchy[max_level - 1].grid if 1 <= max_level <= len(hierarchy) else None
    if grid is None:
        raise HierarchyError(f"max_level must lie in [1, {len(hierarchy)}], got {max_level}")
    u0 = np.zeros(grid.vector_size)
    return vcycle(hierarchy, u0, rhs, tol=tolerance, level=max_level,
                  max_cycles=max_cycles, options=options)
