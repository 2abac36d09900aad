"""
Linear Elastic Regularizer

S(y) = alpha/2 * hd * |B (y - yRef)|^2 on a staggered grid, with B the
elasticity operator (Lame constants mu, lambda) and hd the cell volume.

Matrix-based mode assembles B once per grid and returns the sparse Hessian
alpha * hd * B^T B; matrix-free mode works through ElasticOperator and
returns an ElasticHessian.
"""

from typing import Optional
import numpy as np

from .base import EnergyResult, MatrixCache
from .geometry import StaggeredGrid, elastic_matrix
from .operators import ElasticOperator, ElasticHessian
from .parameters import ElasticParameters


class ElasticRegularizer:
    """Linear elasticity on a staggered grid, matrix-based or matrix-free."""

    def __init__(self, params: Optional[ElasticParameters] = None, matrix_free: bool = False):
        """
        Parameters
        ----------
        params : ElasticParameters
            alpha, mu, lambda
        matrix_free : bool
            Return a Hessian operator instead of an assembled sparse matrix
        """
        self.params = params if params is not None else ElasticParameters()
        self.matrix_free = matrix_free
        self.name = 'mfElastic' if matrix_free else 'mbElastic'
        self._cache = MatrixCache()

    def operator(self, grid: StaggeredGrid) -> ElasticOperator:
        """Matrix-free B and B^T for this grid."""
        return ElasticOperator(grid, self.params.mu, self.params.lam)

    def matrix(self, grid: StaggeredGrid):
        """Assembled B, rebuilt only when the grid or the Lame constants change."""
        p = self.params
        key = (p.mu, p.lam, grid.vector_size)
        return self._cache.get(key, grid, lambda: elastic_matrix(grid, p.mu, p.lam))

    def evaluate(self, yc: np.ndarray, y_ref: np.ndarray, grid: StaggeredGrid,
                 want_gradient: bool = True, want_hessian: bool = True) -> EnergyResult:
        """
        Energy, gradient and second-derivative access at yc.

        Parameters
        ----------
        yc : np.ndarray
            Current staggered deformation
        y_ref : np.ndarray
            Reference configuration
        grid : StaggeredGrid
            Discretization
        want_gradient, want_hessian : bool
            Skip the derivatives when not needed

        Returns
        -------
        result : EnergyResult
            value, gradient (or None), hessian (sparse matrix, ElasticHessian or None)
        """
        yc = grid.check_vector(yc, "yc")
        y_ref = grid.check_vector(y_ref, "yRef")
        u = yc - y_ref
        scale = self.params.alpha * grid.hd

        if self.matrix_free:
            op = self.operator(grid)
            Bu = op.apply(u)
            value = 0.5 * scale * float(Bu @ Bu)
            gradient = scale * op.apply_adjoint(Bu) if want_gradient else None
            hessian = ElasticHessian(op, scale) if want_hessian else None
        else:
            B = self.matrix(grid)
            Bu = B @ u
            value = 0.5 * scale * float(Bu @ Bu)
            gradient = scale * (B.T @ Bu) if want_gradient else None
            hessian = (scale * (B.T @ B)).tocsr() if want_hessian else None

        return EnergyResult(value, gradient, hessian)
