"""
Krylov solver for matrix-free Hessians.

Jacobi-preconditioned conjugate gradients on any operator exposing apply()
and diagonal(), e.g. the matrix-free hyperelastic Hessian, whose diagonal
is extracted without assembling the matrix.
"""

from dataclasses import dataclass
from typing import Optional
import logging
import numpy as np
from scipy.sparse.linalg import LinearOperator, cg

from .base import DimensionError

logger = logging.getLogger(__name__)


@dataclass
class PCGResult:
    solution: np.ndarray
    iterations: int
    converged: bool
    residual_norm: float


def pcg_solve(hessian, rhs: np.ndarray, rtol: float = 1e-8, maxiter: Optional[int] = None,
              shift: float = 0.0, x0: Optional[np.ndarray] = None) -> PCGResult:
    """
    Solve (H + shift * I) x = rhs with Jacobi-preconditioned CG.

    Parameters
    ----------
    hessian : object
        Operator with apply(x) and diagonal()
    rhs : np.ndarray
        Right-hand side
    rtol : float
        Relative residual tolerance
    maxiter : int
        Iteration cap (default: scipy's)
    shift : float
        Optional Levenberg-Marquardt style diagonal shift
    x0 : np.ndarray
        Initial guess (default zero)

    Returns
    -------
    result : PCGResult
    """
    rhs = np.asarray(rhs, dtype=float).ravel()
    diag = np.asarray(hessian.diagonal(), dtype=float) + shift
    n = diag.size
    if rhs.size != n:
        raise DimensionError(f"rhs has length {rhs.size}, expected {n}")
    if np.any(diag <= 0):
        logger.warning("Non-positive Hessian diagonal entries; falling back to unit preconditioner there")
        diag = np.where(diag > 0, diag, 1.0)

    A = LinearOperator((n, n), matvec=lambda x: hessian.apply(x) + shift * np.ravel(x), dtype=float)
    M = LinearOperator((n, n), matvec=lambda x: x / diag, dtype=float)

    iterations = 0

    def count(xk):
        nonlocal iterations
        iterations += 1

    x, info = cg(A, rhs, x0=x0, rtol=rtol, maxiter=maxiter, M=M, callback=count)
    if info > 0:
        logger.info("PCG did not reach rtol=%.1e within %d iterations", rtol, info)
    rnorm = float(np.linalg.norm(rhs - A.matvec(x)))
    logger.debug("PCG: %d iterations, |r| = %.3e", iterations, rnorm)
    return PCGResult(x, iterations, info == 0, rnorm)
