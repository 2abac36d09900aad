"""
Cofactor and Determinant Utilities

Per-cell cofactor matrices and Jacobian determinants of the deformation
gradient, their directional derivatives, and (for the matrix-based mode)
the explicit sparse Jacobians of the cofactor entries.

Cell gradients are stacked as G[c, i, j] = d_j y_i. Near-degenerate cells
are not clamped: small or negative determinants propagate unchanged.
"""

from typing import List
import numpy as np
from scipy import sparse

from .base import ConfigurationError
from .operators import FEMGradient


def _require_3d(G: np.ndarray):
    if G.ndim != 3 or G.shape[1:] != (3, 3):
        raise ConfigurationError(f"Cofactor routines need 3x3 cell gradients, got shape {G.shape}")


def determinant(G: np.ndarray) -> np.ndarray:
    """Jacobian determinant per cell for 2x2 or 3x3 gradients."""
    if G.ndim == 3 and G.shape[1:] == (2, 2):
        return G[:, 0, 0] * G[:, 1, 1] - G[:, 1, 0] * G[:, 0, 1]
    _require_3d(G)
    return np.einsum('cj,cj->c', G[:, 0, :], cofactor(G)[:, 0, :])


def determinant_gradient(G: np.ndarray) -> np.ndarray:
    """d det / d G per cell; the cofactor matrix in 3-D."""
    if G.ndim == 3 and G.shape[1:] == (2, 2):
        return np.stack([
            np.stack([G[:, 1, 1], -G[:, 1, 0]], axis=1),
            np.stack([-G[:, 0, 1], G[:, 0, 0]], axis=1),
        ], axis=1)
    return cofactor(G)


def cofactor(G: np.ndarray) -> np.ndarray:
    """
    Cofactor matrix per cell.

    cof[c, i, j] = G[i+1, j+1] G[i+2, j+2] - G[i+1, j+2] G[i+2, j+1]
    with indices taken modulo 3, so det = sum_j G[0, j] cof[0, j].
    """
    _require_3d(G)
    cof = np.empty_like(G)
    for i in range(3):
        i1, i2 = (i + 1) % 3, (i + 2) % 3
        for j in range(3):
            j1, j2 = (j + 1) % 3, (j + 2) % 3
            cof[:, i, j] = G[:, i1, j1] * G[:, i2, j2] - G[:, i1, j2] * G[:, i2, j1]
    return cof


def cofactor_directional(G: np.ndarray, W: np.ndarray) -> np.ndarray:
    """
    Directional derivative of the cofactor map at G in direction W.

    Parameters
    ----------
    G : np.ndarray
        Cell gradients of the deformation, shape (ncells, 3, 3)
    W : np.ndarray
        Cell gradients of the perturbation, same shape

    Returns
    -------
    dcof : np.ndarray
        d cof(G)[W], shape (ncells, 3, 3)
    """
    _require_3d(G)
    _require_3d(W)
    dcof = np.empty_like(G)
    for i in range(3):
        i1, i2 = (i + 1) % 3, (i + 2) % 3
        for j in range(3):
            j1, j2 = (j + 1) % 3, (j + 2) % 3
            dcof[:, i, j] = (W[:, i1, j1] * G[:, i2, j2] + G[:, i1, j1] * W[:, i2, j2]
                             - W[:, i1, j2] * G[:, i2, j1] - G[:, i1, j2] * W[:, i2, j1])
    return dcof


def cofactor_derivative(G: np.ndarray) -> np.ndarray:
    """
    Full derivative tensor d cof[i, j] / d G[k, l] per cell.

    Returns
    -------
    D : np.ndarray
        Shape (ncells, 3, 3, 3, 3), indexed [c, i, j, k, l]
    """
    _require_3d(G)
    D = np.zeros(G.shape[:1] + (3, 3, 3, 3))
    for i in range(3):
        i1, i2 = (i + 1) % 3, (i + 2) % 3
        for j in range(3):
            j1, j2 = (j + 1) % 3, (j + 2) % 3
            D[:, i, j, i1, j1] += G[:, i2, j2]
            D[:, i, j, i2, j2] += G[:, i1, j1]
            D[:, i, j, i1, j2] -= G[:, i2, j1]
            D[:, i, j, i2, j1] -= G[:, i1, j2]
    return D


def cofactor_matrices(G: np.ndarray, gradient: FEMGradient) -> List[List[sparse.csr_matrix]]:
    """
    Explicit sparse Jacobians of the cofactor entries with respect to y.

    Returns
    -------
    dcof : list of list of scipy.sparse.csr_matrix
        dcof[i][j] has shape (ncells, nnodes * 3)
    """
    D = cofactor_derivative(G)
    return [[gradient.linearize(D[:, i, j]) for j in range(3)] for i in range(3)]
