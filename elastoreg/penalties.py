"""
Hyperelastic Penalty Functions

Scalar penalties applied cell-wise to area and volume changes. Each returns
(value, first derivative, second derivative); derivatives are None when not
requested.
"""

from typing import Optional, Tuple
import numpy as np

PenaltyResult = Tuple[np.ndarray, Optional[np.ndarray], Optional[np.ndarray]]


def psi(x: np.ndarray, derivative: bool = True) -> PenaltyResult:
    """
    Volume penalty psi(x) = ((x - 1)^2 / x)^2.

    psi(x) >= 0, psi(1) = 0, psi(x) = psi(1/x), psi is convex on (0, inf)
    and psi(x) -> inf as x -> 0+, which rules out folding cells.
    No protection is applied for x <= 0.
    """
    x = np.asarray(x, dtype=float)
    with np.errstate(divide='ignore', invalid='ignore'):
        G = (x - 1.0) * (x - 1.0) / x
        G = G * G
        if not derivative:
            return G, None, None
        dG = 2.0 * (x - 1.0) ** 3 * (x + 1.0) / x ** 3
        d2G = 2.0 * (x ** 4 - 4.0 * x + 3.0) / x ** 4
    return G, dG, d2G


def phi_double_well(x: np.ndarray, derivative: bool = True) -> PenaltyResult:
    """
    Area penalty phi(x) = 0.5 * (x - 1)^2.

    Penalizes growth and shrinkage of area alike; as a function of the
    deformation it is a double well and therefore not convex.
    """
    x = np.asarray(x, dtype=float)
    G = 0.5 * (x - 1.0) ** 2
    if not derivative:
        return G, None, None
    return G, x - 1.0, np.ones_like(x)


def phi_convex(x: np.ndarray, derivative: bool = True) -> PenaltyResult:
    """
    Convex area penalty: 0.5 * (x - 1)^2 for x >= 1, zero below.

    Only area growth is penalized.
    """
    x = np.asarray(x, dtype=float)
    shrink = x < 1.0
    G = 0.5 * (x - 1.0) ** 2
    G[shrink] = 0.0
    if not derivative:
        return G, None, None
    dG = x - 1.0
    dG[shrink] = 0.0
    d2G = np.ones_like(x)
    d2G[shrink] = 0.0
    return G, dG, d2G


AREA_PENALTIES = {
    'double_well': phi_double_well,
    'convex': phi_convex,
}
