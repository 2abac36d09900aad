"""
Hyperelastic Regularizer

Hyperelastic regularization on linear simplex finite elements:

    S(u) = int a_L/2 |grad u|^2 + a_A * phi(cof grad y) + a_V * psi(det grad y)

with y = yRef + u. The three contributions (length, area, volume) are each
switched off by a zero weight; the area term exists in 3-D only.

Second derivatives follow the usual Gauss-Newton approximation: for every
penalty f(q) of a cell quantity q(grad y), the Hessian contribution is
J^T diag(w f''(q)) J with J = dq/dy, dropping f'(q) d^2q/dy^2.

Matrix-based mode returns one sparse Hessian; matrix-free mode returns a
HyperElasticHessian exposing apply() and diagonal().
"""

from dataclasses import dataclass
from typing import List, Optional
import warnings
import numpy as np
from scipy import sparse
from scipy.sparse.linalg import LinearOperator

from .base import EnergyResult, MatrixCache, ConfigurationError
from .cofactor import cofactor, cofactor_derivative, determinant, determinant_gradient
from .geometry import SimplexMesh
from .operators import FEMGradient
from .parameters import HyperElasticParameters
from .penalties import AREA_PENALTIES, psi


@dataclass
class PenaltyTerm:
    """
    One cell-wise penalty w * f(q).

    first = w * f'(q), second = w * f''(q), and C[c] = dq/dG on cell c.
    """

    name: str
    energy: float
    first: Optional[np.ndarray]
    second: Optional[np.ndarray]
    C: Optional[np.ndarray]


class HyperElasticHessian:
    """
    Matrix-free Hessian of the hyperelastic energy.

    apply(x) evaluates the length Hessian plus every rank-one penalty term
    without assembling anything; diagonal() gives the exact diagonal of the
    same operator, for Jacobi smoothing or preconditioning.
    """

    def __init__(self, gradient: FEMGradient, length_weight: float,
                 volumes: np.ndarray, terms: List[PenaltyTerm]):
        self.gradient = gradient
        self.length_weight = float(length_weight)
        self.volumes = volumes
        self.terms = terms

    @property
    def size(self) -> int:
        return self.gradient.mesh.vector_size

    def by(self, u: np.ndarray) -> np.ndarray:
        return self.gradient.apply(u)

    def bty(self, z: np.ndarray) -> np.ndarray:
        return self.gradient.apply_adjoint(z)

    def apply_length(self, x: np.ndarray) -> np.ndarray:
        grad = self.gradient
        X = grad.cell_gradients(x)
        return self.length_weight * grad.cell_gradients_adjoint(self.volumes[:, None, None] * X)

    def apply_term(self, term: PenaltyTerm, x: np.ndarray) -> np.ndarray:
        grad = self.gradient
        dq = np.einsum('cij,cij->c', term.C, grad.cell_gradients(x))
        return grad.cell_gradients_adjoint((term.second * dq)[:, None, None] * term.C)

    def apply(self, x: np.ndarray) -> np.ndarray:
        x = self.gradient.mesh.check_vector(x, "Hessian input")
        out = np.zeros(self.size)
        if self.length_weight:
            out += self.apply_length(x)
        for term in self.terms:
            out += self.apply_term(term, x)
        return out

    def diagonal_length(self) -> np.ndarray:
        return self.length_weight * self.gradient.diagonal_of_gradient_norm(self.volumes)

    def diagonal_term(self, name: str) -> np.ndarray:
        """Diagonal of one penalty contribution ('area' or 'volume'); zero if absent."""
        out = np.zeros(self.size)
        for term in self.terms:
            if term.name == name:
                out += self.gradient.diagonal_of_rank_one(term.second, term.C)
        return out

    def diagonal(self) -> np.ndarray:
        out = self.diagonal_length()
        for term in self.terms:
            out = out + self.gradient.diagonal_of_rank_one(term.second, term.C)
        return out

    def as_linear_operator(self) -> LinearOperator:
        n = self.size
        return LinearOperator((n, n), matvec=self.apply, rmatvec=self.apply, dtype=float)


class HyperElasticRegularizer:
    """
    Hyperelastic regularization on triangular (2-D) or tetrahedral (3-D) meshes.

    The assembled length matrix of the matrix-based mode is cached and
    rebuilt only when its weight, the problem size or the mesh changes.
    """

    def __init__(self, params: Optional[HyperElasticParameters] = None):
        self.params = params if params is not None else HyperElasticParameters()
        self.name = 'hyperElasticFEM'
        self.length_cache = MatrixCache()

    @property
    def _area_penalty(self):
        return AREA_PENALTIES[self.params.area_penalty]

    def length_matrix(self, mesh: SimplexMesh, gradient: Optional[FEMGradient] = None):
        """alpha_length * B^T diag(vol) B, assembled once per (weight, size, mesh)."""
        weight = self.params.length_weight
        gradient = gradient if gradient is not None else FEMGradient(mesh)

        def build():
            B = gradient.matrix()
            W = sparse.diags(np.tile(mesh.cell_volumes(), mesh.dim ** 2))
            return (weight * (B.T @ W @ B)).tocsr()

        return self.length_cache.get((weight, mesh.vector_size), mesh, build)

    def volume_term(self, G: np.ndarray, vol: np.ndarray, derivative: bool) -> PenaltyTerm:
        """Weighted psi(det grad y) per cell."""
        det = determinant(G)
        bad = int(np.count_nonzero(det <= 0))
        if bad:
            warnings.warn(
                f"{bad} cells have a non-positive Jacobian determinant; "
                "the volume penalty is unbounded there.",
                RuntimeWarning
            )
        f, df, d2f = psi(det, derivative)
        w = self.params.volume_weight * vol
        energy = float(np.sum(w * f))
        if not derivative:
            return PenaltyTerm('volume', energy, None, None, None)
        return PenaltyTerm('volume', energy, w * df, w * d2f, determinant_gradient(G))

    def area_terms(self, G: np.ndarray, vol: np.ndarray, derivative: bool) -> List[PenaltyTerm]:
        """
        Weighted phi(area) for the three face orientations of every cell.

        area_i = |cof(grad y) e_i|^2, the squared area of the deformed face
        with reference normal e_i.
        """
        if G.shape[1:] != (3, 3):
            raise ConfigurationError("The area term is only defined in 3-D")
        cof = cofactor(G)
        dcof = cofactor_derivative(G) if derivative else None
        w = self.params.area_weight * vol
        terms = []
        for i in range(3):
            area = np.sum(cof[:, :, i] ** 2, axis=1)
            f, df, d2f = self._area_penalty(area, derivative)
            energy = float(np.sum(w * f))
            if not derivative:
                terms.append(PenaltyTerm('area', energy, None, None, None))
                continue
            C = 2.0 * np.einsum('cx,cxkl->ckl', cof[:, :, i], dcof[:, :, i])
            terms.append(PenaltyTerm('area', energy, w * df, w * d2f, C))
        return terms

    def evaluate(self, uc: np.ndarray, y_ref: np.ndarray, mesh: SimplexMesh,
                 want_gradient: bool = True, want_hessian: bool = True) -> EnergyResult:
        """
        Hyperelastic energy with optional gradient and Hessian.

        Parameters
        ----------
        uc : np.ndarray
            Nodal displacement, component-major
        y_ref : np.ndarray
            Reference configuration, same layout
        mesh : SimplexMesh
            Finite-element mesh
        want_gradient, want_hessian : bool
            Skip the derivatives when not needed

        Returns
        -------
        result : EnergyResult
            hessian is a csr_matrix (matrix-based) or HyperElasticHessian
            (matrix-free), None when not requested
        """
        p = self.params
        uc = mesh.check_vector(uc, "uc")
        y_ref = mesh.check_vector(y_ref, "yRef")
        yc = y_ref + uc
        grad = FEMGradient(mesh)
        vol = mesh.cell_volumes()
        derivative = want_gradient or want_hessian

        G = grad.cell_gradients(yc)
        terms = []
        if mesh.dim == 3 and p.area_weight:
            terms.extend(self.area_terms(G, vol, derivative))
        if p.volume_weight:
            terms.append(self.volume_term(G, vol, derivative))

        if p.matrix_free:
            return self._evaluate_matrix_free(uc, grad, vol, terms, want_gradient, want_hessian)
        return self._evaluate_matrix_based(uc, grad, mesh, terms, want_gradient, want_hessian)

    def _evaluate_matrix_based(self, uc, grad, mesh, terms, want_gradient, want_hessian):
        n = mesh.vector_size
        value = 0.0
        gradient = np.zeros(n) if want_gradient else None
        hessian = sparse.csr_matrix((n, n)) if want_hessian else None

        if self.params.length_weight:
            A = self.length_matrix(mesh, grad)
            dS = A @ uc
            value += 0.5 * float(dS @ uc)
            if want_gradient:
                gradient += dS
            if want_hessian:
                hessian = hessian + A

        for term in terms:
            value += term.energy
            if not (want_gradient or want_hessian):
                continue
            J = grad.linearize(term.C)
            if want_gradient:
                gradient += J.T @ term.first
            if want_hessian:
                hessian = hessian + J.T @ sparse.diags(term.second) @ J

        if hessian is not None:
            hessian = hessian.tocsr()
        return EnergyResult(value, gradient, hessian)

    def _evaluate_matrix_free(self, uc, grad, vol, terms, want_gradient, want_hessian):
        weight = self.params.length_weight
        value = 0.0
        gradient = None

        dS = np.zeros(grad.mesh.vector_size)
        if weight:
            Bu = grad.cell_gradients(uc)
            dS += weight * grad.cell_gradients_adjoint(vol[:, None, None] * Bu)
            value += 0.5 * float(dS @ uc)
        for term in terms:
            value += term.energy
            if want_gradient:
                dS += grad.cell_gradients_adjoint(term.first[:, None, None] * term.C)
        if want_gradient:
            gradient = dS

        hessian = HyperElasticHessian(grad, weight, vol, terms) if want_hessian else None
        return EnergyResult(value, gradient, hessian)
