"""
Tests for the hyperelastic regularizer

Matrix-based and matrix-free evaluation must agree on energy, gradient,
Hessian action and Hessian diagonal.
"""

import threading
import unittest
import warnings
import numpy as np
import pytest
from scipy import sparse

from elastoreg import (
    MatrixCache,
    TriangularMesh,
    TetrahedralMesh,
    FEMGradient,
    HyperElasticRegularizer,
    HyperElasticParameters,
    HyperElasticHessian,
    ConfigurationError,
    DimensionError,
)


def make_displacement(mesh, scale=0.05, seed=0):
    """Small random displacement keeping every cell orientation-preserving."""
    return scale * np.random.default_rng(seed).standard_normal(mesh.vector_size)


def directional_fd(fn, u, v, eps=1e-6):
    return (fn(u + eps * v) - fn(u - eps * v)) / (2 * eps)


class HyperElasticModeEquivalence:
    """Shared checks; subclasses provide self.mesh."""

    weights = dict(alpha=1.0, alpha_length=1.0, alpha_area=1.0, alpha_volume=1.0)

    def setUp(self):
        self.y_ref = self.mesh.node_coordinates()
        self.u = make_displacement(self.mesh)
        self.mb = HyperElasticRegularizer(HyperElasticParameters(matrix_free=False, **self.weights))
        self.mf = HyperElasticRegularizer(HyperElasticParameters(matrix_free=True, **self.weights))

    def test_energy_and_gradient_agree(self):
        s_mb, ds_mb, _ = self.mb.evaluate(self.u, self.y_ref, self.mesh)
        s_mf, ds_mf, _ = self.mf.evaluate(self.u, self.y_ref, self.mesh)
        self.assertAlmostEqual(s_mb, s_mf, delta=1e-10 * abs(s_mb))
        np.testing.assert_allclose(ds_mf, ds_mb, rtol=1e-8, atol=1e-10)

    def test_hessian_action_agrees(self):
        d2s_mb = self.mb.evaluate(self.u, self.y_ref, self.mesh).hessian
        d2s_mf = self.mf.evaluate(self.u, self.y_ref, self.mesh).hessian
        self.assertIsInstance(d2s_mf, HyperElasticHessian)
        z = np.random.default_rng(7).random(self.mesh.vector_size)
        np.testing.assert_allclose(d2s_mf.apply(z), d2s_mb @ z, rtol=1e-8, atol=1e-10)

    def test_diagonal_agrees(self):
        d2s_mb = self.mb.evaluate(self.u, self.y_ref, self.mesh).hessian
        d2s_mf = self.mf.evaluate(self.u, self.y_ref, self.mesh).hessian
        np.testing.assert_allclose(d2s_mf.diagonal(), d2s_mb.diagonal(), rtol=1e-8, atol=1e-12)

    def test_gradient_matches_finite_differences(self):
        v = np.random.default_rng(9).standard_normal(self.mesh.vector_size)

        def energy(u):
            return self.mb.evaluate(u, self.y_ref, self.mesh, want_gradient=False,
                                    want_hessian=False).value

        fd = directional_fd(energy, self.u, v)
        ds = self.mb.evaluate(self.u, self.y_ref, self.mesh, want_hessian=False).gradient
        self.assertAlmostEqual(ds @ v, fd, delta=1e-6 * max(abs(fd), 1.0))

    def test_identity_has_zero_energy(self):
        zero = np.zeros(self.mesh.vector_size)
        for reg in (self.mb, self.mf):
            s, ds, _ = reg.evaluate(zero, self.y_ref, self.mesh)
            self.assertAlmostEqual(s, 0.0, delta=1e-12)
            np.testing.assert_allclose(ds, 0.0, atol=1e-10)


class TestHyperElastic2D(HyperElasticModeEquivalence, unittest.TestCase):
    def setUp(self):
        self.mesh = TriangularMesh([0, 10, 0, 8], [8, 6])
        super().setUp()


class TestHyperElastic3D(HyperElasticModeEquivalence, unittest.TestCase):
    def setUp(self):
        self.mesh = TetrahedralMesh([0, 10, 0, 8, 0, 4], [3, 4, 2])
        super().setUp()


class TestHyperElastic3DConvexArea(HyperElasticModeEquivalence, unittest.TestCase):
    weights = dict(alpha=2.0, alpha_length=0.5, alpha_area=3.0, alpha_volume=0.5,
                   area_penalty='convex')

    def setUp(self):
        self.mesh = TetrahedralMesh([0, 1, 0, 1, 0, 1], [2, 2, 2])
        super().setUp()
        self.u = make_displacement(self.mesh, scale=0.02, seed=4)


def test_length_term_is_quadratic_form():
    mesh = TriangularMesh([0, 1, 0, 1], [6, 5])
    params = HyperElasticParameters(alpha=2.0, alpha_length=1.5, alpha_area=0.0, alpha_volume=0.0)
    reg = HyperElasticRegularizer(params)
    u = make_displacement(mesh, seed=1)
    result = reg.evaluate(u, mesh.node_coordinates(), mesh)

    G = FEMGradient(mesh).cell_gradients(u)
    expected = 0.5 * 3.0 * np.sum(mesh.cell_volumes() * np.sum(G ** 2, axis=(1, 2)))
    assert abs(result.value - expected) < 1e-12 * expected

    # the length Hessian is exact, so it matches differences of the gradient
    v = np.random.default_rng(2).standard_normal(mesh.vector_size)

    def gradient(w):
        return reg.evaluate(w, mesh.node_coordinates(), mesh, want_hessian=False).gradient

    np.testing.assert_allclose(result.hessian @ v, directional_fd(gradient, u, v), rtol=1e-6, atol=1e-8)


def test_area_term_is_zero_in_2d():
    mesh = TriangularMesh([0, 1, 0, 1], [4, 4])
    u = make_displacement(mesh, scale=0.01)
    only_area = HyperElasticParameters(alpha_length=0.0, alpha_area=5.0, alpha_volume=0.0)
    result = HyperElasticRegularizer(only_area).evaluate(u, mesh.node_coordinates(), mesh)
    assert result.value == 0.0
    np.testing.assert_array_equal(result.gradient, 0.0)


def test_area_term_rejects_2d_gradients():
    reg = HyperElasticRegularizer()
    with pytest.raises(ConfigurationError):
        reg.area_terms(np.tile(np.eye(2), (3, 1, 1)), np.ones(3), derivative=True)


def test_length_matrix_cache_invalidation():
    mesh = TetrahedralMesh([0, 1, 0, 1, 0, 1], [2, 2, 1])
    reg = HyperElasticRegularizer(HyperElasticParameters(alpha_area=0.0, alpha_volume=0.0))
    u = make_displacement(mesh)
    y_ref = mesh.node_coordinates()

    first = reg.evaluate(u, y_ref, mesh).value
    reg.evaluate(u, y_ref, mesh)
    assert reg.length_cache.builds == 1

    reg.params = HyperElasticParameters(alpha_length=2.0, alpha_area=0.0, alpha_volume=0.0)
    second = reg.evaluate(u, y_ref, mesh).value
    assert reg.length_cache.builds == 2
    assert abs(second - 2.0 * first) < 1e-12 * second

    other = TetrahedralMesh([0, 2, 0, 1, 0, 1], [2, 2, 1])
    reg.evaluate(u, other.node_coordinates(), other)
    assert reg.length_cache.builds == 3


def test_derivatives_omitted_on_cheap_path():
    mesh = TetrahedralMesh([0, 1, 0, 1, 0, 1], [1, 1, 1])
    u = make_displacement(mesh, scale=0.01)
    for matrix_free in (False, True):
        reg = HyperElasticRegularizer(HyperElasticParameters(matrix_free=matrix_free))
        result = reg.evaluate(u, mesh.node_coordinates(), mesh, want_gradient=False, want_hessian=False)
        assert result.gradient is None and result.hessian is None
        assert result.value > 0


def test_folded_cells_warn_and_propagate():
    mesh = TriangularMesh([0, 1, 0, 1], [2, 2])
    y_ref = mesh.node_coordinates()
    # mirror the first coordinate: det = -1 everywhere
    u = np.zeros(mesh.vector_size)
    u[:mesh.num_points] = -2.0 * y_ref[:mesh.num_points]
    reg = HyperElasticRegularizer(HyperElasticParameters(alpha_length=0.0))
    with pytest.warns(RuntimeWarning, match="non-positive Jacobian"):
        result = reg.evaluate(u, y_ref, mesh)
    # psi(-1) = 16 on a unit area
    assert abs(result.value - 16.0) < 1e-10


def test_no_warning_for_regular_deformation():
    mesh = TriangularMesh([0, 1, 0, 1], [3, 3])
    u = make_displacement(mesh, scale=0.01)
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        HyperElasticRegularizer().evaluate(u, mesh.node_coordinates(), mesh)


def test_rejects_wrong_length():
    mesh = TriangularMesh([0, 1, 0, 1], [3, 3])
    with pytest.raises(DimensionError):
        HyperElasticRegularizer().evaluate(np.zeros(5), mesh.node_coordinates(), mesh)


def test_parameters_from_registration_keys():
    params = HyperElasticParameters.from_mapping(
        {'alpha': 2.0, 'alphaLength': 0.0, 'alphaArea': 1.0, 'alphaVolume': 3.0, 'matrixFree': True}
    )
    assert params.length_weight == 0.0
    assert params.area_weight == 1.0
    assert params.volume_weight == 6.0
    assert params.matrix_free
    with pytest.raises(ConfigurationError):
        HyperElasticParameters.from_mapping({'alphaShear': 1.0})
    with pytest.raises(ConfigurationError):
        HyperElasticParameters(area_penalty='quartic')
    with pytest.raises(ConfigurationError):
        HyperElasticParameters(alpha_volume=-1.0)


def test_node_array_layout_is_rejected():
    mesh = TriangularMesh([0, 1, 0, 1], [2, 2])
    reg = HyperElasticRegularizer()
    # (nnodes, dim) arrays are not the component-major vector layout
    with pytest.raises(DimensionError):
        reg.evaluate(np.zeros_like(mesh.nodes), mesh.nodes, mesh)
    with pytest.raises(DimensionError):
        reg.evaluate(np.zeros(mesh.vector_size), mesh.nodes, mesh)
    # a single column is still a flat vector
    y_ref = mesh.node_coordinates()
    column = reg.evaluate(np.zeros((mesh.vector_size, 1)), y_ref, mesh).value
    assert abs(column) < 1e-12


def test_term_diagonals_match_assembled_terms():
    mesh = TetrahedralMesh([0, 1, 0, 1, 0, 1], [2, 2, 1])
    grad = FEMGradient(mesh)
    params = HyperElasticParameters(alpha=1.5, alpha_area=2.0, alpha_volume=0.5, matrix_free=True)
    u = make_displacement(mesh, scale=0.03, seed=5)
    hessian = HyperElasticRegularizer(params).evaluate(u, mesh.node_coordinates(), mesh).hessian

    for name in ('area', 'volume'):
        expected = np.zeros(mesh.vector_size)
        for term in hessian.terms:
            if term.name == name:
                J = grad.linearize(term.C)
                expected += (J.T @ sparse.diags(term.second) @ J).diagonal()
        np.testing.assert_allclose(hessian.diagonal_term(name), expected, rtol=1e-10, atol=1e-14)

    combined = hessian.diagonal_length() + hessian.diagonal_term('area') + hessian.diagonal_term('volume')
    np.testing.assert_allclose(hessian.diagonal(), combined, rtol=1e-12)
    np.testing.assert_array_equal(hessian.diagonal_term('shear'), 0.0)


def test_invalidate_forces_rebuild():
    mesh = TriangularMesh([0, 1, 0, 1], [3, 3])
    reg = HyperElasticRegularizer(HyperElasticParameters(alpha_volume=0.0))
    first = reg.length_matrix(mesh)
    assert reg.length_matrix(mesh) is first
    reg.length_cache.invalidate()
    second = reg.length_matrix(mesh)
    assert second is not first
    assert reg.length_cache.builds == 2
    assert abs(second - first).max() == 0.0


def test_shared_length_cache_under_concurrent_weights():
    mesh = TriangularMesh([0, 1, 0, 1], [4, 4])
    cache = MatrixCache()
    weights = (1.0, 3.0)
    regs = []
    for w in weights:
        reg = HyperElasticRegularizer(HyperElasticParameters(alpha_length=w))
        reg.length_cache = cache
        regs.append(reg)

    B = FEMGradient(mesh).matrix()
    W = sparse.diags(np.tile(mesh.cell_volumes(), mesh.dim ** 2))
    reference = (B.T @ W @ B).toarray()

    mismatches = []
    barrier = threading.Barrier(len(regs))

    def worker(reg, w):
        barrier.wait()
        for _ in range(50):
            A = reg.length_matrix(mesh).toarray()
            if not np.allclose(A, w * reference, rtol=1e-12, atol=1e-12):
                mismatches.append(w)

    threads = [threading.Thread(target=worker, args=(reg, w)) for reg, w in zip(regs, weights)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert mismatches == []
    assert cache.builds >= 1
