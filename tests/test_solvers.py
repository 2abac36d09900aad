import numpy as np
import pytest
from scipy import sparse
from scipy.sparse.linalg import cg

from elastoreg import (
    StaggeredGrid,
    ElasticOperator,
    ElasticHessian,
    TetrahedralMesh,
    ElasticRegularizer,
    ElasticParameters,
    HyperElasticRegularizer,
    HyperElasticParameters,
    DimensionError,
    pcg_solve,
)


def hyperelastic_hessians(seed=30):
    mesh = TetrahedralMesh([0, 1, 0, 1, 0, 1], [2, 2, 2])
    u = 0.02 * np.random.default_rng(seed).standard_normal(mesh.vector_size)
    y_ref = mesh.node_coordinates()
    mf = HyperElasticRegularizer(HyperElasticParameters(matrix_free=True))
    mb = HyperElasticRegularizer(HyperElasticParameters(matrix_free=False))
    return mesh, mf.evaluate(u, y_ref, mesh).hessian, mb.evaluate(u, y_ref, mesh).hessian


def test_pcg_on_matrix_free_hyperelastic_hessian():
    mesh, H_mf, H_mb = hyperelastic_hessians()
    # the length term alone is singular on rigid translations
    shift = 1e-2
    A = H_mb.toarray() + shift * np.eye(mesh.vector_size)
    rhs = np.random.default_rng(31).standard_normal(mesh.vector_size)

    result = pcg_solve(H_mf, rhs, rtol=1e-10, maxiter=2000, shift=shift)
    assert result.converged
    assert 0 < result.iterations <= 2000
    assert result.residual_norm < 1e-8 * np.linalg.norm(rhs)
    expected = np.linalg.solve(A, rhs)
    assert np.linalg.norm(result.solution - expected) < 1e-6 * np.linalg.norm(expected)


def test_pcg_on_elastic_hessian_with_mass():
    grid = StaggeredGrid([0, 1, 0, 1], [8, 8])
    y = np.random.default_rng(32).random(grid.vector_size)
    reg = ElasticRegularizer(ElasticParameters(alpha=1.0, mu=1.0, lam=0.5), matrix_free=True)
    H = reg.evaluate(y, np.zeros_like(y), grid).hessian
    rhs = np.random.default_rng(33).standard_normal(grid.vector_size)

    result = pcg_solve(H, rhs, rtol=1e-10, maxiter=5000, shift=1.0)
    B = reg.matrix(grid)
    A = grid.hd * reg.params.alpha * (B.T @ B) + sparse.eye(grid.vector_size)
    assert result.converged
    assert np.linalg.norm(rhs - A @ result.solution) < 1e-8 * np.linalg.norm(rhs)


def test_pcg_iteration_cap_reports_failure():
    mesh, H_mf, _ = hyperelastic_hessians()
    rhs = np.ones(mesh.vector_size)
    result = pcg_solve(H_mf, rhs, rtol=1e-14, maxiter=1, shift=1e-3)
    assert not result.converged
    assert result.iterations == 1
    assert result.residual_norm > 0


def test_pcg_rejects_wrong_rhs_length():
    mesh, H_mf, _ = hyperelastic_hessians()
    with pytest.raises(DimensionError):
        pcg_solve(H_mf, np.ones(mesh.vector_size + 1))


def test_hessian_operators_plug_into_scipy_cg():
    mesh, H_mf, H_mb = hyperelastic_hessians(seed=34)
    # singular only on rigid translations, so a right-hand side in the range is solvable
    rhs = H_mb @ np.random.default_rng(35).standard_normal(mesh.vector_size)
    x, info = cg(H_mf.as_linear_operator(), rhs, rtol=1e-8, maxiter=2000)
    assert info == 0
    assert np.linalg.norm(H_mb @ x - rhs) < 1e-6 * np.linalg.norm(rhs)

    grid = StaggeredGrid([0, 1, 0, 1], [6, 6])
    H = ElasticHessian(ElasticOperator(grid), grid.hd, mass=1.0)
    y = np.random.default_rng(36).random(grid.vector_size)
    x, info = cg(H.as_linear_operator(), y, rtol=1e-10, maxiter=2000)
    assert info == 0
    np.testing.assert_allclose(H.apply(x), y, atol=1e-8)


def test_elastic_operator_as_linear_operator():
    grid = StaggeredGrid([0, 2, 0, 1, 0, 1], [3, 2, 2])
    op = ElasticOperator(grid, mu=1.5, lam=0.5)
    L = op.as_linear_operator()
    assert L.shape == op.shape
    rng = np.random.default_rng(37)
    y = rng.standard_normal(op.input_size)
    z = rng.standard_normal(op.output_size)
    np.testing.assert_allclose(L.matvec(y), op.apply(y))
    np.testing.assert_allclose(L.rmatvec(z), op.apply_adjoint(z))
