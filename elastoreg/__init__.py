"""
Elastic Registration Regularizers

Regularization operators and solvers for deformable image registration:
- Linear elasticity on staggered grids, matrix-based and matrix-free
- Hyperelastic (length, area, volume) energies on simplex meshes
- Geometric multigrid V-cycles for (M + alpha * hd * B^T B) u = f

All operators are usable through their action on vectors only, so large
3-D problems never assemble B^T B.
"""

from .base import (
    MeshDescriptor,
    EnergyResult,
    MatrixCache,
    DimensionError,
    ConfigurationError,
    HierarchyError,
)
from .geometry import StaggeredGrid, TriangularMesh, TetrahedralMesh, elastic_matrix
from .operators import ElasticOperator, ElasticHessian, FEMGradient
from .parameters import ElasticParameters, HyperElasticParameters
from .elastic import ElasticRegularizer
from .hyperelastic import HyperElasticRegularizer, HyperElasticHessian
from .multigrid import MultigridHierarchy, MultigridOptions, MultigridResult, vcycle, solve
from .solvers import pcg_solve

__all__ = [
    'MeshDescriptor',
    'EnergyResult',
    'MatrixCache',
    'DimensionError',
    'ConfigurationError',
    'HierarchyError',
    'StaggeredGrid',
    'TriangularMesh',
    'TetrahedralMesh',
    'elastic_matrix',
    'ElasticOperator',
    'ElasticHessian',
    'FEMGradient',
    'ElasticParameters',
    'HyperElasticParameters',
    'ElasticRegularizer',
    'HyperElasticRegularizer',
    'HyperElasticHessian',
    'MultigridHierarchy',
    'MultigridOptions',
    'MultigridResult',
    'vcycle',
    'solve',
    'pcg_solve',
]
