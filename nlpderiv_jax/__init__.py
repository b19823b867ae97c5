"""nlpderiv-jax: derivative operators for constrained optimization in JAX.

This package builds every derivative operator a nonlinear constrained
optimizer needs from an objective, optional in-place constraints and a
representative point: gradient, Hessian, Hessian-vector product, constraint
Jacobian, per-constraint Hessians, constraint VJP/JVP and the Hessian of the
Lagrangian (as a dense matrix or a compact upper-triangular vector).

Backend work (tracing, compilation, sparsity detection and coloring) is done
once per operator when the bundle is built; calling an operator afterwards
only runs the compiled kernel and writes into a caller-owned buffer.
"""

from nlpderiv_jax.backends import (
    ADBackend,
    BackendHandles,
    DenseBackend,
    PreparedContext,
    SecondOrder,
    SparseBackend,
    resolve_backends,
)
from nlpderiv_jax.compact import compact_upper_triangle, expand_upper_triangle
from nlpderiv_jax.constraints import (
    ConstraintBuffer,
    ConstraintHessianStack,
    out_of_place,
    scalar_projections,
)
from nlpderiv_jax.errors import (
    BackendPreparationError,
    ConfigurationError,
    DerivativeError,
    ShapeMismatchError,
)
from nlpderiv_jax.instantiate import (
    ConstraintSpec,
    DerivativeBundle,
    InstantiateOptions,
    ObjectiveSpec,
    ReInitCache,
    instantiate_from_cache,
    instantiate_function,
)
from nlpderiv_jax.lagrangian import LagrangianHessian, build_lagrangian
from nlpderiv_jax.sparsity import SparsityPattern
from nlpderiv_jax.types import (
    ConstraintFn,
    InPlaceOperator,
    ObjectiveFn,
    OutOfPlaceConstraintFn,
)

__all__ = [
    # Entry points
    "instantiate_function",
    "instantiate_from_cache",
    "ObjectiveSpec",
    "ConstraintSpec",
    "InstantiateOptions",
    "DerivativeBundle",
    "ReInitCache",
    # Backends
    "ADBackend",
    "BackendHandles",
    "DenseBackend",
    "SecondOrder",
    "SparseBackend",
    "PreparedContext",
    "resolve_backends",
    # Constraints
    "ConstraintBuffer",
    "ConstraintHessianStack",
    "out_of_place",
    "scalar_projections",
    # Lagrangian
    "LagrangianHessian",
    "build_lagrangian",
    # Sparsity
    "SparsityPattern",
    "compact_upper_triangle",
    "expand_upper_triangle",
    # Errors
    "DerivativeError",
    "BackendPreparationError",
    "ShapeMismatchError",
    "ConfigurationError",
    # Types
    "ObjectiveFn",
    "ConstraintFn",
    "OutOfPlaceConstraintFn",
    "InPlaceOperator",
]
