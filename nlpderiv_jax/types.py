"""Type definitions for nlpderiv-jax.

This module contains the type aliases for the user-facing callables.
Array types use jaxtyping so they can be checked at runtime with beartype.
"""

from collections.abc import Callable
from typing import Any, Union

from jaxtyping import Array, Float

# Type aliases for common array shapes
Scalar = Float[Array, ""]
Vector = Float[Array, " n"]

# Objective function: f(x, params) -> scalar (or a length-1 vector)
ObjectiveFn = Callable[[Vector, Any], Union[Scalar, Float[Array, " 1"]]]

# In-place constraint function: cons(out, x, params) writes m residuals into out
ConstraintFn = Callable[[Any, Vector, Any], None]

# Out-of-place constraint evaluator built from a ConstraintFn
# cons_oop(x, params) -> c(x)
OutOfPlaceConstraintFn = Callable[[Vector, Any], Float[Array, " m"]]

# User overrides write into a caller-owned buffer and receive params last:
#   grad(out, x, params)          hess(out, x, params)
#   hv(out, x, v, params)         cons_j(out, x, params)
#   cons_vjp(out, x, v, params)   cons_jvp(out, x, v, params)
#   cons_h(out_stack, x, params)  lag_h(out, x, sigma, lam, params)
InPlaceOperator = Callable[..., Any]

# Fused overrides additionally return the objective value:
#   fg(out_grad, x, params) -> f(x)
#   fgh(out_grad, out_hess, x, params) -> f(x)
FusedOperator = Callable[..., Any]

# Scalar function differentiated by a backend: fn(x, *contexts) -> scalar
ScalarFn = Callable[..., Scalar]
