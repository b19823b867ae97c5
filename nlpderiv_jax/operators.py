"""Operator functors stored in a :class:`~nlpderiv_jax.DerivativeBundle`.

Each bundle entry is resolved once, at construction, from a tagged union:

- :class:`UserProvided`: the user supplied the operator. It is bound to the
  problem parameters as a :class:`BoundOverride` and called as-is.
- :class:`Synthesize`: the operator is computed by a backend. It is
  prepared once and wrapped in a :class:`PreparedOperator`, whose call is a
  single ``apply`` on the prepared context.

Every functor writes into caller-owned buffers and returns them, except the
fused value operators, which return the objective value.
"""

from collections.abc import Callable
from typing import Any, Optional, Union

import equinox as eqx
import jax.numpy as jnp
import numpy as np
from scipy import sparse

from nlpderiv_jax.backends import AbstractBackend, PreparedContext
from nlpderiv_jax.utils import Prototype, check_prototype


class UserProvided(eqx.Module):
    """Operator supplied by the user."""

    fn: Callable


class Synthesize(eqx.Module):
    """Operator to be computed by the AD backend."""


Override = Union[UserProvided, Synthesize]


def resolve_override(fn: Optional[Callable]) -> Override:
    return Synthesize() if fn is None else UserProvided(fn)


class BoundObjective(eqx.Module):
    """The objective with its parameters bound: ``f(x) -> value``."""

    fn: Callable
    params: Any

    def __call__(self, x: Any) -> Any:
        return self.fn(x, self.params)


def scalar_objective(fn: Callable) -> Callable:
    """``fn(x, params)`` reduced to a scalar (accepts length-1 outputs)."""

    def objective(x, params):
        return jnp.ravel(fn(x, params))[0]

    return objective


class BoundOverride(eqx.Module):
    """User operator ``fn(out, *args, params)`` with ``params`` bound.

    The output buffer is checked against the declared prototype (if any)
    before ``fn`` runs.
    """

    label: str = eqx.field(static=True)
    fn: Callable
    params: Any
    prototype: Prototype = None

    def __call__(self, out: Any, *args: Any) -> Any:
        check_prototype(out, self.prototype, self.label)
        result = self.fn(out, *args, self.params)
        return out if result is None else result


class BoundLagrangianOverride(eqx.Module):
    """User Lagrangian Hessian ``lag_h(out, x, sigma, lam, params)``.

    Accepts the same call as the synthesized operator. The ``output`` tag is
    not forwarded: the user function receives the same arguments for both
    output kinds and is expected to recognise a compact buffer by its shape.
    """

    fn: Callable
    params: Any
    num_cons: int = eqx.field(static=True)
    prototype: Prototype = None

    def __call__(
        self,
        out: Any,
        x: Any,
        sigma: Any = 1.0,
        lam: Any = None,
        output: str = "matrix",
    ) -> Any:
        if output == "matrix":
            check_prototype(out, self.prototype, "lag_h")
        if lam is None:
            lam = np.ones((self.num_cons,))
        result = self.fn(out, x, sigma, lam, self.params)
        return out if result is None else result


class PreparedOperator(eqx.Module):
    """Backend-computed operator: one ``apply`` per call.

    Called as ``op(out, x)`` or, for directional operators, ``op(out, x, v)``.
    """

    backend: AbstractBackend
    fn: Callable
    prep: PreparedContext
    params: Any

    def __call__(self, out: Any, x: Any, direction: Any = None) -> Any:
        return self.backend.apply(
            self.fn, out, x, self.prep, self.params, direction=direction
        )

    @property
    def sparsity(self):
        return self.prep.sparsity

    @property
    def colors(self):
        return self.prep.colors


class FusedValueGradientHessian(eqx.Module):
    """``fgh(out_grad, out_hess, x) -> f(x)`` on top of a prepared operator."""

    operator: PreparedOperator

    def __call__(self, out_grad: Any, out_hess: Any, x: Any) -> Any:
        return self.operator((out_grad, out_hess), x)


class ConstraintJacobian(eqx.Module):
    """Constraint Jacobian with the single-constraint shape rule.

    With one constraint the Jacobian is returned as a vector of length ``n``
    rather than a ``1 x n`` matrix. The caller may pass either shape as the
    output buffer, and a dense buffer's result is a view of it.

    A scipy COO buffer is filled in place and returned as is, keeping its
    ``1 x n`` shape: a COO array cannot be reshaped without a copy, and a
    copy would detach the result from the caller's buffer.
    """

    operator: Callable
    num_cons: int = eqx.field(static=True)

    def __call__(self, out: Any, x: Any) -> Any:
        if self.num_cons != 1:
            return self.operator(out, x)
        if sparse.issparse(out):
            self.operator(out, x)
            return out
        target = out.reshape(1, -1) if np.ndim(out) == 1 else out
        self.operator(target, x)
        return out.reshape(-1)
