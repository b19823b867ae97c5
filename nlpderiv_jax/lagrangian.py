"""Lagrangian and its Hessian.

The Lagrangian of the problem is

    L(x, sigma, lambda) = sigma * f(x) + lambda^T c(x)

with ``sigma`` the objective weight and ``lambda`` the constraint
multipliers. Its Hessian with respect to ``x`` is prepared once, at the
representative point with ``sigma = 1`` and ``lambda = 1``, and then
evaluated for arbitrary weights.

When ``sigma == 0`` exactly only constraint curvature is requested. If a
per-constraint Hessian stack is available, it is evaluated and combined as
``sum_i lambda_i * H_i`` instead of running the Lagrangian Hessian.
"""

from collections.abc import Callable
from typing import Any, Literal, Optional, Sequence

import equinox as eqx
import jax.numpy as jnp
import numpy as np
from scipy import sparse

from nlpderiv_jax.backends import AbstractBackend, PreparedContext
from nlpderiv_jax.compact import compact_upper_triangle
from nlpderiv_jax.errors import ConfigurationError, ShapeMismatchError
from nlpderiv_jax.sparsity import SparsityPattern
from nlpderiv_jax.types import OutOfPlaceConstraintFn, ScalarFn
from nlpderiv_jax.utils import write_dense


def build_lagrangian(
    objective: ScalarFn, cons_oop: Optional[OutOfPlaceConstraintFn]
) -> ScalarFn:
    """Build ``lagrangian(x, sigma, lam, params)``.

    Without constraints the Lagrangian is the weighted objective alone.
    """

    def lagrangian(x, sigma, lam, params):
        value = sigma * objective(x, params)
        if cons_oop is not None:
            value = value + jnp.dot(lam, cons_oop(x, params))
        return value

    return lagrangian


class LagrangianHessian(eqx.Module):
    """Hessian of the Lagrangian, as a dense matrix or a compact vector.

    Called as ``lag_h(out, x, sigma=1.0, lam=None, output="matrix")``:

    - ``output="matrix"`` writes the full symmetric Hessian into ``out``
      (a dense array, or a COO array built from ``pattern``);
    - ``output="compact"`` writes the upper-triangular structural nonzeros
      into the flat vector ``out``, in ``pattern`` order.

    Attributes:
        backend: Backend that prepared ``prep``.
        lagrangian: The differentiated function.
        prep: Prepared Hessian context.
        params: Problem parameters.
        num_cons: Number of constraints.
        pattern: Structural nonzeros of the Hessian.
        cons_h: Per-constraint Hessian operator used when ``sigma == 0``.
        cons_hess_prototype: Patterns of the per-constraint Hessians.
    """

    backend: AbstractBackend
    lagrangian: Callable
    prep: PreparedContext
    params: Any
    num_cons: int = eqx.field(static=True)
    pattern: SparsityPattern
    cons_h: Optional[Callable] = None
    cons_hess_prototype: Optional[Sequence[SparsityPattern]] = None

    @classmethod
    def prepare(
        cls,
        backend: AbstractBackend,
        lagrangian: Callable,
        x: Any,
        params: Any,
        num_cons: int,
        cons_h: Optional[Callable] = None,
        cons_hess_prototype: Optional[Sequence[SparsityPattern]] = None,
    ) -> "LagrangianHessian":
        # Sparse patterns are structural, so these weights only fix dtypes
        sigma = jnp.asarray(1.0, dtype=x.dtype)
        lam = jnp.ones((num_cons,), dtype=x.dtype)
        prep = backend.prepare(
            "hessian", lagrangian, x, sigma, lam, params, label="lag_h"
        )
        if prep.sparsity is not None:
            pattern = prep.sparsity
        else:
            pattern = SparsityPattern.dense((x.shape[0], x.shape[0]))
        return cls(
            backend=backend,
            lagrangian=lagrangian,
            prep=prep,
            params=params,
            num_cons=num_cons,
            pattern=pattern,
            cons_h=cons_h,
            cons_hess_prototype=cons_hess_prototype,
        )

    def __call__(
        self,
        out: Any,
        x: Any,
        sigma: Any = 1.0,
        lam: Any = None,
        output: Literal["matrix", "compact"] = "matrix",
    ) -> Any:
        if output not in ("matrix", "compact"):
            raise ConfigurationError(
                "lag_h", f"output must be 'matrix' or 'compact', got {output!r}"
            )
        dtype = self.prep.point_dtype
        if lam is None:
            lam = np.ones((self.num_cons,), dtype=dtype)
        lam = jnp.asarray(lam, dtype=dtype)
        if lam.shape != (self.num_cons,):
            raise ShapeMismatchError(
                "lag_h",
                f"multipliers have shape {lam.shape}, expected ({self.num_cons},)",
            )

        if float(sigma) == 0.0 and self.cons_h is not None:
            hessian = self._constraint_curvature(x, np.asarray(lam))
            if output == "compact":
                return compact_upper_triangle(
                    hessian, self.pattern, out, label="lag_h"
                )
            if sparse.issparse(hessian):
                hessian = hessian.toarray()
            return write_dense(out, hessian, "lag_h")

        sigma = jnp.asarray(sigma, dtype=dtype)
        if output == "matrix":
            return self.backend.apply(
                self.lagrangian, out, x, self.prep, sigma, lam, self.params
            )
        if self.prep.sparsity is not None:
            scratch = self.pattern.to_coo(dtype=dtype)
        else:
            scratch = np.zeros(self.pattern.shape, dtype=dtype)
        self.backend.apply(
            self.lagrangian, scratch, x, self.prep, sigma, lam, self.params
        )
        return compact_upper_triangle(scratch, self.pattern, out, label="lag_h")

    def _constraint_curvature(self, x: Any, lam: np.ndarray) -> Any:
        """``sum_i lam[i] * H_i`` from the per-constraint Hessian stack."""
        n = self.pattern.shape[0]
        dtype = self.prep.point_dtype
        if self.cons_hess_prototype is not None:
            stack = [p.to_coo(dtype=dtype) for p in self.cons_hess_prototype]
        else:
            stack = np.zeros((self.num_cons, n, n), dtype=dtype)
        self.cons_h(stack, x)

        combined = None
        for weight, hessian in zip(lam, stack):
            term = hessian * float(weight)
            combined = term if combined is None else combined + term
        return combined
