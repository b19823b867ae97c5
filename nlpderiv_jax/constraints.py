"""Derived forms of an in-place constraint function.

Users describe constraints as ``cons(out, x, params)``, writing ``num_cons``
residuals into ``out``. Backends differentiate array-producing functions, so
this module provides:

- :class:`ConstraintBuffer`, a traceable stand-in for ``out``;
- :func:`out_of_place`, turning the in-place function into
  ``cons_oop(x, params) -> c(x)``;
- :func:`scalar_projections`, one scalar function per constraint, used to
  prepare an independent Hessian for each constraint;
- :class:`ConstraintHessianStack`, the operator that evaluates those
  Hessians into a stack of caller-owned buffers.
"""

import functools
from collections.abc import Callable
from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp
from jaxtyping import Array, Float

from nlpderiv_jax.backends import AbstractBackend, PreparedContext
from nlpderiv_jax.errors import ShapeMismatchError
from nlpderiv_jax.types import ConstraintFn, OutOfPlaceConstraintFn, Vector


class ConstraintBuffer:
    """Mutable view over an immutable JAX array.

    Item assignment rebinds the wrapped array to an updated copy, so an
    in-place constraint function can run under ``jit``/``grad`` tracing.

    Attributes:
        value: Current contents of the buffer.
    """

    def __init__(self, value: jax.Array):
        self.value = value

    def __setitem__(self, index, item):
        self.value = self.value.at[index].set(item)

    def __getitem__(self, index):
        return self.value[index]

    def __len__(self) -> int:
        return self.value.shape[0]

    @property
    def shape(self) -> tuple[int, ...]:
        return self.value.shape

    @property
    def dtype(self):
        return self.value.dtype


def out_of_place(cons: ConstraintFn, num_cons: int) -> OutOfPlaceConstraintFn:
    """Build ``cons_oop(x, params)`` from an in-place constraint function.

    Each call allocates a fresh buffer, lets ``cons`` fill it and returns the
    resulting immutable array.
    """

    def cons_oop(x: Vector, params: Any) -> Float[Array, " m"]:
        buffer = ConstraintBuffer(jnp.zeros((num_cons,), dtype=x.dtype))
        cons(buffer, x, params)
        return buffer.value

    return cons_oop


def _project(cons_oop: OutOfPlaceConstraintFn, index: int, x, params):
    return cons_oop(x, params)[index]


def scalar_projections(
    cons_oop: OutOfPlaceConstraintFn, num_cons: int
) -> list[Callable[[Vector, Any], Float[Array, ""]]]:
    """One scalar function ``(x, params) -> c_i(x)`` per constraint."""
    return [functools.partial(_project, cons_oop, i) for i in range(num_cons)]


class ConstraintHessianStack(eqx.Module):
    """Per-constraint Hessians, each from its own prepared context.

    Called as ``cons_h(out, x)`` where ``out`` is an ``(m, n, n)`` array or a
    sequence of ``m`` buffers (dense arrays or COO arrays built from the
    constraint's sparsity prototype). ``out[i]`` receives the Hessian of
    constraint ``i``.
    """

    backend: AbstractBackend
    projections: list[Callable]
    preps: list[PreparedContext]
    params: Any

    @classmethod
    def prepare(
        cls,
        backend: AbstractBackend,
        cons_oop: OutOfPlaceConstraintFn,
        num_cons: int,
        x: Vector,
        params: Any,
    ) -> "ConstraintHessianStack":
        projections = scalar_projections(cons_oop, num_cons)
        preps = [
            backend.prepare("hessian", projection, x, params, label=f"cons_h[{i}]")
            for i, projection in enumerate(projections)
        ]
        return cls(backend=backend, projections=projections, preps=preps, params=params)

    def __call__(self, out: Any, x: Any) -> Any:
        if len(out) != len(self.preps):
            raise ShapeMismatchError(
                "cons_h", f"expected {len(self.preps)} output buffers, got {len(out)}"
            )
        for i, (projection, prep) in enumerate(zip(self.projections, self.preps)):
            self.backend.apply(projection, out[i], x, prep, self.params)
        return out
