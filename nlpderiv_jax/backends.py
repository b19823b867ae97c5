"""Automatic-differentiation backends with a prepare/apply contract.

A backend turns a function ``fn(x, *contexts)`` into derivative operators in
two phases:

1. ``prepare(operator, fn, x, *contexts)`` does the one-time work: it builds
   the derivative routine, traces and compiles it at the representative point
   ``x`` and, for sparse backends, detects the global sparsity pattern and
   colors it. The result is an immutable :class:`PreparedContext`.
2. ``apply(fn, out, x, prep, *contexts)`` is the hot path: it runs the
   compiled routine at a new point of the same shape and writes the result
   into the caller-owned buffer ``out``.

Differentiation is always with respect to ``x``; contexts (parameters,
Lagrangian weights) are passed through unchanged.

Three backends are provided:

- :class:`DenseBackend`: first-order operators in forward or reverse mode.
- :class:`SecondOrder`: Hessians and Hessian-vector products as an outer
  backend differentiating an inner backend's gradient.
- :class:`SparseBackend`: compressed Jacobians and Hessians through asdex
  sparsity detection, coloring and decompression.

:func:`resolve_backends` maps an :class:`ADBackend` configuration value to
the handles the operator factory uses.
"""

import abc
from collections.abc import Callable
from typing import Any, ClassVar, Literal, NamedTuple, Optional

import asdex
import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
from loguru import logger

from nlpderiv_jax.errors import (
    BackendPreparationError,
    ConfigurationError,
    ShapeMismatchError,
)
from nlpderiv_jax.sparsity import SparsityPattern, column_major_order
from nlpderiv_jax.utils import as_point, write_dense, write_sparse

FIRST_ORDER = frozenset(
    {"gradient", "value_and_gradient", "jacobian", "pullback", "pushforward"}
)
SECOND_ORDER = frozenset({"hessian", "hvp", "value_gradient_and_hessian"})

# Errors raised by JAX while tracing a function that cannot be differentiated
# at the given point (tracer bool conversion, shape errors, bad indexing)
# and by asdex for primitives it cannot analyse.
_PREPARATION_ERRORS = (TypeError, ValueError, IndexError, NotImplementedError)


class ADBackend(eqx.Module):
    """Configuration of the differentiation backend.

    Attributes:
        sparse: Exploit sparsity for Jacobians and Hessians.
        mode: AD mode for first-order operators (``"forward"`` or
            ``"reverse"``). Second-order operators use forward-over-``mode``.
    """

    sparse: bool = eqx.field(static=True, default=False)
    mode: Literal["forward", "reverse"] = eqx.field(static=True, default="reverse")

    def __check_init__(self):
        if self.mode not in ("forward", "reverse"):
            raise ConfigurationError(
                "backend", f"mode must be 'forward' or 'reverse', got {self.mode!r}"
            )

    @property
    def kind(self) -> str:
        return "sparse" if self.sparse else "dense"


class PreparedContext(eqx.Module):
    """Backend state produced once by ``prepare`` and consumed by ``apply``.

    Attributes:
        operator: Operator kind (``"gradient"``, ``"hessian"``, ...).
        label: Bundle entry the context was prepared for.
        fn: The function that was differentiated.
        kernel: Compiled derivative routine ``kernel(x, [v], *contexts)``.
        point_shape: Shape of the representative point.
        point_dtype: Dtype of the representative point.
        direction_shape: Shape of the direction vector, for directional
            operators (``"hvp"``, ``"pullback"``, ``"pushforward"``).
        sparsity: Detected pattern (sparse backends only).
        colors: 0-based colors asdex assigned for ``sparsity`` (sparse
            backends only).
    """

    operator: str = eqx.field(static=True)
    label: str = eqx.field(static=True)
    fn: Callable
    kernel: Callable
    point_shape: tuple[int, ...] = eqx.field(static=True)
    point_dtype: Any = eqx.field(static=True)
    direction_shape: Optional[tuple[int, ...]] = eqx.field(static=True, default=None)
    sparsity: Optional[SparsityPattern] = None
    colors: Optional[np.ndarray] = None


def _zero_direction(operator: str, fn: Callable, x: jax.Array, contexts: tuple):
    """Representative direction used to compile directional operators."""
    if operator in ("hvp", "pushforward"):
        return jnp.zeros_like(x)
    if operator == "pullback":
        out_struct = eqx.filter_eval_shape(fn, x, *contexts)
        return jnp.zeros(out_struct.shape, dtype=x.dtype)
    return None


class AbstractBackend(eqx.Module):
    """Common prepare/apply machinery shared by all backends."""

    kind: ClassVar[str]

    @abc.abstractmethod
    def supports(self, operator: str) -> bool:
        """Whether ``prepare`` can build ``operator``."""

    @abc.abstractmethod
    def _build(
        self, operator: str, fn: Callable, x: jax.Array, contexts: tuple
    ) -> tuple[Callable, Optional[SparsityPattern], Optional[np.ndarray]]:
        """Return the compiled kernel plus optional pattern and coloring."""

    def prepare(
        self,
        operator: str,
        fn: Callable,
        x: Any,
        *contexts: Any,
        label: Optional[str] = None,
    ) -> PreparedContext:
        """Prepare ``operator`` for ``fn`` at the representative point ``x``.

        The kernel is traced and compiled here, so any failure to
        differentiate ``fn`` surfaces immediately.

        Raises:
            ConfigurationError: If this backend does not provide ``operator``.
            BackendPreparationError: If ``fn`` cannot be differentiated at ``x``.
        """
        label = operator if label is None else label
        if not self.supports(operator):
            raise ConfigurationError(
                label, f"the {self.kind} backend cannot prepare a {operator}"
            )
        x = as_point(x)
        logger.debug(
            "Preparing {} for {} ({} backend, point shape {})",
            operator,
            label,
            self.kind,
            x.shape,
        )
        try:
            kernel, sparsity, colors = self._build(operator, fn, x, contexts)
            direction = _zero_direction(operator, fn, x, contexts)
            if direction is None:
                kernel(x, *contexts)
            else:
                kernel(x, direction, *contexts)
        except _PREPARATION_ERRORS as exc:
            raise BackendPreparationError(
                label, f"could not prepare {operator}: {exc}"
            ) from exc

        return PreparedContext(
            operator=operator,
            label=label,
            fn=fn,
            kernel=kernel,
            point_shape=tuple(x.shape),
            point_dtype=x.dtype,
            direction_shape=None if direction is None else tuple(direction.shape),
            sparsity=sparsity,
            colors=colors,
        )

    def apply(
        self,
        fn: Callable,
        out: Any,
        x: Any,
        prep: PreparedContext,
        *contexts: Any,
        direction: Any = None,
    ) -> Any:
        """Evaluate a prepared operator at ``x`` and write it into ``out``.

        Returns:
            ``out``, or the objective value for the fused operators
            (``out`` is then a tuple of gradient and Hessian buffers for
            ``"value_gradient_and_hessian"``).
        """
        if fn is not prep.fn:
            raise ConfigurationError(
                prep.label, "prepared context belongs to a different function"
            )
        x = jnp.asarray(x, dtype=prep.point_dtype)
        if tuple(x.shape) != prep.point_shape:
            raise ShapeMismatchError(
                prep.label,
                f"point has shape {tuple(x.shape)}, "
                f"context was prepared for {prep.point_shape}",
            )
        args = (x,)
        if prep.direction_shape is not None:
            if direction is None:
                raise ConfigurationError(
                    prep.label, f"{prep.operator} requires a direction vector"
                )
            direction = jnp.asarray(direction, dtype=prep.point_dtype)
            if tuple(direction.shape) != prep.direction_shape:
                raise ShapeMismatchError(
                    prep.label,
                    f"direction has shape {tuple(direction.shape)}, "
                    f"expected {prep.direction_shape}",
                )
            args = (x, direction)

        logger.trace("Applying {} for {}", prep.operator, prep.label)
        result = prep.kernel(*args, *contexts)
        return self._emit(prep, out, result)

    def _emit(self, prep: PreparedContext, out: Any, result: Any) -> Any:
        if prep.operator == "value_and_gradient":
            value, gradient = result
            write_dense(out, gradient, prep.label)
            return float(value)
        if prep.operator == "value_gradient_and_hessian":
            value, gradient, hessian = result
            out_grad, out_hess = out
            write_dense(out_grad, gradient, prep.label)
            write_dense(out_hess, hessian, prep.label)
            return float(value)
        return write_dense(out, result, prep.label)


class DenseBackend(AbstractBackend):
    """Dense first-order differentiation with ``jax.grad``/``jacfwd``/``jacrev``.

    Attributes:
        mode: ``"reverse"`` (default) or ``"forward"``.
    """

    mode: Literal["forward", "reverse"] = eqx.field(static=True, default="reverse")

    kind: ClassVar[str] = "dense"

    def supports(self, operator: str) -> bool:
        return operator in FIRST_ORDER

    def derivative(self, operator: str, fn: Callable) -> Callable:
        """Uncompiled derivative routine of ``fn`` for ``operator``."""
        reverse = self.mode == "reverse"
        if operator == "gradient":
            return jax.grad(fn) if reverse else jax.jacfwd(fn)
        if operator == "value_and_gradient":
            if reverse:
                return jax.value_and_grad(fn)
            gradient = jax.jacfwd(fn)

            def value_and_gradient(x, *contexts):
                return fn(x, *contexts), gradient(x, *contexts)

            return value_and_gradient
        if operator == "jacobian":
            return jax.jacrev(fn) if reverse else jax.jacfwd(fn)
        if operator == "pushforward":

            def pushforward(x, v, *contexts):
                return jax.jvp(lambda y: fn(y, *contexts), (x,), (v,))[1]

            return pushforward
        if operator == "pullback":

            def pullback(x, v, *contexts):
                _, vjp_fn = jax.vjp(lambda y: fn(y, *contexts), x)
                return vjp_fn(v)[0]

            return pullback
        raise ConfigurationError(
            operator, f"the dense {self.mode}-mode backend has no {operator}"
        )

    def _build(self, operator, fn, x, contexts):
        return eqx.filter_jit(self.derivative(operator, fn)), None, None


class SecondOrder(AbstractBackend):
    """Second-order differentiation as ``outer`` applied to ``inner``'s gradient.

    First-order operators are delegated to ``inner``.

    Attributes:
        outer: Backend differentiating the gradient (forward by default).
        inner: Backend computing the gradient.
    """

    outer: DenseBackend = eqx.field(
        default_factory=lambda: DenseBackend(mode="forward")
    )
    inner: DenseBackend = eqx.field(
        default_factory=lambda: DenseBackend(mode="reverse")
    )

    kind: ClassVar[str] = "dense"

    def supports(self, operator: str) -> bool:
        return operator in FIRST_ORDER or operator in SECOND_ORDER

    def derivative(self, operator: str, fn: Callable) -> Callable:
        if operator in FIRST_ORDER:
            return self.inner.derivative(operator, fn)
        gradient = self.inner.derivative("gradient", fn)
        if operator == "hessian":
            return self.outer.derivative("jacobian", gradient)
        if operator == "hvp":
            # H is symmetric, so a pullback of the gradient is also H @ v
            if self.outer.mode == "forward":
                return self.outer.derivative("pushforward", gradient)
            return self.outer.derivative("pullback", gradient)
        if operator == "value_gradient_and_hessian":
            hessian = self.outer.derivative("jacobian", gradient)

            def value_gradient_and_hessian(x, *contexts):
                return fn(x, *contexts), gradient(x, *contexts), hessian(x, *contexts)

            return value_gradient_and_hessian
        raise ConfigurationError(
            operator, f"the second-order backend has no {operator}"
        )

    def _build(self, operator, fn, x, contexts):
        return eqx.filter_jit(self.derivative(operator, fn)), None, None


class SparseBackend(AbstractBackend):
    """Sparsity-exploiting Jacobians and Hessians built on asdex.

    Preparation runs asdex's global sparsity detection on the jaxpr of
    ``fn`` with the contexts fixed, colors the pattern, and compiles a kernel
    that evaluates the compressed derivative and returns its nonzeros in
    column-major pattern order. The detected pattern holds for every input,
    including entries that cancel or sit on an untaken branch at the
    representative point.

    Attributes:
        dense: Dense backend this one stands in for. A :class:`SecondOrder`
            backend is required for Hessians.
    """

    dense: AbstractBackend

    kind: ClassVar[str] = "sparse"

    def supports(self, operator: str) -> bool:
        if operator == "jacobian":
            return self.dense.supports("jacobian")
        if operator == "hessian":
            return self.dense.supports("hessian")
        return False

    def _build(self, operator, fn, x, contexts):
        if operator == "jacobian":
            coloring, decompress = asdex.jacobian_coloring, asdex.jacobian_from_coloring
        else:
            coloring, decompress = asdex.hessian_coloring, asdex.hessian_from_coloring
        colored = coloring(lambda y: fn(y, *contexts), x)

        @eqx.filter_jit
        def derivative(x, *contexts):
            return decompress(lambda y: fn(y, *contexts), colored)(x)

        # Stored coordinates of the BCOO result fix the order of its data
        sample = derivative(x, *contexts)
        indices = np.asarray(sample.indices)
        order = column_major_order(indices[:, 0], indices[:, 1])
        pattern = SparsityPattern.from_coordinates(
            indices[:, 0], indices[:, 1], sample.shape
        )
        colors = np.asarray(colored.colors, dtype=np.int64)
        n_colors = int(colors.max()) + 1 if colors.size else 0

        def compressed(x, *contexts):
            return derivative(x, *contexts).data[order]

        logger.debug(
            "Detected {} nonzeros in a {}x{} {} pattern, {} colors",
            pattern.nnz,
            pattern.shape[0],
            pattern.shape[1],
            operator,
            n_colors,
        )
        return eqx.filter_jit(compressed), pattern, colors

    def _emit(self, prep, out, result):
        return write_sparse(out, result, prep.sparsity, prep.label)


class BackendHandles(NamedTuple):
    """Backends used by the operator factory.

    Attributes:
        first_order: Backend for gradients, Jacobians, VJPs and JVPs.
        second_order: Backend for Hessians and Hessian-vector products.
        first_order_fallback: Dense first-order backend (sparse mode only).
        second_order_fallback: Dense second-order backend (sparse mode only).
    """

    first_order: AbstractBackend
    second_order: AbstractBackend
    first_order_fallback: Optional[DenseBackend] = None
    second_order_fallback: Optional[SecondOrder] = None

    @property
    def dense_first_order(self) -> AbstractBackend:
        if self.first_order_fallback is not None:
            return self.first_order_fallback
        return self.first_order

    @property
    def dense_second_order(self) -> AbstractBackend:
        if self.second_order_fallback is not None:
            return self.second_order_fallback
        return self.second_order


def resolve_backends(config: ADBackend) -> BackendHandles:
    """Build the backend handles described by ``config``.

    Dense mode uses ``mode`` for first-order operators and forward-over-``mode``
    for second-order ones. Sparse mode wraps both in :class:`SparseBackend`
    and keeps the dense versions as fallbacks for operators that do not
    benefit from sparsity (gradients, HVPs, VJPs and JVPs).
    """
    first_order = DenseBackend(mode=config.mode)
    second_order = SecondOrder(outer=DenseBackend(mode="forward"), inner=first_order)
    if not config.sparse:
        return BackendHandles(first_order=first_order, second_order=second_order)

    return BackendHandles(
        first_order=SparseBackend(dense=first_order),
        second_order=SparseBackend(dense=second_order),
        first_order_fallback=first_order,
        second_order_fallback=second_order,
    )
