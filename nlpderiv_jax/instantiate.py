"""Synthesis of the derivative operators of a constrained problem.

:func:`instantiate_function` takes an objective, optional constraints, a
representative point and a backend configuration, and returns a
:class:`DerivativeBundle` holding one operator per derivative a constrained
optimizer needs:

- ``grad(out, x)``, ``hess(out, x)``, ``hv(out, x, v)``;
- ``fg(out, x) -> f(x)`` and ``fgh(out_grad, out_hess, x) -> f(x)``
  (fused, on request);
- ``cons(out, x)``, ``cons_j(out, x)``, ``cons_h(out_stack, x)``;
- ``cons_vjp(out, x, v)`` and ``cons_jvp(out, x, v)`` (on request);
- ``lag_h(out, x, sigma, lam, output="matrix" | "compact")``.

User-supplied operators are bound to ``params`` and used directly. All other
operators are prepared by the backend during construction, exactly once, and
only applied afterwards.
"""

from collections.abc import Callable, Sequence
from typing import Any, NamedTuple, Optional

import equinox as eqx
import numpy as np
from loguru import logger

from nlpderiv_jax.backends import ADBackend, BackendHandles, resolve_backends
from nlpderiv_jax.constraints import ConstraintHessianStack, out_of_place
from nlpderiv_jax.errors import ConfigurationError
from nlpderiv_jax.lagrangian import LagrangianHessian, build_lagrangian
from nlpderiv_jax.operators import (
    BoundLagrangianOverride,
    BoundObjective,
    BoundOverride,
    ConstraintJacobian,
    FusedValueGradientHessian,
    PreparedOperator,
    UserProvided,
    resolve_override,
    scalar_objective,
)
from nlpderiv_jax.sparsity import SparsityPattern
from nlpderiv_jax.types import ConstraintFn, FusedOperator, InPlaceOperator, ObjectiveFn
from nlpderiv_jax.utils import as_point, to_colors, to_pattern


class ObjectiveSpec(eqx.Module):
    """Objective function and optional user-supplied derivatives.

    Attributes:
        f: Objective ``f(x, params)`` returning a scalar or length-1 vector.
        grad: Optional gradient ``grad(out, x, params)``.
        hess: Optional Hessian ``hess(out, x, params)``.
        hv: Optional Hessian-vector product ``hv(out, x, v, params)``.
        fg: Optional fused ``fg(out_grad, x, params) -> f(x)``.
        fgh: Optional fused ``fgh(out_grad, out_hess, x, params) -> f(x)``.
        hess_prototype: Sparsity prototype of a user-supplied Hessian.
        hess_colorvec: Column coloring of ``hess_prototype``.
    """

    f: ObjectiveFn
    grad: Optional[InPlaceOperator] = None
    hess: Optional[InPlaceOperator] = None
    hv: Optional[InPlaceOperator] = None
    fg: Optional[FusedOperator] = None
    fgh: Optional[FusedOperator] = None
    hess_prototype: Any = None
    hess_colorvec: Any = None


class ConstraintSpec(eqx.Module):
    """In-place constraint function and optional user-supplied derivatives.

    Attributes:
        cons: Constraints ``cons(out, x, params)`` writing ``num_cons`` values.
        cons_j: Optional Jacobian ``cons_j(out, x, params)``.
        cons_h: Optional Hessian stack ``cons_h(out_stack, x, params)``.
        cons_vjp: Optional ``cons_vjp(out, x, v, params)`` computing ``J^T v``.
        cons_jvp: Optional ``cons_jvp(out, x, v, params)`` computing ``J v``.
        lag_h: Optional Lagrangian Hessian ``lag_h(out, x, sigma, lam, params)``.
        cons_jac_prototype: Sparsity prototype of a user-supplied Jacobian.
        cons_jac_colorvec: Column coloring of ``cons_jac_prototype``.
        cons_hess_prototype: One prototype per constraint Hessian.
        cons_hess_colorvec: One coloring per constraint Hessian.
        lag_hess_prototype: Sparsity prototype of a user-supplied ``lag_h``.
    """

    cons: ConstraintFn
    cons_j: Optional[InPlaceOperator] = None
    cons_h: Optional[InPlaceOperator] = None
    cons_vjp: Optional[InPlaceOperator] = None
    cons_jvp: Optional[InPlaceOperator] = None
    lag_h: Optional[InPlaceOperator] = None
    cons_jac_prototype: Any = None
    cons_jac_colorvec: Any = None
    cons_hess_prototype: Optional[Sequence[Any]] = None
    cons_hess_colorvec: Optional[Sequence[Any]] = None
    lag_hess_prototype: Any = None


class InstantiateOptions(eqx.Module):
    """Which optional operators to build.

    Attributes:
        fused_value_gradient: Build ``fg``.
        fused_value_gradient_hessian: Build ``fgh``.
        want_cons_vjp: Build ``cons_vjp``.
        want_cons_jvp: Build ``cons_jvp``.
        want_cons_hessian_stack: Build ``cons_h`` in sparse mode (always built
            in dense mode). Each constraint needs its own sparse preparation.
    """

    fused_value_gradient: bool = eqx.field(static=True, default=False)
    fused_value_gradient_hessian: bool = eqx.field(static=True, default=False)
    want_cons_vjp: bool = eqx.field(static=True, default=False)
    want_cons_jvp: bool = eqx.field(static=True, default=False)
    want_cons_hessian_stack: bool = eqx.field(static=True, default=False)


class DerivativeBundle(eqx.Module):
    """Derivative operators of one problem at one representative point.

    Operators that were not requested, or do not exist because there are no
    constraints, are ``None``. Prototype and colorvec entries describe the
    sparsity of ``hess``, ``cons_j``, ``cons_h`` and ``lag_h`` and are
    ``None`` when unknown.
    """

    f: Callable
    grad: Callable
    hess: Callable
    hv: Callable
    lag_h: Callable
    fg: Optional[Callable] = None
    fgh: Optional[Callable] = None
    cons: Optional[Callable] = None
    cons_j: Optional[Callable] = None
    cons_vjp: Optional[Callable] = None
    cons_jvp: Optional[Callable] = None
    cons_h: Optional[Callable] = None
    hess_prototype: Optional[SparsityPattern] = None
    hess_colorvec: Optional[np.ndarray] = None
    cons_jac_prototype: Optional[SparsityPattern] = None
    cons_jac_colorvec: Optional[np.ndarray] = None
    cons_hess_prototype: Optional[list[SparsityPattern]] = None
    cons_hess_colorvec: Optional[list[np.ndarray]] = None
    lag_hess_prototype: Optional[SparsityPattern] = None
    backend: ADBackend = eqx.field(static=True, default_factory=ADBackend)
    num_cons: int = eqx.field(static=True, default=0)


class ReInitCache(NamedTuple):
    """Initial point and parameters of a (re-)initialized solve."""

    u0: Any
    p: Any = None


def _check_fused_support(
    objective: ObjectiveSpec, handles: BackendHandles, options: InstantiateOptions
) -> None:
    requests = (
        (
            "fg",
            options.fused_value_gradient,
            objective.fg,
            handles.dense_first_order,
            "value_and_gradient",
        ),
        (
            "fgh",
            options.fused_value_gradient_hessian,
            objective.fgh,
            handles.second_order,
            "value_gradient_and_hessian",
        ),
    )
    for label, requested, override, backend, operator in requests:
        if requested and override is None and not backend.supports(operator):
            raise ConfigurationError(
                label,
                f"{operator} was requested but there is no user override and "
                f"the {backend.kind} backend does not provide it",
            )


def _patterns(prototypes: Optional[Sequence[Any]]) -> Optional[list[SparsityPattern]]:
    if prototypes is None:
        return None
    return [to_pattern(p) for p in prototypes]


def _colorvecs(colorvecs: Optional[Sequence[Any]]) -> Optional[list[np.ndarray]]:
    if colorvecs is None:
        return None
    return [to_colors(c) for c in colorvecs]


def instantiate_function(
    objective: ObjectiveSpec,
    constraint: Optional[ConstraintSpec] = None,
    x: Any = None,
    params: Any = None,
    num_cons: int = 0,
    backend: ADBackend = ADBackend(),
    options: InstantiateOptions = InstantiateOptions(),
) -> DerivativeBundle:
    """Build every derivative operator of a problem.

    Args:
        objective: The objective and its optional overrides.
        constraint: The constraints and their optional overrides, or ``None``.
        x: Representative point (1-D); fixes the shape of every operator.
        params: Problem parameters, passed last to every user function.
            Non-array leaves must be hashable.
        num_cons: Number of constraints.
        backend: Backend configuration.
        options: Optional operators to build.

    Returns:
        The assembled :class:`DerivativeBundle`.

    Raises:
        ConfigurationError: For invalid inputs, or a fused operator that
            neither the user nor the backend provides.
        BackendPreparationError: If a backend cannot differentiate a function
            at ``x``.
    """
    if x is None:
        raise ConfigurationError("instantiate", "a representative point is required")
    if num_cons < 0:
        raise ConfigurationError(
            "instantiate", f"num_cons must be >= 0, got {num_cons}"
        )
    if num_cons > 0 and constraint is None:
        raise ConfigurationError(
            "instantiate", f"num_cons={num_cons} but no constraint function was given"
        )
    x = as_point(x)
    if x.ndim != 1:
        raise ConfigurationError(
            "instantiate", f"the point must be 1-D, got shape {x.shape}"
        )

    handles = resolve_backends(backend)
    _check_fused_support(objective, handles, options)
    sparse_mode = backend.sparse
    synthesized, provided = [], []

    def bind(label, override, prototype=None):
        provided.append(label)
        return BoundOverride(
            label=label, fn=override.fn, params=params, prototype=prototype
        )

    def prepare(label, backend_, operator, fn):
        synthesized.append(label)
        prep = backend_.prepare(operator, fn, x, params, label=label)
        return PreparedOperator(backend=backend_, fn=fn, prep=prep, params=params)

    f = scalar_objective(objective.f)

    # Objective
    hess_prototype = to_pattern(objective.hess_prototype)
    hess_colorvec = to_colors(objective.hess_colorvec)

    grad_override = resolve_override(objective.grad)
    if isinstance(grad_override, UserProvided):
        grad = bind("grad", grad_override)
    else:
        grad = prepare("grad", handles.dense_first_order, "gradient", f)

    fg = None
    fg_override = resolve_override(objective.fg)
    if isinstance(fg_override, UserProvided):
        fg = bind("fg", fg_override)
    elif options.fused_value_gradient:
        fg = prepare("fg", handles.dense_first_order, "value_and_gradient", f)

    hess_override = resolve_override(objective.hess)
    if isinstance(hess_override, UserProvided):
        hess = bind("hess", hess_override, hess_prototype)
    else:
        hess = prepare("hess", handles.second_order, "hessian", f)
        if sparse_mode:
            hess_prototype, hess_colorvec = hess.sparsity, hess.colors

    fgh = None
    fgh_override = resolve_override(objective.fgh)
    if isinstance(fgh_override, UserProvided):
        fgh = bind("fgh", fgh_override)
    elif options.fused_value_gradient_hessian:
        fgh = FusedValueGradientHessian(
            prepare("fgh", handles.second_order, "value_gradient_and_hessian", f)
        )

    hv_override = resolve_override(objective.hv)
    if isinstance(hv_override, UserProvided):
        hv = bind("hv", hv_override)
    else:
        hv = prepare("hv", handles.dense_second_order, "hvp", f)

    # Constraints
    cons = cons_j = cons_vjp = cons_jvp = cons_h = cons_oop = None
    cons_jac_prototype = cons_jac_colorvec = None
    cons_hess_prototype = cons_hess_colorvec = None
    if constraint is not None and num_cons > 0:
        cons = BoundOverride(label="cons", fn=constraint.cons, params=params)
        cons_oop = out_of_place(constraint.cons, num_cons)
        cons_jac_prototype = to_pattern(constraint.cons_jac_prototype)
        cons_jac_colorvec = to_colors(constraint.cons_jac_colorvec)
        cons_hess_prototype = _patterns(constraint.cons_hess_prototype)
        cons_hess_colorvec = _colorvecs(constraint.cons_hess_colorvec)

        jac_override = resolve_override(constraint.cons_j)
        if isinstance(jac_override, UserProvided):
            jacobian = bind("cons_j", jac_override, cons_jac_prototype)
        else:
            jacobian = prepare("cons_j", handles.first_order, "jacobian", cons_oop)
            if sparse_mode:
                cons_jac_prototype = jacobian.sparsity
                cons_jac_colorvec = jacobian.colors
        cons_j = ConstraintJacobian(operator=jacobian, num_cons=num_cons)

        vjp_override = resolve_override(constraint.cons_vjp)
        if isinstance(vjp_override, UserProvided):
            cons_vjp = bind("cons_vjp", vjp_override)
        elif options.want_cons_vjp:
            cons_vjp = prepare(
                "cons_vjp", handles.dense_first_order, "pullback", cons_oop
            )

        jvp_override = resolve_override(constraint.cons_jvp)
        if isinstance(jvp_override, UserProvided):
            cons_jvp = bind("cons_jvp", jvp_override)
        elif options.want_cons_jvp:
            cons_jvp = prepare(
                "cons_jvp", handles.dense_first_order, "pushforward", cons_oop
            )

        hess_stack_override = resolve_override(constraint.cons_h)
        if isinstance(hess_stack_override, UserProvided):
            cons_h = bind("cons_h", hess_stack_override, cons_hess_prototype)
        elif not sparse_mode or options.want_cons_hessian_stack:
            synthesized.append("cons_h")
            cons_h = ConstraintHessianStack.prepare(
                handles.second_order, cons_oop, num_cons, x, params
            )
            if sparse_mode:
                cons_hess_prototype = [prep.sparsity for prep in cons_h.preps]
                cons_hess_colorvec = [prep.colors for prep in cons_h.preps]

    # Lagrangian
    lag_override = None
    if constraint is not None:
        lag_override = resolve_override(constraint.lag_h)
    if isinstance(lag_override, UserProvided):
        lag_hess_prototype = to_pattern(constraint.lag_hess_prototype)
        provided.append("lag_h")
        lag_h = BoundLagrangianOverride(
            fn=lag_override.fn,
            params=params,
            num_cons=num_cons,
            prototype=lag_hess_prototype,
        )
    else:
        synthesized.append("lag_h")
        lag_h = LagrangianHessian.prepare(
            handles.second_order,
            build_lagrangian(f, cons_oop),
            x,
            params,
            num_cons,
            cons_h=cons_h,
            cons_hess_prototype=cons_hess_prototype,
        )
        lag_hess_prototype = lag_h.pattern

    logger.info(
        "Instantiated derivative bundle for {} variables and {} constraints "
        "({} backend): synthesized {}, user-provided {}",
        x.shape[0],
        num_cons,
        backend.kind,
        synthesized,
        provided,
    )
    return DerivativeBundle(
        f=BoundObjective(fn=objective.f, params=params),
        grad=grad,
        hess=hess,
        hv=hv,
        lag_h=lag_h,
        fg=fg,
        fgh=fgh,
        cons=cons,
        cons_j=cons_j,
        cons_vjp=cons_vjp,
        cons_jvp=cons_jvp,
        cons_h=cons_h,
        hess_prototype=hess_prototype,
        hess_colorvec=hess_colorvec,
        cons_jac_prototype=cons_jac_prototype,
        cons_jac_colorvec=cons_jac_colorvec,
        cons_hess_prototype=cons_hess_prototype,
        cons_hess_colorvec=cons_hess_colorvec,
        lag_hess_prototype=lag_hess_prototype,
        backend=backend,
        num_cons=num_cons,
    )


def instantiate_from_cache(
    objective: ObjectiveSpec,
    constraint: Optional[ConstraintSpec],
    cache: ReInitCache,
    backend: ADBackend = ADBackend(),
    num_cons: int = 0,
    options: InstantiateOptions = InstantiateOptions(),
) -> DerivativeBundle:
    """Instantiate at the initial point and parameters held by ``cache``."""
    return instantiate_function(
        objective, constraint, cache.u0, cache.p, num_cons, backend, options
    )
