"""Unit tests for the Lagrangian Hessian operator."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from nlpderiv_jax.backends import ADBackend, SecondOrder, resolve_backends
from nlpderiv_jax.compact import expand_upper_triangle
from nlpderiv_jax.constraints import ConstraintHessianStack, out_of_place
from nlpderiv_jax.errors import ConfigurationError, ShapeMismatchError
from nlpderiv_jax.lagrangian import LagrangianHessian, build_lagrangian

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)


def objective(x, params):
    return jnp.sum(x**4) + x[0] * x[-1]


def band_constraints(out, x, params):
    out[0] = x[0] * x[1] + x[2] ** 2
    out[1] = jnp.sin(x[2]) * x[3]
    out[2] = x[3] ** 3 - x[4]


def reference_hessian(x, sigma, lam):
    cons_oop = out_of_place(band_constraints, 3)
    lagrangian = build_lagrangian(objective, cons_oop)
    return np.asarray(jax.hessian(lagrangian)(jnp.asarray(x), sigma, lam, None))


def make_operator(backend_config, with_stack=True):
    handles = resolve_backends(backend_config)
    cons_oop = out_of_place(band_constraints, 3)
    x0 = jnp.linspace(0.3, 1.5, 5)
    cons_h = None
    prototypes = None
    if with_stack:
        cons_h = ConstraintHessianStack.prepare(
            handles.second_order, cons_oop, 3, x0, None
        )
        if backend_config.sparse:
            prototypes = [prep.sparsity for prep in cons_h.preps]
    return LagrangianHessian.prepare(
        handles.second_order,
        build_lagrangian(objective, cons_oop),
        x0,
        None,
        3,
        cons_h=cons_h,
        cons_hess_prototype=prototypes,
    )


class TestBuildLagrangian:
    """Tests for the Lagrangian function itself."""

    def test_value(self):
        cons_oop = out_of_place(band_constraints, 3)
        lagrangian = build_lagrangian(objective, cons_oop)
        x = jnp.linspace(0.3, 1.5, 5)
        lam = jnp.array([1.0, -2.0, 0.5])

        expected = 2.0 * objective(x, None) + jnp.dot(lam, cons_oop(x, None))
        np.testing.assert_allclose(lagrangian(x, 2.0, lam, None), expected)

    def test_without_constraints(self):
        lagrangian = build_lagrangian(objective, None)
        x = jnp.ones(5)
        np.testing.assert_allclose(
            lagrangian(x, 3.0, jnp.zeros(0), None), 3.0 * objective(x, None)
        )


@pytest.mark.parametrize("sparse", [False, True])
class TestLagrangianHessian:
    """Tests for matrix and compact evaluation in dense and sparse modes."""

    def test_matrix_matches_reference(self, sparse):
        lag_h = make_operator(ADBackend(sparse=sparse))
        rng = np.random.default_rng(0)
        for _ in range(3):
            x = rng.uniform(0.1, 2.0, 5)
            sigma = float(rng.uniform(0.1, 3.0))
            lam = rng.standard_normal(3)
            out = np.zeros((5, 5))
            lag_h(out, x, sigma, lam)
            np.testing.assert_allclose(
                out, reference_hessian(x, sigma, lam), atol=1e-10
            )

    def test_compact_expands_to_reference(self, sparse):
        lag_h = make_operator(ADBackend(sparse=sparse))
        rng = np.random.default_rng(1)
        n_upper = lag_h.pattern.upper_triangle().nnz
        if not sparse:
            assert n_upper == 15
        for _ in range(3):
            x = rng.uniform(0.1, 2.0, 5)
            sigma = float(rng.uniform(0.1, 3.0))
            lam = rng.standard_normal(3)
            out = np.zeros(n_upper)
            lag_h(out, x, sigma, lam, output="compact")
            np.testing.assert_allclose(
                expand_upper_triangle(out, lag_h.pattern),
                reference_hessian(x, sigma, lam),
                atol=1e-10,
            )

    def test_zero_sigma_uses_constraint_stack(self, sparse, log_messages):
        """With sigma == 0 the Lagrangian context is never applied."""
        lag_h = make_operator(ADBackend(sparse=sparse))
        log_messages.clear()

        x = np.array([0.4, 1.1, 0.7, 1.3, 0.2])
        lam = np.array([0.5, -1.0, 2.0])
        out = np.zeros((5, 5))
        lag_h(out, x, 0.0, lam)

        assert not any("for lag_h" in m for m in log_messages)
        assert sum("for cons_h[" in m for m in log_messages) == 3
        np.testing.assert_allclose(out, reference_hessian(x, 0.0, lam), atol=1e-10)

        compact = np.zeros(lag_h.pattern.upper_triangle().nnz)
        lag_h(compact, x, 0.0, lam, output="compact")
        np.testing.assert_allclose(
            expand_upper_triangle(compact, lag_h.pattern),
            reference_hessian(x, 0.0, lam),
            atol=1e-10,
        )

    def test_zero_sigma_without_stack(self, sparse, log_messages):
        """Without a stack the prepared Lagrangian Hessian serves sigma == 0."""
        lag_h = make_operator(ADBackend(sparse=sparse), with_stack=False)
        log_messages.clear()

        x = np.array([0.4, 1.1, 0.7, 1.3, 0.2])
        lam = np.array([0.5, -1.0, 2.0])
        out = np.zeros((5, 5))
        lag_h(out, x, 0.0, lam)

        assert sum("for lag_h" in m for m in log_messages) == 1
        np.testing.assert_allclose(out, reference_hessian(x, 0.0, lam), atol=1e-10)

    def test_default_multipliers_are_ones(self, sparse):
        lag_h = make_operator(ADBackend(sparse=sparse))
        x = np.linspace(0.3, 1.5, 5)
        out = np.zeros((5, 5))
        lag_h(out, x)
        np.testing.assert_allclose(
            out, reference_hessian(x, 1.0, np.ones(3)), atol=1e-10
        )

    def test_wrong_multiplier_length_raises(self, sparse):
        lag_h = make_operator(ADBackend(sparse=sparse))
        with pytest.raises(ShapeMismatchError):
            lag_h(np.zeros((5, 5)), np.ones(5), 1.0, np.ones(2))


class TestLagrangianHessianDetails:
    """Tests for preparation and output handling."""

    def test_prepared_once(self, log_messages):
        lag_h = make_operator(ADBackend(), with_stack=False)
        out = np.zeros((5, 5))
        for sigma in (0.5, 1.0, 2.0):
            lag_h(out, np.ones(5), sigma, np.ones(3))

        assert sum(m.startswith("Preparing") for m in log_messages) == 1
        assert sum(m.startswith("Applying") for m in log_messages) == 3

    def test_sparse_pattern_is_banded(self):
        lag_h = make_operator(ADBackend(sparse=True), with_stack=False)
        mask = lag_h.pattern.to_mask()

        assert mask[0, 4] and mask[4, 0]
        assert mask[2, 3] and not mask[1, 3]

    def test_sparse_matrix_into_coo_buffer(self):
        lag_h = make_operator(ADBackend(sparse=True), with_stack=False)
        x = np.linspace(0.5, 1.0, 5)
        lam = np.array([1.0, 2.0, 3.0])
        out = lag_h.pattern.to_coo()

        lag_h(out, x, 1.5, lam)

        np.testing.assert_allclose(
            out.toarray(), reference_hessian(x, 1.5, lam), atol=1e-10
        )

    def test_unknown_output_raises(self):
        lag_h = make_operator(ADBackend(), with_stack=False)
        with pytest.raises(ConfigurationError):
            lag_h(np.zeros((5, 5)), np.ones(5), output="lower")

    def test_wrong_compact_length_names_lag_h(self):
        lag_h = make_operator(ADBackend(), with_stack=False)
        with pytest.raises(ShapeMismatchError) as excinfo:
            lag_h(np.zeros(3), np.ones(5), output="compact")
        assert excinfo.value.operator == "lag_h"

    def test_without_constraints(self):
        lag_h = LagrangianHessian.prepare(
            SecondOrder(), build_lagrangian(objective, None), jnp.ones(3), None, 0
        )
        out = np.zeros((3, 3))
        lag_h(out, np.ones(3), 2.0, [])

        expected = 2.0 * np.asarray(jax.hessian(objective)(jnp.ones(3), None))
        np.testing.assert_allclose(out, expected)
