"""Unit tests for in-place constraint adapters and the constraint Hessian stack."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from nlpderiv_jax.backends import ADBackend, SecondOrder, resolve_backends
from nlpderiv_jax.constraints import (
    ConstraintBuffer,
    ConstraintHessianStack,
    out_of_place,
    scalar_projections,
)
from nlpderiv_jax.errors import ShapeMismatchError

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)


def quadratic_constraints(out, x, params):
    out[0] = x[0] ** 2 + 2.0 * x[1] ** 2
    out[1] = x[0] * x[1] + 3.0 * x[1] ** 2


def scaled_constraints(out, x, params):
    out[:] = params["scale"] * x[:2] ** 3


class TestConstraintBuffer:
    """Tests for the traceable in-place buffer."""

    def test_item_assignment_rebinds(self):
        buffer = ConstraintBuffer(jnp.zeros(3))
        before = buffer.value
        buffer[1] = 5.0

        np.testing.assert_array_equal(buffer.value, [0.0, 5.0, 0.0])
        np.testing.assert_array_equal(before, np.zeros(3))
        assert buffer[1] == 5.0
        assert len(buffer) == 3
        assert buffer.shape == (3,)

    def test_slice_assignment(self):
        buffer = ConstraintBuffer(jnp.zeros(4))
        buffer[1:3] = jnp.array([1.0, 2.0])
        np.testing.assert_array_equal(buffer.value, [0.0, 1.0, 2.0, 0.0])


class TestOutOfPlace:
    """Tests for the out-of-place constraint evaluator."""

    def test_values(self):
        cons_oop = out_of_place(quadratic_constraints, 2)
        c = cons_oop(jnp.array([1.0, 2.0]), None)
        np.testing.assert_allclose(c, [9.0, 14.0])

    def test_is_differentiable(self):
        cons_oop = out_of_place(quadratic_constraints, 2)
        J = jax.jacfwd(cons_oop)(jnp.array([1.0, 2.0]), None)
        np.testing.assert_allclose(J, [[2.0, 8.0], [2.0, 13.0]])

    def test_under_jit_with_params(self):
        cons_oop = jax.jit(out_of_place(scaled_constraints, 2))
        c = cons_oop(jnp.array([1.0, 2.0, 3.0]), {"scale": 2.0})
        np.testing.assert_allclose(c, [2.0, 16.0])

    def test_fresh_buffer_per_call(self):
        """Unwritten entries are zero on every call."""

        def partial(out, x, params):
            if params:
                out[0] = x[0]
            out[1] = x[1]

        cons_oop = out_of_place(partial, 2)
        np.testing.assert_allclose(cons_oop(jnp.array([3.0, 4.0]), True), [3.0, 4.0])
        np.testing.assert_allclose(cons_oop(jnp.array([3.0, 4.0]), False), [0.0, 4.0])

    def test_dtype_follows_point(self):
        cons_oop = out_of_place(quadratic_constraints, 2)
        c = cons_oop(jnp.array([1.0, 2.0], dtype=jnp.float32), None)
        assert c.dtype == jnp.float32


class TestScalarProjections:
    """Tests for per-constraint scalar functions."""

    def test_projections(self):
        cons_oop = out_of_place(quadratic_constraints, 2)
        projections = scalar_projections(cons_oop, 2)
        x = jnp.array([1.0, 2.0])

        assert len(projections) == 2
        np.testing.assert_allclose(projections[0](x, None), 9.0)
        np.testing.assert_allclose(projections[1](x, None), 14.0)
        np.testing.assert_allclose(
            jax.hessian(projections[1])(x, None), [[0.0, 1.0], [1.0, 6.0]]
        )


class TestConstraintHessianStack:
    """Tests for the per-constraint Hessian operator."""

    expected = np.array([[[2.0, 0.0], [0.0, 4.0]], [[0.0, 1.0], [1.0, 6.0]]])

    def test_dense_stack_array(self, log_messages):
        cons_oop = out_of_place(quadratic_constraints, 2)
        stack = ConstraintHessianStack.prepare(
            SecondOrder(), cons_oop, 2, jnp.array([0.5, 0.5]), None
        )
        preparing = [m for m in log_messages if m.startswith("Preparing")]
        assert len(preparing) == 2
        assert "cons_h[0]" in preparing[0] and "cons_h[1]" in preparing[1]

        out = np.zeros((2, 2, 2))
        result = stack(out, np.array([3.0, -1.0]))

        assert result is out
        np.testing.assert_allclose(out, self.expected)

    def test_sequence_of_buffers(self):
        cons_oop = out_of_place(quadratic_constraints, 2)
        stack = ConstraintHessianStack.prepare(
            SecondOrder(), cons_oop, 2, jnp.ones(2), None
        )

        out = [np.zeros((2, 2)), np.zeros((2, 2))]
        stack(out, np.ones(2))

        np.testing.assert_allclose(out[0], self.expected[0])
        np.testing.assert_allclose(out[1], self.expected[1])

    def test_sparse_stack_reports_patterns(self):
        handles = resolve_backends(ADBackend(sparse=True))
        cons_oop = out_of_place(quadratic_constraints, 2)
        stack = ConstraintHessianStack.prepare(
            handles.second_order, cons_oop, 2, jnp.ones(2), None
        )

        np.testing.assert_array_equal(
            stack.preps[0].sparsity.to_mask(), np.eye(2, dtype=bool)
        )
        assert stack.preps[1].sparsity.nnz == 3

        out = [prep.sparsity.to_coo() for prep in stack.preps]
        stack(out, np.ones(2))

        np.testing.assert_allclose(out[0].toarray(), self.expected[0])
        np.testing.assert_allclose(out[1].toarray(), self.expected[1])

    def test_wrong_number_of_buffers_raises(self):
        cons_oop = out_of_place(quadratic_constraints, 2)
        stack = ConstraintHessianStack.prepare(
            SecondOrder(), cons_oop, 2, jnp.ones(2), None
        )
        with pytest.raises(ShapeMismatchError):
            stack([np.zeros((2, 2))], np.ones(2))
