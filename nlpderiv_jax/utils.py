from typing import Any, Optional, Sequence, Union

import jax
import jax.numpy as jnp
import numpy as np
from scipy import sparse

from nlpderiv_jax.errors import ShapeMismatchError
from nlpderiv_jax.sparsity import SparsityPattern

Prototype = Union[SparsityPattern, Sequence[SparsityPattern], None]


def as_point(x: Any) -> jax.Array:
    """Convert ``x`` to a floating-point JAX array."""
    x = jnp.asarray(x)
    if not jnp.issubdtype(x.dtype, jnp.floating):
        x = x.astype(float)
    return x


def write_dense(out: Any, value: Any, label: str) -> Any:
    """Copy a dense result into the caller-owned buffer ``out``.

    ``out`` is either a numpy array of the same shape, or a COO array whose
    stored coordinates select the entries to keep.
    """
    value = np.asarray(value)
    if sparse.issparse(out):
        if out.format != "coo" or out.shape != value.shape:
            raise ShapeMismatchError(
                label,
                f"expected a COO buffer of shape {value.shape}, "
                f"got {out.format} of shape {out.shape}",
            )
        out.data[...] = value[out.row, out.col]
        return out
    if out.shape != value.shape:
        raise ShapeMismatchError(
            label, f"output buffer has shape {out.shape}, result has {value.shape}"
        )
    out[...] = value
    return out


def write_sparse(out: Any, values: Any, pattern: SparsityPattern, label: str) -> Any:
    """Scatter pattern-ordered ``values`` into ``out``.

    A COO buffer must carry exactly the pattern's coordinates (as built by
    :meth:`SparsityPattern.to_coo`); its data array is overwritten in place.
    A dense buffer is zeroed and filled at the pattern's coordinates.
    """
    values = np.asarray(values)
    if sparse.issparse(out):
        if (
            out.format != "coo"
            or out.shape != pattern.shape
            or not np.array_equal(out.row, pattern.rows)
            or not np.array_equal(out.col, pattern.cols)
        ):
            raise ShapeMismatchError(
                label, "sparse output buffer does not match the sparsity prototype"
            )
        out.data[...] = values
        return out
    if out.shape != pattern.shape:
        raise ShapeMismatchError(
            label,
            f"output buffer has shape {out.shape}, prototype has {pattern.shape}",
        )
    out[...] = 0
    out[pattern.rows, pattern.cols] = values
    return out


def check_prototype(out: Any, prototype: Prototype, label: str) -> None:
    """Check a user buffer against the declared prototype(s), if any."""
    if prototype is None:
        return
    if isinstance(prototype, SparsityPattern):
        if tuple(out.shape) != prototype.shape:
            raise ShapeMismatchError(
                label,
                f"output buffer has shape {tuple(out.shape)}, "
                f"prototype has {prototype.shape}",
            )
        return
    if len(out) != len(prototype):
        raise ShapeMismatchError(
            label, f"expected {len(prototype)} output buffers, got {len(out)}"
        )
    for i, (buffer, pattern) in enumerate(zip(out, prototype)):
        check_prototype(buffer, pattern, f"{label}[{i}]")


def to_pattern(prototype: Any) -> Optional[SparsityPattern]:
    if prototype is None:
        return None
    return SparsityPattern.from_matrix(prototype)


def to_colors(colorvec: Any) -> Optional[np.ndarray]:
    if colorvec is None:
        return None
    return np.asarray(colorvec, dtype=np.int64)
