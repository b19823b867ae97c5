"""Compact upper-triangular storage for symmetric Hessians.

Interior-point and SQP solvers commonly receive the Hessian of the
Lagrangian as a flat vector holding only its upper-triangular structural
nonzeros. The position of each entry is fixed by the sparsity pattern:

    k-th entry = H[row_k, col_k]

where ``(row_k, col_k)`` is the k-th coordinate of the pattern with
``row_k <= col_k``, taken in the pattern's own discovery order. Solvers
address the vector positionally, so any reordering would silently corrupt
the Hessian they see.
"""

from typing import Any, Optional

import numpy as np
from beartype import beartype
from jaxtyping import Float, Int, jaxtyped
from scipy import sparse

from nlpderiv_jax.errors import ShapeMismatchError
from nlpderiv_jax.sparsity import SparsityPattern


def _entries(
    hessian: Any,
    rows: Int[np.ndarray, " k"],
    cols: Int[np.ndarray, " k"],
) -> np.ndarray:
    """Read ``hessian[rows, cols]`` from a dense or scipy.sparse matrix."""
    if not sparse.issparse(hessian):
        return np.asarray(hessian)[rows, cols]

    coo = sparse.coo_array(hessian, copy=True)
    coo.sum_duplicates()
    n_cols = coo.shape[1]
    keys = coo.row.astype(np.int64) * n_cols + coo.col
    order = np.argsort(keys, kind="stable")
    keys = keys[order]
    data = coo.data[order]

    wanted = rows.astype(np.int64) * n_cols + cols
    values = np.zeros(wanted.shape, dtype=coo.dtype)
    if keys.size == 0:
        return values
    pos = np.searchsorted(keys, wanted)
    found = (pos < keys.size) & (keys[np.minimum(pos, keys.size - 1)] == wanted)
    values[found] = data[pos[found]]
    return values


@jaxtyped(typechecker=beartype)
def compact_upper_triangle(
    hessian: Any,
    pattern: SparsityPattern,
    out: Optional[Float[np.ndarray, " k"]] = None,
    label: str = "compact",
) -> Float[np.ndarray, " k"]:
    """Extract the upper-triangular nonzeros of ``hessian`` in pattern order.

    Args:
        hessian: Symmetric ``n x n`` matrix, dense or scipy.sparse.
        pattern: Sparsity pattern of ``hessian``; its coordinate order
            defines the layout of the result.
        out: Optional caller-owned vector to fill in place.
        label: Operator named in shape errors.

    Returns:
        The compact vector (``out`` when given).

    Raises:
        ShapeMismatchError: If ``hessian`` does not have the pattern's shape
            or ``out`` has the wrong length.
    """
    if tuple(hessian.shape) != pattern.shape:
        raise ShapeMismatchError(
            label,
            f"Hessian has shape {tuple(hessian.shape)}, pattern has {pattern.shape}",
        )
    upper = pattern.upper_triangle()
    values = _entries(hessian, upper.rows, upper.cols)

    if out is None:
        return np.asarray(values, dtype=np.result_type(values.dtype, np.float32))
    if out.shape != (upper.nnz,):
        raise ShapeMismatchError(
            label,
            f"compact buffer has shape {out.shape}, expected ({upper.nnz},)",
        )
    out[...] = values
    return out


@jaxtyped(typechecker=beartype)
def expand_upper_triangle(
    values: Float[np.ndarray, " k"],
    pattern: SparsityPattern,
    label: str = "compact",
) -> Float[np.ndarray, "n n"]:
    """Rebuild the dense symmetric matrix from its compact vector."""
    upper = pattern.upper_triangle()
    if values.shape != (upper.nnz,):
        raise ShapeMismatchError(
            label,
            f"compact vector has shape {values.shape}, expected ({upper.nnz},)",
        )
    dense = np.zeros(pattern.shape, dtype=values.dtype)
    dense[upper.rows, upper.cols] = values
    dense[upper.cols, upper.rows] = values
    return dense
