"""Sparsity patterns of Jacobians and Hessians.

A :class:`SparsityPattern` lists the structurally nonzero coordinates of a
Jacobian or Hessian in *discovery order*. Every pattern produced here is
stored column-major (by column, then by row), which is the order a
compressed-sparse-column walk yields. Downstream consumers index compact
vectors positionally, so this order must never be re-sorted.

Patterns come either from a user prototype (:meth:`SparsityPattern.from_matrix`)
or from asdex's global jaxpr analysis, which the sparse backend converts with
:meth:`SparsityPattern.from_coordinates`.
"""

from typing import Any, Optional

import equinox as eqx
import numpy as np
from jaxtyping import Int
from scipy import sparse

from nlpderiv_jax.errors import ShapeMismatchError


def column_major_order(rows: np.ndarray, cols: np.ndarray) -> np.ndarray:
    """Permutation sorting coordinates by column, then by row."""
    return np.lexsort((np.asarray(rows), np.asarray(cols)))


class SparsityPattern(eqx.Module):
    """Structural nonzeros of a matrix, in discovery order.

    Attributes:
        rows: Row index of each nonzero.
        cols: Column index of each nonzero.
        shape: Shape of the matrix the pattern describes.
    """

    rows: Int[np.ndarray, " nnz"]
    cols: Int[np.ndarray, " nnz"]
    shape: tuple[int, int] = eqx.field(static=True)

    @property
    def nnz(self) -> int:
        return int(self.rows.shape[0])

    @classmethod
    def from_matrix(cls, matrix: Any) -> "SparsityPattern":
        """Build a pattern from a prototype matrix.

        Accepts an existing pattern (returned unchanged), any scipy.sparse
        matrix (every stored entry is structural) or a dense array-like
        (nonzero entries are structural).
        """
        if isinstance(matrix, SparsityPattern):
            return matrix
        if sparse.issparse(matrix):
            coo = sparse.coo_array(matrix, copy=True)
            coo.sum_duplicates()
            rows, cols = coo.row, coo.col
            shape = coo.shape
        else:
            mask = np.asarray(matrix) != 0
            if mask.ndim != 2:
                raise ShapeMismatchError(
                    "sparsity", f"prototype must be 2-D, got shape {mask.shape}"
                )
            # nonzero() of the transpose walks column by column
            cols, rows = np.nonzero(mask.T)
            shape = mask.shape
        return cls.from_coordinates(rows, cols, shape)

    @classmethod
    def from_coordinates(
        cls, rows: Any, cols: Any, shape: tuple[int, ...]
    ) -> "SparsityPattern":
        """Pattern from unordered, duplicate-free coordinates."""
        order = column_major_order(rows, cols)
        return cls(
            rows=np.asarray(rows, dtype=np.int64)[order],
            cols=np.asarray(cols, dtype=np.int64)[order],
            shape=(int(shape[0]), int(shape[1])),
        )

    @classmethod
    def dense(cls, shape: tuple[int, int]) -> "SparsityPattern":
        """Pattern in which every entry of a ``shape`` matrix is structural."""
        return cls.from_matrix(np.ones(shape, dtype=bool))

    def upper_triangle(self) -> "SparsityPattern":
        """Sub-pattern of on-or-above-diagonal entries, in the same order."""
        keep = self.rows <= self.cols
        return SparsityPattern(
            rows=self.rows[keep], cols=self.cols[keep], shape=self.shape
        )

    def to_mask(self) -> np.ndarray:
        mask = np.zeros(self.shape, dtype=bool)
        mask[self.rows, self.cols] = True
        return mask

    def to_coo(
        self, values: Optional[np.ndarray] = None, dtype: Any = np.float64
    ) -> sparse.coo_array:
        """COO array with this pattern's coordinates, in this pattern's order.

        Operators recognise such an array as an in-place sparse output buffer.
        """
        if values is None:
            values = np.zeros(self.nnz, dtype=dtype)
        return sparse.coo_array(
            (np.asarray(values, dtype=dtype), (self.rows, self.cols)),
            shape=self.shape,
        )

