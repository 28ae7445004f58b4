"""Linear operator variants used to compose the IETI-DP preconditioner.

All variants derive from `scipy.sparse.linalg.LinearOperator`, so they plug
directly into SciPy and PyAMG Krylov solvers. The set is closed:

MatrixOperator
    Wraps a sparse or dense matrix.
ScaledOperator
    `alpha * op`.
SumOperator
    `op_0 + op_1 + ...`, optionally evaluated in worker threads.
ProductOperator
    `op_0 @ op_1 @ ... @ op_{n-1}`; the rightmost factor is applied first.
SchurComplementOperator
    `A00 - A01 A11^{-1} A10` for a `MatrixBlocks` partition.
FactorizedInverse
    `A^{-1}` through a SuperLU factorization.

Operators are immutable after construction. Factorizations are only read by
`matvec`, so one operator may be applied concurrently and reused for any number
of right-hand sides.
"""

from __future__ import annotations

from typing import Any, Sequence

import numpy as np
from joblib import Parallel, delayed
from scipy.sparse import csc_array, issparse
from scipy.sparse.linalg import LinearOperator, splu


class IetiOperator(LinearOperator):
    """Common base of the operator variants; adds `apply`, `rows` and `cols`."""

    def apply(self, x):
        """Return the operator applied to the vector `x`."""
        return self.matvec(x)

    def rows(self) -> int:
        """Number of rows of the operator."""
        return int(self.shape[0])

    def cols(self) -> int:
        """Number of columns of the operator."""
        return int(self.shape[1])


def as_operator(obj: Any) -> LinearOperator:
    """Return `obj` as a LinearOperator, wrapping matrices in a MatrixOperator."""
    if isinstance(obj, LinearOperator):
        return obj
    if issparse(obj) or isinstance(obj, np.ndarray):
        return MatrixOperator(obj)
    raise TypeError(f"cannot interpret {type(obj).__name__} as a linear operator")


class MatrixOperator(IetiOperator):
    """Operator backed by an explicit sparse or dense matrix."""

    def __init__(self, A):
        if not (issparse(A) or isinstance(A, np.ndarray)) or A.ndim != 2:
            raise TypeError("MatrixOperator expects a 2-D sparse array or ndarray")
        self.A = A
        super().__init__(dtype=A.dtype, shape=A.shape)

    def _matvec(self, x):
        return self.A @ np.ravel(x)

    def _rmatvec(self, x):
        return self.A.conj().T @ np.ravel(x)


class ScaledOperator(IetiOperator):
    """Operator `alpha * op`."""

    def __init__(self, op, alpha):
        self.op = as_operator(op)
        self.alpha = alpha
        super().__init__(dtype=np.result_type(self.op.dtype, type(alpha)), shape=self.op.shape)

    def _matvec(self, x):
        return self.alpha * self.op.matvec(np.ravel(x))

    def _rmatvec(self, x):
        return np.conj(self.alpha) * self.op.rmatvec(np.ravel(x))


class SumOperator(IetiOperator):
    """Sum of equally shaped operators.

    Parameters
    ----------
    ops
        Summands. At least one is required.
    n_jobs
        If larger than one (or -1), the summands are evaluated in that many
        worker threads and reduced once at the end. None or 1 evaluates
        sequentially.
    """

    def __init__(self, ops: Sequence[Any], n_jobs: int | None = None):
        ops = [as_operator(op) for op in ops]
        if not ops:
            raise ValueError("SumOperator needs at least one summand")
        shape = ops[0].shape
        for i, op in enumerate(ops):
            if op.shape != shape:
                raise ValueError(f"summand {i} has shape {op.shape}, expected {shape}")
        self.ops = tuple(ops)
        self.n_jobs = n_jobs
        super().__init__(dtype=np.result_type(*[op.dtype for op in ops]), shape=shape)

    def _evaluate(self, fn, x):
        if self.n_jobs in (None, 1) or len(self.ops) == 1:
            return [fn(op, x) for op in self.ops]
        return Parallel(n_jobs=self.n_jobs, prefer="threads")(delayed(fn)(op, x) for op in self.ops)

    @staticmethod
    def _reduce(parts, n, dtype):
        y = np.zeros(n, dtype=np.result_type(dtype, *[p.dtype for p in parts]))
        for p in parts:
            y += np.ravel(p)
        return y

    def _matvec(self, x):
        x = np.ravel(x)
        parts = self._evaluate(lambda op, v: op.matvec(v), x)
        return self._reduce(parts, self.shape[0], self.dtype)

    def _rmatvec(self, x):
        x = np.ravel(x)
        parts = self._evaluate(lambda op, v: op.rmatvec(v), x)
        return self._reduce(parts, self.shape[1], self.dtype)


class ProductOperator(IetiOperator):
    """Product `ops[0] @ ops[1] @ ... @ ops[-1]`."""

    def __init__(self, ops: Sequence[Any]):
        ops = [as_operator(op) for op in ops]
        if not ops:
            raise ValueError("ProductOperator needs at least one factor")
        for i in range(len(ops) - 1):
            if ops[i].shape[1] != ops[i + 1].shape[0]:
                raise ValueError(
                    f"factors {i} and {i + 1} do not chain: {ops[i].shape} @ {ops[i + 1].shape}"
                )
        self.ops = tuple(ops)
        super().__init__(
            dtype=np.result_type(*[op.dtype for op in ops]),
            shape=(ops[0].shape[0], ops[-1].shape[1]),
        )

    def _matvec(self, x):
        x = np.ravel(x)
        for op in reversed(self.ops):
            x = np.ravel(op.matvec(x))
        return x

    def _rmatvec(self, x):
        x = np.ravel(x)
        for op in self.ops:
            x = np.ravel(op.rmatvec(x))
        return x


class FactorizedInverse(IetiOperator):
    """Inverse of a square sparse matrix through `scipy.sparse.linalg.splu`.

    The factorization happens once, in the constructor. SuperLU raises
    RuntimeError for an exactly singular matrix; callers that need a domain
    error should use `ietidp.ieti.sdp.skeleton.factorize`.
    """

    def __init__(self, A):
        A = csc_array(A)
        A = A.astype(np.result_type(A.dtype, np.float64), copy=False)
        if A.shape[0] != A.shape[1]:
            raise ValueError(f"expected a square matrix, got shape {A.shape}")
        self.lu = splu(A)
        self.isreal = not np.issubdtype(A.dtype, np.complexfloating)
        super().__init__(dtype=A.dtype, shape=A.shape)

    def _solve(self, b, trans):
        b = np.ravel(b)
        if self.isreal and np.issubdtype(b.dtype, np.complexfloating):
            return self.lu.solve(np.ascontiguousarray(b.real), trans) + \
                1j * self.lu.solve(np.ascontiguousarray(b.imag), trans)
        return self.lu.solve(np.ascontiguousarray(b, dtype=self.dtype), trans)

    def _matvec(self, x):
        return self._solve(x, "N")

    def _rmatvec(self, x):
        return self._solve(x, "H")


class SchurComplementOperator(IetiOperator):
    """Schur complement `A00 - A01 A11^{-1} A10` of a block partition.

    Parameters
    ----------
    blocks
        A `MatrixBlocks` instance (A00, A01, A10, A11 as sparse arrays).
    solver
        Operator realizing `A11^{-1}`. May be None only if the interior block
        is empty, in which case the operator is just `A00`.
    """

    def __init__(self, blocks, solver=None):
        n0, n1 = blocks.A00.shape[0], blocks.A11.shape[0]
        if solver is None and n1 > 0:
            raise ValueError("a solver for A11 is required when the interior block is not empty")
        if solver is not None and solver.shape != (n1, n1):
            raise ValueError(f"solver has shape {solver.shape}, expected {(n1, n1)}")
        self.blocks = blocks
        self.solver = solver
        dtypes = [blocks.A00.dtype, blocks.A01.dtype, blocks.A10.dtype]
        if solver is not None:
            dtypes.append(solver.dtype)
        super().__init__(dtype=np.result_type(*dtypes), shape=(n0, n0))

    def _matvec(self, x):
        x = np.ravel(x)
        b = self.blocks
        y = b.A00 @ x
        if self.solver is not None:
            y = y - b.A01 @ np.ravel(self.solver.matvec(b.A10 @ x))
        return y

    def _rmatvec(self, x):
        x = np.ravel(x)
        b = self.blocks
        y = b.A00.conj().T @ x
        if self.solver is not None:
            y = y - b.A10.conj().T @ np.ravel(self.solver.rmatvec(b.A01.conj().T @ x))
        return y
