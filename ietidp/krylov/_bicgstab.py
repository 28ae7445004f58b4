"""Biconjugate Gradient Stabilized with right preconditioning.

The solver is written as a small state machine,

    UNINITIALIZED -> INITIALIZED -> ITERATING -> {CONVERGED, MAX_ITER_REACHED, BREAKDOWN}

so that callers can either run `BiCGStab.solve` or drive `init_iteration` /
`step` themselves. Numerical breakdowns are handled inside the recurrence
(restart with a new shadow residual, zero guard for the stabilization
parameter) and are only reported through the returned `BiCGStabResult`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import numpy as np
from scipy.sparse.linalg import aslinearoperator

from pyamg.util.linalg import norm

from ietidp.errors import ConvergenceFailure, NumericalBreakdownError

# |r0 . r| below this fraction of |r0|^2 triggers a new shadow residual
RESTART_THRESHOLD = 1e-32


class SolverState(Enum):
    """States of the BiCGStab iteration."""

    UNINITIALIZED = 0
    INITIALIZED = 1
    ITERATING = 2
    CONVERGED = 3
    MAX_ITER_REACHED = 4
    BREAKDOWN = 5


@dataclass(slots=True)
class BiCGStabResult:
    """Outcome of a BiCGStab solve.

    Attributes
    ----------
    x
        Approximate solution (always finite).
    converged
        Whether the relative residual dropped below the tolerance.
    iterations
        Number of completed iterations.
    residual
        Final relative residual norm ||b - A x|| / ||b||.
    state
        Final `SolverState`.
    restarts
        Number of internal restarts of the recurrence.
    error
        `NumericalBreakdownError` describing a persistent breakdown, else None.
    """

    x: np.ndarray
    converged: bool
    iterations: int
    residual: float
    state: SolverState
    restarts: int = 0
    error: Optional[NumericalBreakdownError] = None

    def raise_for_status(self) -> None:
        """Raise the stored breakdown or a ConvergenceFailure if not converged."""
        if self.error is not None:
            raise self.error
        if not self.converged:
            raise ConvergenceFailure(self.iterations, self.residual)


class BiCGStab:
    """Preconditioned BiCGStab for A x = b.

    Parameters
    ----------
    A
        System operator; anything accepted by `scipy.sparse.linalg.aslinearoperator`.
    M
        Preconditioner approximating A^{-1}; None means identity.
    tol
        Tolerance on the relative residual ||b - A x|| / ||b||.
    maxiter
        Maximum number of iterations. Defaults to ceil(1.3 n) + 2.
    """

    def __init__(self, A, M=None, tol: float = 1e-8, maxiter: int | None = None):
        self.A = aslinearoperator(A)
        if self.A.shape[0] != self.A.shape[1]:
            raise ValueError(f"expected a square system operator, got shape {self.A.shape}")
        self.M = None if M is None else aslinearoperator(M)
        if self.M is not None and self.M.shape != self.A.shape:
            raise ValueError(f"preconditioner shape {self.M.shape} does not match {self.A.shape}")
        if tol < 0:
            raise ValueError("tol must be non-negative")
        n = self.A.shape[0]
        self.tol = float(tol)
        self.maxiter = int(np.ceil(1.3 * n)) + 2 if maxiter is None else int(maxiter)
        if self.maxiter < 0:
            raise ValueError("maxiter must be non-negative")
        self.state = SolverState.UNINITIALIZED
        self.iterations = 0
        self.restarts = 0
        self.residual = float("nan")
        self.breakdown: NumericalBreakdownError | None = None

    def _apply_A(self, v):
        return np.ravel(self.A.matvec(v))

    def _apply_M(self, v):
        if self.M is None:
            return v.copy()
        return np.ravel(self.M.matvec(v))

    def _converged(self) -> bool:
        return self.residual < self.tol or self.residual == 0.0

    def init_iteration(self, b, x) -> bool:
        """Set up the recurrence for right-hand side `b` and initial guess `x`.

        Returns True if `x` already satisfies the tolerance. For b == 0 the
        guess is overwritten with zeros, which is the exact solution.
        """
        b = np.ravel(b)
        if b.size != self.A.shape[0]:
            raise ValueError(f"right-hand side has length {b.size}, expected {self.A.shape[0]}")
        self.iterations = 0
        self.restarts = 0
        self.breakdown = None

        self.b_norm = norm(b)
        if self.b_norm == 0.0:
            x[:] = 0
            self.b_norm = 1.0

        self.r = b - self._apply_A(x)
        self.r0 = self.r.copy()
        self.p = np.zeros_like(self.r)
        self.v = np.zeros_like(self.r)
        self.alpha = 1.0
        self.rho = 1.0
        self.w = 1.0

        self.residual = norm(self.r) / self.b_norm
        self.state = SolverState.INITIALIZED
        if self._converged():
            self.state = SolverState.CONVERGED
            return True
        return False

    def _fail(self, message: str) -> bool:
        self.breakdown = NumericalBreakdownError(message, self.iterations)
        self.state = SolverState.BREAKDOWN
        return False

    def step(self, x) -> bool:
        """Perform one iteration, updating `x` in place.

        Returns True once the tolerance is met. On a persistent breakdown the
        state becomes BREAKDOWN, `x` is left unchanged and False is returned.
        """
        self.state = SolverState.ITERATING
        rho_old = self.rho
        self.rho = np.vdot(self.r0, self.r)

        r0_sqnorm = np.vdot(self.r0, self.r0).real
        if abs(self.rho) < RESTART_THRESHOLD * r0_sqnorm:
            # residual too orthogonal to the shadow residual
            self.r0 = self.r.copy()
            self.rho = np.vdot(self.r0, self.r0)
            self.restarts += 1

        if self.w == 0:
            self.p = self.r.copy()
        else:
            beta = (self.rho / rho_old) * (self.alpha / self.w)
            self.p = self.r + beta * (self.p - self.w * self.v)

        y = self._apply_M(self.p)
        self.v = self._apply_A(y)
        denom = np.vdot(self.r0, self.v)
        if denom == 0:
            self.r0 = self.r.copy()
            self.rho = np.vdot(self.r0, self.r0)
            self.p = self.r.copy()
            self.restarts += 1
            y = self._apply_M(self.p)
            self.v = self._apply_A(y)
            denom = np.vdot(self.r0, self.v)
            if denom == 0:
                return self._fail("r0 . A M p vanished after restart")
        self.alpha = self.rho / denom

        s = self.r - self.alpha * self.v
        z = self._apply_M(s)
        t = self._apply_A(z)

        tt = np.vdot(t, t).real
        self.w = np.vdot(t, s) / tt if tt > 0 else 0.0

        x_new = x + self.alpha * y + self.w * z
        r_new = self.r - (self.alpha * self.v + self.w * t)
        if not (np.all(np.isfinite(x_new)) and np.all(np.isfinite(r_new))):
            return self._fail("non-finite values in the BiCGStab update")

        x[:] = x_new
        self.r = r_new
        self.residual = norm(self.r) / self.b_norm
        if self._converged():
            self.state = SolverState.CONVERGED
            return True
        return False

    def result(self, x) -> BiCGStabResult:
        """Package the current state into a `BiCGStabResult`."""
        return BiCGStabResult(
            x=x,
            converged=self.state is SolverState.CONVERGED,
            iterations=self.iterations,
            residual=float(self.residual),
            state=self.state,
            restarts=self.restarts,
            error=self.breakdown,
        )

    def solve(
        self,
        b,
        x0=None,
        callback: Callable[[np.ndarray], None] | None = None,
        residuals: list | None = None,
    ) -> BiCGStabResult:
        """Run the iteration to convergence, breakdown or the iteration limit.

        Parameters
        ----------
        b
            Right-hand side of shape (n,).
        x0
            Initial guess; zeros if None. Not modified.
        callback
            Called as `callback(x)` after every iteration.
        residuals
            If a list, the residual norms ||b - A x|| are appended to it,
            starting with the initial residual.

        Returns
        -------
        result
            `BiCGStabResult`.
        """
        b = np.ravel(np.asarray(b))
        dtype = np.result_type(self.A.dtype, b.dtype, np.float64)
        if self.M is not None:
            dtype = np.result_type(dtype, self.M.dtype)
        if x0 is None:
            x = np.zeros(self.A.shape[1], dtype=dtype)
        else:
            x = np.array(np.ravel(x0), dtype=dtype)

        done = self.init_iteration(b, x)
        if residuals is not None:
            residuals.append(self.residual * self.b_norm)
        if done:
            return self.result(x)

        while self.iterations < self.maxiter:
            done = self.step(x)
            if self.state is SolverState.BREAKDOWN:
                break
            self.iterations += 1
            if residuals is not None:
                residuals.append(self.residual * self.b_norm)
            if callback is not None:
                callback(x)
            if done:
                break
        else:
            self.state = SolverState.MAX_ITER_REACHED

        return self.result(x)


def bicgstab(A, b, x0=None, tol: float = 1e-8, maxiter: int | None = None, M=None,
             callback=None, residuals=None) -> BiCGStabResult:
    """Solve A x = b with preconditioned BiCGStab.

    Parameters
    ----------
    A
        System operator (sparse matrix, ndarray or LinearOperator), shape (n, n).
    b
        Right-hand side of shape (n,).
    x0
        Initial guess; zeros if None.
    tol
        Tolerance on ||b - A x|| / ||b||.
    maxiter
        Iteration limit; defaults to ceil(1.3 n) + 2. Zero returns the initial
        residual with state MAX_ITER_REACHED unless x0 already converged.
    M
        Preconditioner approximating A^{-1}; only `matvec` is used.
    callback
        Called as `callback(x)` after every iteration.
    residuals
        Optional list receiving the residual norm history.

    Returns
    -------
    result
        `BiCGStabResult` with solution, convergence flag, iteration count,
        final relative residual, state and restart count.

    Examples
    --------
    >>> import numpy as np
    >>> from pyamg.gallery import poisson
    >>> from ietidp.krylov import bicgstab
    >>> A = poisson((10,), format='csr')
    >>> res = bicgstab(A, np.ones(10), tol=1e-10)
    >>> res.converged
    True
    """
    return BiCGStab(A, M=M, tol=tol, maxiter=maxiter).solve(b, x0=x0, callback=callback, residuals=residuals)
