"""Exception taxonomy for the IETI-DP preconditioner and its Krylov solver.

Setup-time errors
-----------------
ConfigurationError
    Mismatched or missing subdomain data, or builder calls made out of order.
EmptyDomainError
    A count- or assembly-dependent operation was invoked before any subdomain
    was registered.
FactorizationError
    The eliminated (interior) block of a subdomain cannot be factorized.

Solve-time diagnostics
----------------------
NumericalBreakdownError
    Persistent breakdown of the BiCGStab recurrence. The solver never raises it
    itself; it is attached to the result and raised only on request.
ConvergenceFailure
    Iteration budget exhausted without meeting the tolerance. Also raised only
    on request via `BiCGStabResult.raise_for_status`.
"""

from __future__ import annotations


class IetiError(Exception):
    """Base class of all errors raised by `ietidp`."""


class ConfigurationError(IetiError, ValueError):
    """Subdomain data is inconsistent or the builder was used out of order."""


class EmptyDomainError(ConfigurationError):
    """No subdomain has been registered yet."""


class FactorizationError(IetiError, RuntimeError):
    """The interior block of a subdomain is not factorizable.

    Attributes
    ----------
    subdomain
        Index of the offending subdomain, or None if the factorization was
        requested outside of a builder.
    """

    def __init__(self, message: str, subdomain: int | None = None):
        if subdomain is not None:
            message = f"subdomain {subdomain}: {message}"
        super().__init__(message)
        self.subdomain = subdomain


class NumericalBreakdownError(IetiError, ArithmeticError):
    """The Krylov recurrence broke down and could not be restarted.

    Attributes
    ----------
    iteration
        Iteration at which the breakdown was detected.
    """

    def __init__(self, message: str, iteration: int):
        super().__init__(f"{message} (iteration {iteration})")
        self.iteration = iteration


class ConvergenceFailure(IetiError, RuntimeError):
    """The Krylov solver ran out of iterations.

    Attributes
    ----------
    iterations
        Number of iterations performed.
    residual
        Relative residual norm after the last iteration.
    """

    def __init__(self, iterations: int, residual: float):
        super().__init__(
            f"no convergence after {iterations} iterations "
            f"(relative residual {residual:.3e})"
        )
        self.iterations = iterations
        self.residual = residual
