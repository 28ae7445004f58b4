"""Assembly of the scaled Dirichlet preconditioner.

This module provides:
  - the consistency checks that must hold before assembly,
  - the per-subdomain term  B_k W_k^T S_k W_k B_k^T,
  - the additive combination of all terms over the multiplier space.

With a diagonal scaling W_k = D_k^{-1} the operator is

    M^{-1} = sum_k  B_k D_k^{-1} S_k D_k^{-1} B_k^T .

Each term only reads its own subdomain, so the terms can be evaluated in
parallel; the only synchronization point is the final sum.

The public entrypoint used by `scaled_dirichlet.py` is `_sdp_assemble_preconditioner`.
"""

from __future__ import annotations

from typing import Sequence

from ietidp.errors import ConfigurationError
from ietidp.operators import MatrixOperator, ProductOperator, SumOperator

from .scaling import _sdp_require_subdomains
from .types import Subdomain


def _sdp_check_subdomains(*, subdomains: Sequence[Subdomain]) -> int:
    """Check that all subdomains are complete and mutually consistent.

    Returns
    -------
    M
        Number of Lagrange multipliers.

    Raises
    ------
    EmptyDomainError
        If no subdomain is registered.
    ConfigurationError
        If a scaling is missing or the shapes of B_k, S_k and W_k disagree.
    """
    _sdp_require_subdomains(subdomains, "preconditioner")
    M = subdomains[0].jump.shape[0]
    for k, sub in enumerate(subdomains):
        if sub.scaling is None:
            raise ConfigurationError(
                f"subdomain {k} has no scaling; call setup_multiplicity_scaling() "
                "or setup_deluxe_scaling() before requesting the preconditioner"
            )
        n = sub.jump.shape[1]
        if sub.jump.shape[0] != M:
            raise ConfigurationError(
                f"jump matrix of subdomain {k} has {sub.jump.shape[0]} rows, expected {M}"
            )
        if sub.schur.shape != (n, n):
            raise ConfigurationError(
                f"Schur complement of subdomain {k} has shape {sub.schur.shape}, "
                f"expected {(n, n)} to match its jump matrix"
            )
        if sub.scaling.shape != (n, n):
            raise ConfigurationError(
                f"scaling of subdomain {k} has shape {sub.scaling.shape}, expected {(n, n)}"
            )
    return M


def _sdp_local_term(sub: Subdomain) -> ProductOperator:
    """Return the operator B_k W_k^T S_k W_k B_k^T of one subdomain."""
    W = sub.scaling
    return ProductOperator(
        [
            MatrixOperator(sub.jump),
            MatrixOperator(W.T.tocsr()),
            sub.schur,
            MatrixOperator(W),
            MatrixOperator(sub.jump.T.tocsr()),
        ]
    )


def _sdp_assemble_preconditioner(*, subdomains: Sequence[Subdomain], n_jobs: int | None = None) -> SumOperator:
    """Combine all subdomain terms into one operator on the multiplier space.

    Parameters
    ----------
    subdomains
        Registered subdomains, each with jump matrix, Schur operator and scaling.
    n_jobs
        Worker threads for evaluating the terms; None or 1 is sequential.

    Returns
    -------
    prec
        Operator of shape (M, M).
    """
    _sdp_check_subdomains(subdomains=subdomains)
    return SumOperator([_sdp_local_term(sub) for sub in subdomains], n_jobs=n_jobs)
