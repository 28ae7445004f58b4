"""Scaling operators for the scaled Dirichlet preconditioner.

Skeleton dofs shared by several subdomains receive contributions from each of
them in the additive preconditioner. The scaling W_k = D_k^{-1} corrects for
this. Two policies are provided:

Multiplicity scaling
    D_k = diag(1 + c), where c counts the nonzeros in the corresponding column
    of the (restricted) jump matrix, i.e. the multipliers acting on the dof.
    Only the jump matrices are needed.

Deluxe scaling
    For an interface F between subdomains k and j, let S_k^F and S_j^F be the
    local Schur complements restricted to the dofs of F. Then

        W_k^F = (S_k^F + S_j^F)^{-1} S_j^F,    W_j^F = (S_k^F + S_j^F)^{-1} S_k^F,

    so that W_k^F + W_j^F = I. Dofs on more than one interface (cross points)
    and skeleton dofs not listed in any interface keep the multiplicity weight.
    W_k is block diagonal and, in general, not symmetric; the assembler applies
    W_k on the right and W_k^T on the left of S_k. The face blocks are formed
    densely by applying S_k to unit vectors, i.e. one local solve per face dof.

Both policies store W_k in `Subdomain.scaling` and the counted weights in
`Subdomain.weights`.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
from scipy.linalg import LinAlgError, solve
from scipy.sparse import csr_array

from ietidp.errors import ConfigurationError, EmptyDomainError, FactorizationError

from .types import Interface, Subdomain


def multiplicity_weights(jump_matrix) -> np.ndarray:
    """Return `1 + (number of multipliers acting on the dof)` for every column.

    Parameters
    ----------
    jump_matrix
        Sparse jump matrix of shape (M, n).

    Returns
    -------
    weights
        Float array of shape (n,), all entries >= 1.
    """
    jm = csr_array(jump_matrix)
    counts = np.bincount(jm.indices[jm.data != 0], minlength=jm.shape[1])
    return 1.0 + counts.astype(float)


def _sdp_diagonal(values: np.ndarray) -> csr_array:
    """Return a square CSR array with `values` on the diagonal."""
    n = values.size
    idx = np.arange(n, dtype=np.int32)
    return csr_array((values, (idx, idx)), shape=(n, n))


def _sdp_require_subdomains(subdomains: Sequence[Subdomain], what: str) -> None:
    """Raise EmptyDomainError if no subdomain has been registered."""
    if not subdomains:
        raise EmptyDomainError(f"{what} requires at least one registered subdomain")


def _sdp_setup_multiplicity_scaling(*, subdomains: Sequence[Subdomain]) -> None:
    """Set `scaling = diag(1/weights)` for every subdomain.

    Side effects
    ------------
    Fills `sub.weights` and `sub.scaling` for each subdomain.
    """
    _sdp_require_subdomains(subdomains, "setup_multiplicity_scaling")
    for sub in subdomains:
        w = multiplicity_weights(sub.jump)
        sub.weights = w
        sub.scaling = _sdp_diagonal(1.0 / w)


def _sdp_face_schur(schur, dofs: np.ndarray) -> np.ndarray:
    """Return the dense block S[dofs, dofs] of a Schur complement operator."""
    n = schur.shape[0]
    E = np.zeros((n, dofs.size), dtype=schur.dtype)
    E[dofs, np.arange(dofs.size)] = 1
    SE = np.asarray(schur.matmat(E))
    return SE[dofs, :]


def _sdp_check_interfaces(*, subdomains: Sequence[Subdomain], interfaces: Sequence[Interface]) -> None:
    """Validate interface descriptors against the registered subdomains."""
    K = len(subdomains)
    for i, face in enumerate(interfaces):
        for side in (face.first, face.second):
            if not 0 <= side < K:
                raise ConfigurationError(
                    f"interface {i} refers to subdomain {side}, but only {K} are registered"
                )
        if face.first == face.second:
            raise ConfigurationError(f"interface {i} connects subdomain {face.first} with itself")
        if face.first_dofs.size != face.second_dofs.size:
            raise ConfigurationError(
                f"interface {i} has {face.first_dofs.size} dofs on subdomain {face.first} "
                f"but {face.second_dofs.size} on subdomain {face.second}"
            )
        for side, dofs in ((face.first, face.first_dofs), (face.second, face.second_dofs)):
            n = subdomains[side].n_skeleton
            if dofs.size and (dofs.min() < 0 or dofs.max() >= n):
                raise ConfigurationError(
                    f"interface {i} lists dofs outside of the {n} skeleton dofs of subdomain {side}"
                )
            if np.unique(dofs).size != dofs.size:
                raise ConfigurationError(f"interface {i} lists a dof of subdomain {side} twice")


def _sdp_setup_deluxe_scaling(
    *,
    subdomains: Sequence[Subdomain],
    interfaces: Sequence[Interface],
) -> dict[str, int]:
    """Set block-diagonal deluxe scalings for every subdomain.

    Parameters
    ----------
    subdomains
        Registered subdomains; each needs `jump` and `schur`.
    interfaces
        Interface descriptors in skeleton-local numbering.

    Returns
    -------
    info
        Counters for diagnostics: number of faces used, number of dofs scaled
        by deluxe blocks, number of dofs that kept multiplicity weights.

    Side effects
    ------------
    Fills `sub.weights` and `sub.scaling` for each subdomain.

    Raises
    ------
    ConfigurationError
        If an interface descriptor is invalid. EmptyDomainError (a subclass) if no
        subdomain is registered.
    FactorizationError
        If `S_k^F + S_j^F` is singular for some interface.
    """
    _sdp_require_subdomains(subdomains, "setup_deluxe_scaling")
    _sdp_check_interfaces(subdomains=subdomains, interfaces=interfaces)

    # number of interfaces each skeleton dof lies on
    face_count = [np.zeros(sub.n_skeleton, dtype=np.int32) for sub in subdomains]
    for face in interfaces:
        face_count[face.first][face.first_dofs] += 1
        face_count[face.second][face.second_dofs] += 1

    covered = [np.zeros(sub.n_skeleton, dtype=bool) for sub in subdomains]
    t_rows: list[list[np.ndarray]] = [[] for _ in subdomains]
    t_cols: list[list[np.ndarray]] = [[] for _ in subdomains]
    t_vals: list[list[np.ndarray]] = [[] for _ in subdomains]

    n_faces = 0
    for i, face in enumerate(interfaces):
        k, j = face.first, face.second
        keep = (face_count[k][face.first_dofs] == 1) & (face_count[j][face.second_dofs] == 1)
        dk = face.first_dofs[keep]
        dj = face.second_dofs[keep]
        if dk.size == 0:
            continue

        Sk = _sdp_face_schur(subdomains[k].schur, dk)
        Sj = _sdp_face_schur(subdomains[j].schur, dj)
        total = Sk + Sj
        try:
            Wk = solve(total, Sj)
            Wj = solve(total, Sk)
        except LinAlgError as e:
            raise FactorizationError(f"face matrix of interface {i} is singular ({e})", k) from e

        for side, dofs, W in ((k, dk, Wk), (j, dj, Wj)):
            t_rows[side].append(np.repeat(dofs, dofs.size))
            t_cols[side].append(np.tile(dofs, dofs.size))
            t_vals[side].append(W.ravel())
            covered[side][dofs] = True
        n_faces += 1

    n_deluxe = 0
    n_counted = 0
    for s, sub in enumerate(subdomains):
        w = multiplicity_weights(sub.jump)
        sub.weights = w
        rest = np.flatnonzero(~covered[s]).astype(np.int32)
        t_rows[s].append(rest)
        t_cols[s].append(rest)
        t_vals[s].append(1.0 / w[rest])
        n = sub.n_skeleton
        sub.scaling = csr_array(
            (np.concatenate(t_vals[s]), (np.concatenate(t_rows[s]), np.concatenate(t_cols[s]))),
            shape=(n, n),
        )
        n_deluxe += int(covered[s].sum())
        n_counted += int(rest.size)

    return {"faces": n_faces, "deluxe_dofs": n_deluxe, "counted_dofs": n_counted}
