"""Reduction of local problems to the skeleton.

For each subdomain k this module provides the pieces needed to replace the
local stiffness matrix A_k by its Schur complement onto the skeleton:

1) Skeleton dofs
   A local dof is on the skeleton iff at least one Lagrange multiplier acts on
   it, i.e. its column of the jump matrix B_k has a nonzero.

2) Restricted jump matrix
   B_k with all non-skeleton columns dropped and the remaining columns
   renumbered by their position in the skeleton dof list.

3) Block partition
   With block 0 = skeleton dofs and block 1 = interior dofs,

       A_k = [ A00  A01 ]
             [ A10  A11 ]

   The partition is computed in one pass over the nonzeros using a rank array
   (skeleton dofs get ranks 1..s, interior dofs -1..-(n-s)); the sign of a rank
   tells the block, its magnitude the position inside the block.

4) Schur complement
       S_k = A00 - A01 A11^{-1} A10
   realized as an operator on top of a sparse LU factorization of A11.

All lookup arrays are local to the call, so every function here may be run
concurrently for different subdomains.
"""

from __future__ import annotations

from typing import Any

import numpy as np
from scipy.sparse import csr_array

from ietidp.errors import FactorizationError
from ietidp.operators import FactorizedInverse, MatrixOperator, SchurComplementOperator

from .types import IndexArray, MatrixBlocks


def _sdp_check_dofs(dofs, n: int) -> IndexArray:
    """Validate a dof list against dimension `n` and return it as int32 array."""
    dofs = np.asarray(dofs)
    if dofs.ndim != 1:
        raise ValueError("dofs must be a one-dimensional index list")
    if dofs.size and not np.issubdtype(dofs.dtype, np.integer):
        raise ValueError(f"dofs must be integers, got dtype {dofs.dtype}")
    dofs = dofs.astype(np.int32, copy=False)
    if dofs.size and (dofs.min() < 0 or dofs.max() >= n):
        raise ValueError(f"dofs must lie in [0, {n}), got range [{dofs.min()}, {dofs.max()}]")
    if np.unique(dofs).size != dofs.size:
        raise ValueError("dofs must not contain duplicates")
    return dofs


def _sdp_reverse_lookup(dofs: IndexArray, n: int) -> np.ndarray:
    """Return the rank array of `dofs` in a length-n index space.

    Entry `dofs[i]` holds i+1; every other index holds a distinct negative rank
    -1, -2, ... in increasing index order.
    """
    rank = np.zeros(n, dtype=np.int64)
    rank[dofs] = np.arange(1, dofs.size + 1)
    rest = np.flatnonzero(rank == 0)
    rank[rest] = -np.arange(1, rest.size + 1)
    return rank


def skeleton_dofs(jump_matrix) -> IndexArray:
    """Return the sorted local dofs touched by at least one Lagrange multiplier.

    Parameters
    ----------
    jump_matrix
        Sparse jump matrix of shape (M, n_local).

    Returns
    -------
    dofs
        Increasing int32 array of column indices having a nonzero entry.
    """
    jm = csr_array(jump_matrix)
    touched = np.zeros(jm.shape[1], dtype=bool)
    touched[jm.indices[jm.data != 0]] = True
    return np.flatnonzero(touched).astype(np.int32)


def restrict_jump_matrix(jump_matrix, dofs) -> csr_array:
    """Restrict a jump matrix to the given dofs.

    Columns listed in `dofs` are kept and renumbered by their position in
    `dofs`; all other columns are dropped. Rows and values are unchanged.

    Parameters
    ----------
    jump_matrix
        Sparse jump matrix of shape (M, n_local).
    dofs
        Local dofs to keep (usually `skeleton_dofs(jump_matrix)`).

    Returns
    -------
    restricted
        CSR array of shape (M, len(dofs)).
    """
    jm = csr_array(jump_matrix)
    dofs = _sdp_check_dofs(dofs, jm.shape[1])

    reverse = np.zeros(jm.shape[1], dtype=np.int64)
    reverse[dofs] = np.arange(1, dofs.size + 1)

    coo = jm.tocoo()
    keep = reverse[coo.col] > 0
    return csr_array(
        (coo.data[keep], (coo.row[keep], reverse[coo.col[keep]] - 1)),
        shape=(jm.shape[0], dofs.size),
    )


def matrix_blocks(local_matrix, dofs) -> MatrixBlocks:
    """Partition a local matrix into skeleton/interior blocks.

    Parameters
    ----------
    local_matrix
        Square sparse matrix of shape (n, n).
    dofs
        Dofs of block 0, in the order they should appear in A00.

    Returns
    -------
    blocks
        `MatrixBlocks` with A00 (s x s), A01 (s x n-s), A10 (n-s x s) and
        A11 (n-s x n-s); `blocks.tile()` reproduces `local_matrix`.
    """
    A = csr_array(local_matrix)
    if A.shape[0] != A.shape[1]:
        raise ValueError(f"expected a square matrix, got shape {A.shape}")
    n = A.shape[0]
    dofs = _sdp_check_dofs(dofs, n)
    rank = _sdp_reverse_lookup(dofs, n)

    coo = A.tocoo()
    r = rank[coo.row]
    c = rank[coo.col]
    v = coo.data

    s = dofs.size
    m = n - s

    def _block(mask, rows, cols, shape):
        return csr_array((v[mask], (rows[mask], cols[mask])), shape=shape)

    # positive rank -> skeleton position rank-1, negative rank -> interior position -rank-1
    rpos = np.where(r > 0, r - 1, -r - 1)
    cpos = np.where(c > 0, c - 1, -c - 1)

    A00 = _block((r > 0) & (c > 0), rpos, cpos, (s, s))
    A01 = _block((r > 0) & (c < 0), rpos, cpos, (s, m))
    A10 = _block((r < 0) & (c > 0), rpos, cpos, (m, s))
    A11 = _block((r < 0) & (c < 0), rpos, cpos, (m, m))

    interior = np.flatnonzero(rank < 0).astype(np.int32)
    return MatrixBlocks(A00=A00, A01=A01, A10=A10, A11=A11, dofs=dofs, interior=interior)


def factorize(A11, subdomain: int | None = None) -> FactorizedInverse:
    """Factorize the eliminated block and return its inverse as an operator.

    Parameters
    ----------
    A11
        Square sparse matrix, expected to be symmetric positive definite.
    subdomain
        Index reported in the error message if the factorization fails.

    Raises
    ------
    FactorizationError
        If A11 has a non-finite or non-positive diagonal entry or is singular.
    """
    A11 = csr_array(A11)
    diag = A11.diagonal()
    if not np.all(np.isfinite(A11.data)):
        raise FactorizationError("interior block has non-finite entries", subdomain)
    if np.any(diag.real <= 0):
        bad = int(np.flatnonzero(diag.real <= 0)[0])
        raise FactorizationError(
            f"interior block is not positive definite (diagonal entry {bad} is {diag[bad]})",
            subdomain,
        )
    try:
        return FactorizedInverse(A11)
    except RuntimeError as e:
        raise FactorizationError(f"interior block is singular ({e})", subdomain) from e


def schur_complement(blocks: MatrixBlocks, solver: Any = None, subdomain: int | None = None):
    """Return the Schur complement operator `A00 - A01 A11^{-1} A10`.

    Parameters
    ----------
    blocks
        Block partition as returned by `matrix_blocks`.
    solver
        Operator realizing `blocks.A11^{-1}`. If None, A11 is factorized here.
    subdomain
        Index reported if the factorization fails.

    Returns
    -------
    S
        `SchurComplementOperator`, or a plain `MatrixOperator` of A00 if the
        interior block is empty.
    """
    if blocks.A11.shape[0] == 0:
        return MatrixOperator(blocks.A00)
    if solver is None:
        solver = factorize(blocks.A11, subdomain=subdomain)
    return SchurComplementOperator(blocks, solver)


def matrix_schur_complement(local_matrix, dofs, subdomain: int | None = None):
    """Return the Schur complement of `local_matrix` onto `dofs`.

    Shorthand for `schur_complement(matrix_blocks(local_matrix, dofs))`, with A11
    factorized by sparse LU.
    """
    return schur_complement(matrix_blocks(local_matrix, dofs), subdomain=subdomain)


def restrict_to_skeleton(jump_matrix, local_matrix, dofs=None, subdomain: int | None = None):
    """Restrict the jump matrix and the local matrix to the skeleton.

    Parameters
    ----------
    jump_matrix
        Sparse jump matrix of shape (M, n_local).
    local_matrix
        Local stiffness matrix of shape (n_local, n_local).
    dofs
        Skeleton dofs. Defaults to `skeleton_dofs(jump_matrix)`.
    subdomain
        Index reported if the factorization fails.

    Returns
    -------
    (jump, schur)
        The restricted jump matrix and the local Schur complement operator, in
        the form accepted by `ScaledDirichletPrec.add_subdomain`.
    """
    if dofs is None:
        dofs = skeleton_dofs(jump_matrix)
    if jump_matrix.shape[1] != local_matrix.shape[0]:
        raise ValueError(
            f"jump matrix has {jump_matrix.shape[1]} columns but the local matrix "
            f"has {local_matrix.shape[0]} rows"
        )
    return (
        restrict_jump_matrix(jump_matrix, dofs),
        matrix_schur_complement(local_matrix, dofs, subdomain=subdomain),
    )
