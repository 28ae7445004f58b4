"""Typed data containers used throughout the scaled Dirichlet preconditioner.

This module defines small dataclasses that group per-subdomain state into
coherent parcels, so the builder does not have to keep several parallel lists
in sync.

Containers
----------
SDPConfig
    Builder options (scaling policy, worker threads, diagnostics printing).
MatrixBlocks
    Partition of a local stiffness matrix with respect to a dof subset:
      - A00 : skeleton x skeleton
      - A01 : skeleton x interior
      - A10 : interior x skeleton
      - A11 : interior x interior (the eliminated block, natural sign)
      - dofs / interior : original indices of block 0 / block 1
Subdomain
    One local problem (a patch, or the assembled primal problem):
      - jump    : jump matrix restricted to the skeleton (M x n_k, CSR)
      - schur   : local Schur complement operator (n_k x n_k)
      - scaling : operator matrix W_k = D_k^{-1} (n_k x n_k), None until set up
      - weights : diagonal of D_k from multiplicity counting (diagnostics)
Interface
    One interface between two subdomains for deluxe scaling, given as matching
    skeleton-local dof positions on both sides.

Invariants
----------
- All index arrays are stored as int32 numpy arrays.
- `MatrixBlocks.dofs` keeps the caller's order; `MatrixBlocks.interior` is
  increasing.
- All `Subdomain.jump` matrices share the same number of rows M.
- `Subdomain.jump.shape[1] == Subdomain.schur.shape[0] == Subdomain.schur.shape[1]`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
from numpy.typing import NDArray
from scipy.sparse import csr_array, sparray, spmatrix
from scipy.sparse.linalg import LinearOperator

SparseLike = spmatrix | sparray
IndexArray = NDArray[np.int32]

SCALINGS = ("multiplicity", "deluxe")


@dataclass(slots=True, frozen=True)
class SDPConfig:
    """Options of the scaled Dirichlet preconditioner builder.

    Attributes
    ----------
    scaling : str
        Either "multiplicity" or "deluxe".
    n_jobs : int | None
        Worker threads used to evaluate the per-subdomain terms of the
        preconditioner. None or 1 evaluates sequentially.
    print_info : bool
        Whether to record and print setup diagnostics via `sdp.stats`.
    """

    scaling: str = "multiplicity"
    n_jobs: int | None = None
    print_info: bool = False

    def __post_init__(self) -> None:
        if self.scaling not in SCALINGS:
            raise ValueError(f"Expected one of {SCALINGS} for the scaling parameter, got {self.scaling!r}")


@dataclass(slots=True, frozen=True)
class MatrixBlocks:
    """The four blocks of a local matrix with respect to a dof subset.

    Block 0 consists of `dofs` (usually the skeleton), block 1 of all remaining
    dofs (`interior`), both in the order stored here.
    """

    A00: csr_array
    A01: csr_array
    A10: csr_array
    A11: csr_array
    dofs: IndexArray
    interior: IndexArray

    @property
    def n(self) -> int:
        """Dimension of the partitioned matrix."""
        return int(self.dofs.size + self.interior.size)

    def tile(self) -> csr_array:
        """Reassemble the partitioned matrix in its original numbering."""
        perm = np.concatenate([self.dofs, self.interior])
        rows, cols, vals = [], [], []
        for blk, rmap, cmap in (
            (self.A00, self.dofs, self.dofs),
            (self.A01, self.dofs, self.interior),
            (self.A10, self.interior, self.dofs),
            (self.A11, self.interior, self.interior),
        ):
            coo = blk.tocoo()
            rows.append(rmap[coo.row])
            cols.append(cmap[coo.col])
            vals.append(coo.data)
        n = perm.size
        return csr_array(
            (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
            shape=(n, n),
        )


@dataclass(slots=True)
class Subdomain:
    """State of one registered subdomain.

    Attributes
    ----------
    jump
        Skeleton-restricted jump matrix, CSR of shape (M, n_k).
    schur
        Local Schur complement operator of shape (n_k, n_k).
    scaling
        Matrix W_k = D_k^{-1} of shape (n_k, n_k); None until a scaling policy
        was set up or a scaling was supplied by the caller.
    weights
        Multiplicity weights (diagonal of D_k) when computed by counting.
    n_local
        Number of local dofs before reduction to the skeleton, if known.
    """

    jump: csr_array
    schur: LinearOperator
    scaling: Optional[csr_array] = None
    weights: Optional[np.ndarray] = None
    n_local: Optional[int] = None

    @property
    def n_skeleton(self) -> int:
        """Number of skeleton dofs of this subdomain."""
        return int(self.jump.shape[1])


@dataclass(slots=True, frozen=True)
class Interface:
    """An interface between subdomains `first` and `second`.

    `first_dofs[i]` and `second_dofs[i]` are the skeleton-local positions of the
    same physical dof in the two subdomains.
    """

    first: int
    second: int
    first_dofs: IndexArray
    second_dofs: IndexArray

    @classmethod
    def make(cls, first: int, second: int, first_dofs, second_dofs) -> "Interface":
        """Build an Interface, converting the dof lists to int32 arrays."""
        return cls(
            first=int(first),
            second=int(second),
            first_dofs=np.asarray(first_dofs, dtype=np.int32).ravel(),
            second_dofs=np.asarray(second_dofs, dtype=np.int32).ravel(),
        )
