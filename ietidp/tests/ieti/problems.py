"""Model problems for the IETI-DP tests and benchmarks.

interval_problem
    -u'' = 1 on (0, 1), u(0) = u(1) = 0, linear elements, split into two
    subdomains at one node. The nodal solution is x (1 - x) / 2.
strip_problem
    5-point Poisson matrix (`pyamg.gallery.poisson`) on an nx x ny grid, split
    algebraically into horizontal strips that share one grid row per interface.
    Entries coupling two shared nodes are divided between the strips, so the
    local matrices sum up to the global one. Strips meet only along rows, so
    there are no cross points.
redundant_jump_matrices
    One dof shared by several subdomains with fully redundant multipliers.

`FetiSystem` eliminates the primal unknowns, F = sum_k B_k A_k^{-1} B_k^T and
d = sum_k B_k A_k^{-1} f_k, and recovers the primal solution from the
multipliers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from itertools import combinations

import numpy as np
from scipy.sparse import csr_array, kron, identity
from scipy.sparse.linalg import LinearOperator

from pyamg.gallery import poisson

from ietidp.ieti import Interface
from ietidp.operators import FactorizedInverse


@dataclass
class SplitProblem:
    """Subdomain data of a decomposed problem."""

    jumps: list
    matrices: list
    loads: list
    glob: list
    A: csr_array
    f: np.ndarray
    interfaces: list = field(default_factory=list)

    @property
    def n_multipliers(self) -> int:
        """Number of Lagrange multipliers."""
        return int(self.jumps[0].shape[0])


class FetiSystem:
    """Dual system of a `SplitProblem`."""

    def __init__(self, problem: SplitProblem):
        self.problem = problem
        self.solvers = [FactorizedInverse(A) for A in problem.matrices]
        M = problem.n_multipliers
        self.F = LinearOperator((M, M), matvec=self._matvec, dtype=float)
        self.d = sum(B @ inv.matvec(f) for B, inv, f in zip(problem.jumps, self.solvers, problem.loads))

    def _matvec(self, lam):
        lam = np.ravel(lam)
        return sum(B @ inv.matvec(B.T @ lam) for B, inv in zip(self.problem.jumps, self.solvers))

    def dense(self) -> np.ndarray:
        """Return F as a dense array."""
        return self.F.matmat(np.eye(self.F.shape[0]))

    def local_solutions(self, lam) -> list:
        """Return u_k = A_k^{-1} (f_k - B_k^T lam) for every subdomain."""
        return [
            inv.matvec(f - B.T @ lam)
            for B, inv, f in zip(self.problem.jumps, self.solvers, self.problem.loads)
        ]

    def global_solution(self, lam) -> np.ndarray:
        """Scatter the local solutions into the global numbering."""
        u = np.zeros(self.problem.A.shape[0])
        for idx, uk in zip(self.problem.glob, self.local_solutions(lam)):
            u[idx] = uk
        return u


def interval_problem(n_elements: int = 16, split: int = 7) -> SplitProblem:
    """Two subdomains of the 1-D Poisson problem, meeting at node `split`."""
    if not 1 <= split <= n_elements - 1:
        raise ValueError("split must be an interior node")
    h = 1.0 / n_elements
    A = (poisson((n_elements - 1,), format="csr") / h).tocsr()
    f = np.full(n_elements - 1, h)

    # interior nodes 1..n-1 have global indices 0..n-2
    left = np.arange(0, split)
    right = np.arange(split - 1, n_elements - 1)

    A1 = A[left][:, left].tolil()
    A1[split - 1, split - 1] = 1.0 / h
    A2 = A[right][:, right].tolil()
    A2[0, 0] = 1.0 / h

    f1 = f[left].copy()
    f1[-1] = h / 2
    f2 = f[right].copy()
    f2[0] = h / 2

    B1 = csr_array(([1.0], ([0], [split - 1])), shape=(1, left.size))
    B2 = csr_array(([-1.0], ([0], [0])), shape=(1, right.size))

    return SplitProblem(
        jumps=[B1, B2],
        matrices=[csr_array(A1), csr_array(A2)],
        loads=[f1, f2],
        glob=[left, right],
        A=csr_array(A),
        f=f,
        interfaces=[Interface.make(0, 1, [0], [0])],
    )


def strip_problem(nx: int = 9, ny: int = 5, cuts=(4,)) -> SplitProblem:
    """Horizontal strips of the 2-D Poisson problem.

    Grid node (i, j) has index i * ny + j. Strip s covers rows cuts[s-1]..cuts[s]
    (with 0 and nx - 1 at the ends), so row `cuts[s]` is shared by strips s and
    s + 1. One multiplier per shared node connects the two copies.
    """
    cuts = list(cuts)
    if not all(0 < c < nx - 1 for c in cuts) or any(b - a < 2 for a, b in zip(cuts, cuts[1:])):
        raise ValueError("cuts must be increasing interior rows at least two apart")
    A = csr_array(
        kron(identity(nx), poisson((ny,), format="csr")) + kron(poisson((nx,), format="csr"), identity(ny))
    )
    n = nx * ny
    f = np.ones(n)

    bounds = [0] + cuts + [nx - 1]
    rows = [np.arange(bounds[s], bounds[s + 1] + 1) for s in range(len(bounds) - 1)]
    glob = [(r[:, None] * ny + np.arange(ny)[None, :]).ravel() for r in rows]

    # number of strips containing each node
    count = np.zeros(n)
    for idx in glob:
        count[idx] += 1

    coo = A.tocoo()
    matrices, loads = [], []
    for idx in glob:
        local = np.full(n, -1)
        local[idx] = np.arange(idx.size)
        keep = (local[coo.row] >= 0) & (local[coo.col] >= 0)
        # couplings between two shared nodes are split between both strips
        share = np.where((count[coo.row[keep]] > 1) & (count[coo.col[keep]] > 1), 2.0, 1.0)
        vals = coo.data[keep] / share
        matrices.append(
            csr_array((vals, (local[coo.row[keep]], local[coo.col[keep]])), shape=(idx.size, idx.size))
        )
        loads.append(f[idx] / count[idx])

    n_cuts = len(cuts)
    M = n_cuts * ny
    entries = [([], [], []) for _ in glob]
    interfaces = []
    for c in range(n_cuts):
        below, above = c, c + 1
        # shared row is the last row of `below` and the first row of `above`
        nb = rows[below].size
        first = (nb - 1) * ny + np.arange(ny)
        second = np.arange(ny)
        lam = c * ny + np.arange(ny)
        entries[below][0].append(lam)
        entries[below][1].append(first)
        entries[below][2].append(np.ones(ny))
        entries[above][0].append(lam)
        entries[above][1].append(second)
        entries[above][2].append(-np.ones(ny))
        interfaces.append((below, above, first, second))

    jumps = []
    for idx, (r, cc, v) in zip(glob, entries):
        jumps.append(
            csr_array((np.concatenate(v), (np.concatenate(r), np.concatenate(cc))), shape=(M, idx.size))
        )

    # interface descriptors in skeleton-local numbering
    skel_faces = []
    for below, above, first, second in interfaces:
        sk_b = np.flatnonzero(np.bincount(jumps[below].indices, minlength=jumps[below].shape[1]))
        sk_a = np.flatnonzero(np.bincount(jumps[above].indices, minlength=jumps[above].shape[1]))
        skel_faces.append(
            Interface.make(below, above, np.searchsorted(sk_b, first), np.searchsorted(sk_a, second))
        )

    return SplitProblem(
        jumps=jumps, matrices=matrices, loads=loads, glob=glob, A=A, f=f, interfaces=skel_faces
    )


def redundant_jump_matrices(n_sub: int, n_local: int = 3, shared: int = 0) -> list:
    """Jump matrices for one dof (local index `shared`) shared by `n_sub` subdomains.

    Every pair of subdomains gets its own multiplier.
    """
    pairs = list(combinations(range(n_sub), 2))
    M = len(pairs)
    jumps = []
    for k in range(n_sub):
        r, v = [], []
        for m, (a, b) in enumerate(pairs):
            if k == a:
                r.append(m)
                v.append(1.0)
            elif k == b:
                r.append(m)
                v.append(-1.0)
        jumps.append(csr_array((v, (r, [shared] * len(r))), shape=(M, n_local)))
    return jumps


def dense_schur(A, dofs) -> np.ndarray:
    """Dense Schur complement of `A` onto `dofs`."""
    A = np.asarray(csr_array(A).toarray())
    dofs = np.asarray(dofs)
    rest = np.setdiff1d(np.arange(A.shape[0]), dofs)
    S = A[np.ix_(dofs, dofs)]
    if rest.size:
        S = S - A[np.ix_(dofs, rest)] @ np.linalg.solve(A[np.ix_(rest, rest)], A[np.ix_(rest, dofs)])
    return S
