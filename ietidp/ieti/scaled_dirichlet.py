"""Scaled Dirichlet preconditioner for IETI-DP.

The preconditioner acts on the space of Lagrange multipliers and reads

    M^{-1} = sum_k  B_k W_k^T S_k W_k B_k^T

with the jump matrix B_k restricted to the skeleton of subdomain k, the local
Schur complement S_k of the stiffness matrix onto the skeleton and the scaling
W_k = D_k^{-1}. The pieces are built by the submodules of `ietidp.ieti.sdp`;
this module holds the builder class and a functional entry point.

Setup diagnostics in the end-to-end tests:

    IETIDP_PRINT_INFO=1 pytest -q -s ietidp/tests/ieti/test_end_to_end.py
"""

from __future__ import annotations

from typing import Any, Iterable, Sequence
from warnings import warn

from scipy.sparse import SparseEfficiencyWarning, csr_array, issparse

from pyamg.util.utils import asfptype

from ietidp.errors import ConfigurationError, EmptyDomainError
from ietidp.krylov import bicgstab
from ietidp.operators import as_operator

from .sdp.assembly import _sdp_assemble_preconditioner
from .sdp.scaling import _sdp_setup_deluxe_scaling, _sdp_setup_multiplicity_scaling
from .sdp.skeleton import (
    matrix_blocks,
    matrix_schur_complement,
    restrict_jump_matrix,
    restrict_to_skeleton,
    schur_complement,
    skeleton_dofs,
)
from .sdp.stats import (
    SDPSetupStats,
    _sdp_finalize_setup_stats,
    _sdp_print_setup_summary,
    _sdp_print_solve_summary,
)
from .sdp.types import Interface, SDPConfig, Subdomain


def _sdp_as_csr(A, name: str):
    """Return `A` in CSR format, warning on implicit conversion."""
    if not issparse(A) or A.format != "csr":
        try:
            A = csr_array(A)
            warn(f"Implicit conversion of {name} to CSR", SparseEfficiencyWarning)
        except Exception as e:
            raise TypeError(f"Argument {name} must have type csr_array, "
                            "or be convertible to csr_array") from e
    return A


def _sdp_as_interface(face: Any) -> Interface:
    """Accept an Interface or a `(first, second, first_dofs, second_dofs)` tuple."""
    if isinstance(face, Interface):
        return face
    try:
        first, second, first_dofs, second_dofs = face
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            "interfaces must be Interface objects or (first, second, first_dofs, second_dofs) tuples"
        ) from e
    return Interface.make(first, second, first_dofs, second_dofs)


class ScaledDirichletPrec:
    """Builder of the scaled Dirichlet preconditioner.

    Parameters
    ----------
    config
        Builder options; defaults to `SDPConfig()`.

    Notes
    -----
    Lifecycle: `add_subdomain` for every subdomain, one of the scaling setups
    (or `set_local_scaling` per subdomain), then `preconditioner()`. The
    returned operator does not reference the builder and may be reused for
    any number of solves.

    Examples
    --------
    >>> from ietidp.ieti import ScaledDirichletPrec
    >>> prec = ScaledDirichletPrec()
    >>> for B, A in zip(jump_matrices, local_matrices):   # doctest: +SKIP
    ...     prec.add_subdomain_from_matrix(B, A)
    >>> prec.setup_multiplicity_scaling()                 # doctest: +SKIP
    >>> M = prec.preconditioner()                         # doctest: +SKIP
    """

    skeleton_dofs = staticmethod(skeleton_dofs)
    restrict_jump_matrix = staticmethod(restrict_jump_matrix)
    matrix_blocks = staticmethod(matrix_blocks)
    schur_complement = staticmethod(schur_complement)
    matrix_schur_complement = staticmethod(matrix_schur_complement)
    restrict_to_skeleton = staticmethod(restrict_to_skeleton)

    def __init__(self, config: SDPConfig | None = None):
        self.config = SDPConfig() if config is None else config
        self.stats = SDPSetupStats()
        self._subdomains: list[Subdomain] = []

    # ---- registration ----

    def reserve(self, n: int) -> None:
        """Announce the number of subdomains that will be added.

        Lists grow on demand, so this only checks the value.
        """
        if int(n) < 0:
            raise ValueError(f"cannot reserve a negative number of subdomains ({n})")

    def add_subdomain(self, jump_matrix, schur_op=None) -> int:
        """Register one subdomain.

        Parameters
        ----------
        jump_matrix
            Jump matrix restricted to the skeleton, shape (M, n_k). A pair
            `(jump_matrix, schur_op)` as returned by `restrict_to_skeleton` is
            accepted as the only argument.
        schur_op
            Local Schur complement (operator or matrix) of shape (n_k, n_k).

        Returns
        -------
        k
            Index of the new subdomain.

        Raises
        ------
        ConfigurationError
            If the row count differs from earlier subdomains or the Schur
            operator does not match the column count.
        """
        if schur_op is None:
            if not isinstance(jump_matrix, tuple) or len(jump_matrix) != 2:
                raise TypeError("add_subdomain expects (jump_matrix, schur_op)")
            jump_matrix, schur_op = jump_matrix
        k = len(self._subdomains)
        jump = _sdp_as_csr(jump_matrix, "jump_matrix")
        schur = as_operator(schur_op)

        if schur.shape[0] != schur.shape[1]:
            raise ConfigurationError(f"Schur complement of subdomain {k} is not square: {schur.shape}")
        if jump.shape[1] != schur.shape[0]:
            raise ConfigurationError(
                f"jump matrix of subdomain {k} has {jump.shape[1]} columns, "
                f"but its Schur complement has dimension {schur.shape[0]}"
            )
        if self._subdomains and jump.shape[0] != self._subdomains[0].jump.shape[0]:
            raise ConfigurationError(
                f"jump matrix of subdomain {k} has {jump.shape[0]} rows, "
                f"expected {self._subdomains[0].jump.shape[0]} Lagrange multipliers"
            )
        self._subdomains.append(Subdomain(jump=jump, schur=schur))
        return k

    def add_subdomain_from_matrix(self, jump_matrix, local_matrix, dofs=None) -> int:
        """Register a subdomain given its full jump matrix and stiffness matrix.

        The local problem is reduced to the skeleton (by default the dofs the
        jump matrix acts on) with `restrict_to_skeleton`.
        """
        k = len(self._subdomains)
        with self.stats.timeit("schur"):
            pair = restrict_to_skeleton(jump_matrix, local_matrix, dofs=dofs, subdomain=k)
        self.add_subdomain(*pair)
        self._subdomains[k].n_local = int(local_matrix.shape[0])
        return k

    # ---- accessors ----

    @property
    def n_subdomains(self) -> int:
        """Number of registered subdomains."""
        return len(self._subdomains)

    def n_lagrange_multipliers(self) -> int:
        """Return M, the row count shared by all jump matrices."""
        if not self._subdomains:
            raise EmptyDomainError("the number of Lagrange multipliers is undefined without subdomains")
        return int(self._subdomains[0].jump.shape[0])

    def jump_matrix(self, k: int) -> csr_array:
        """Return the skeleton jump matrix of subdomain `k`."""
        return self._subdomains[k].jump

    def local_schur_op(self, k: int):
        """Return the local Schur complement operator of subdomain `k`."""
        return self._subdomains[k].schur

    def local_scaling(self, k: int):
        """Return the scaling W_k of subdomain `k` (None if not set up)."""
        return self._subdomains[k].scaling

    def set_local_scaling(self, k: int, scaling) -> None:
        """Use the matrix `scaling` as W_k = D_k^{-1} for subdomain `k`."""
        sub = self._subdomains[k]
        W = _sdp_as_csr(scaling, "scaling")
        n = sub.n_skeleton
        if W.shape != (n, n):
            raise ConfigurationError(f"scaling of subdomain {k} must have shape {(n, n)}, got {W.shape}")
        sub.scaling = W
        sub.weights = None

    # ---- scaling ----

    def setup_multiplicity_scaling(self) -> None:
        """Scale every skeleton dof by one over its multiplicity."""
        with self.stats.timeit("scaling"):
            _sdp_setup_multiplicity_scaling(subdomains=self._subdomains)
        self.stats.scaling = "multiplicity"

    def setup_deluxe_scaling(self, interfaces: Iterable[Any]) -> None:
        """Set up deluxe scaling on the given interfaces.

        Parameters
        ----------
        interfaces
            `Interface` objects or `(first, second, first_dofs, second_dofs)`
            tuples in skeleton-local numbering.
        """
        faces = [_sdp_as_interface(face) for face in interfaces]
        with self.stats.timeit("scaling"):
            info = _sdp_setup_deluxe_scaling(subdomains=self._subdomains, interfaces=faces)
        self.stats.scaling = "deluxe"
        self.stats.extra.update(info)

    def setup_scaling(self, interfaces: Iterable[Any] | None = None) -> None:
        """Set up the scaling selected by `config.scaling`."""
        if self.config.scaling == "deluxe":
            if interfaces is None:
                raise ConfigurationError("deluxe scaling requires interface descriptors")
            self.setup_deluxe_scaling(interfaces)
        else:
            self.setup_multiplicity_scaling()

    # ---- assembly ----

    def preconditioner(self, n_jobs: int | None = None):
        """Return the preconditioner as an operator of shape (M, M).

        Parameters
        ----------
        n_jobs
            Worker threads for the subdomain terms; defaults to `config.n_jobs`.
        """
        if n_jobs is None:
            n_jobs = self.config.n_jobs
        with self.stats.timeit("assemble"):
            prec = _sdp_assemble_preconditioner(subdomains=self._subdomains, n_jobs=n_jobs)
        _sdp_finalize_setup_stats(stats=self.stats, subdomains=self._subdomains)
        _sdp_print_setup_summary(self.stats, print_info=self.config.print_info)
        return prec

    def solve(self, system, rhs, x0=None, tol: float = 1e-8, maxiter: int | None = None,
              residuals: list | None = None, M=None):
        """Solve the multiplier system `system @ lam = rhs` with preconditioned BiCGStab.

        Parameters
        ----------
        M
            Operator returned by an earlier `preconditioner()` call. If None the
            preconditioner is assembled here, so repeated solves should pass it.

        Returns
        -------
        result
            `BiCGStabResult`; the solver does not raise on non-convergence.
        """
        if M is None:
            M = self.preconditioner()
        result = bicgstab(system, rhs, x0=x0, tol=tol, maxiter=maxiter, M=M, residuals=residuals)
        _sdp_print_solve_summary(result, print_info=self.config.print_info)
        return result


def scaled_dirichlet_preconditioner(jump_matrices: Sequence[Any],
                                    local_matrices: Sequence[Any],
                                    scaling="multiplicity",
                                    interfaces=None,
                                    n_jobs=None,
                                    print_info=False):
    """Build the scaled Dirichlet preconditioner from jump and stiffness matrices.

    Parameters
    ----------
    jump_matrices
        Per-subdomain jump matrices B_k of shape (M, n_k_local).
    local_matrices
        Per-subdomain stiffness matrices A_k of shape (n_k_local, n_k_local).
    scaling : {"multiplicity", "deluxe"}
        Scaling policy.
    interfaces
        Interface descriptors for deluxe scaling, in skeleton-local numbering.
    n_jobs
        Worker threads used to apply the preconditioner.
    print_info
        Print setup statistics.

    Returns
    -------
    prec
        Operator of shape (M, M).

    Examples
    --------
    >>> from ietidp.ieti import scaled_dirichlet_preconditioner
    >>> M = scaled_dirichlet_preconditioner(Bs, As)   # doctest: +SKIP
    """
    if len(jump_matrices) != len(local_matrices):
        raise ValueError(f"got {len(jump_matrices)} jump matrices but {len(local_matrices)} local matrices")
    config = SDPConfig(scaling=scaling, n_jobs=n_jobs, print_info=print_info)
    builder = ScaledDirichletPrec(config)
    builder.reserve(len(jump_matrices))

    for B, A in zip(jump_matrices, local_matrices):
        with builder.stats.timeit("convert"):
            B = asfptype(_sdp_as_csr(B, "B"))
            A = asfptype(_sdp_as_csr(A, "A"))
            if A.shape[0] != A.shape[1]:
                raise ValueError("expected square local matrices")
            A.sort_indices()
        builder.add_subdomain_from_matrix(B, A)

    builder.setup_scaling(interfaces)
    return builder.preconditioner()
