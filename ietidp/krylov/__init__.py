"""Krylov solvers."""
from ._bicgstab import BiCGStab, BiCGStabResult, SolverState, bicgstab

__all__ = [
    'BiCGStab',
    'BiCGStabResult',
    'SolverState',
    'bicgstab',
]
