"""IETI-DP building blocks: scaled Dirichlet preconditioner and BiCGStab."""
from . import errors, operators
from . import ieti, krylov
from .ieti import ScaledDirichletPrec, scaled_dirichlet_preconditioner
from .krylov import bicgstab

__version__ = "0.1.0"

__all__ = [
    'errors',
    'operators',
    'ieti',
    'krylov',
    'ScaledDirichletPrec',
    'scaled_dirichlet_preconditioner',
    'bicgstab',
]
