"""Scaled Dirichlet preconditioning for IETI-DP."""
from . import scaled_dirichlet
from .scaled_dirichlet import ScaledDirichletPrec, scaled_dirichlet_preconditioner
from .sdp.types import Interface, SDPConfig

__all__ = [
    'scaled_dirichlet',
    'ScaledDirichletPrec',
    'scaled_dirichlet_preconditioner',
    'Interface',
    'SDPConfig',
]
