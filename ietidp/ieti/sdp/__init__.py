"""Scaled Dirichlet preconditioner internals.

This package contains the building blocks used by
`ietidp.ieti.scaled_dirichlet`.

Modules
-------
types
    Dataclass containers (subdomain state, matrix blocks, interfaces, options).
skeleton
    Skeleton dofs, restricted jump matrices, block partition and Schur complements.
scaling
    Multiplicity and deluxe scaling.
assembly
    Consistency checks and the additive combination of the subdomain terms.
stats
    Setup timing and diagnostic reporting.
"""

from __future__ import annotations

from . import assembly, scaling, skeleton, stats, types

__all__ = [
    "types",
    "skeleton",
    "scaling",
    "assembly",
    "stats",
]
