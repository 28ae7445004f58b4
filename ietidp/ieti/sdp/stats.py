"""Setup timings and console summaries for the scaled Dirichlet preconditioner.

`SDPSetupStats` collects wall-clock time per build phase together with
per-subdomain size statistics. The two `_sdp_print_*` functions render it
(and a finished BiCGStab result) when `print_info` is set; no other module
of the package prints.

The builder times its phases like this:

    with stats.timeit("schur"):
        ... local Schur complements ...
    with stats.timeit("scaling"):
        ... multiplicity or deluxe scaling ...
    _sdp_finalize_setup_stats(stats=stats, subdomains=subdomains)
    _sdp_print_setup_summary(stats, print_info=print_info)

Phases are printed in the order convert, schur, scaling, assemble; unknown
keys are kept but not printed.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Sequence
import time

from .types import Subdomain

import numpy as np

PHASES = ("convert", "schur", "scaling", "assemble")


@dataclass(slots=True)
class SDPSetupStats:
    """Timings and size statistics of one preconditioner build.

    Attributes
    ----------
    n_subdomains, n_multipliers
        Filled in by `_sdp_finalize_setup_stats`.
    scaling
        Scaling policy that was set up, or None.
    timings
        Seconds spent per phase key; repeated phases accumulate.
    extra
        Derived values: `(min, med, max)` spreads and deluxe face counters.
    """

    n_subdomains: int | None = None
    n_multipliers: int | None = None
    scaling: str | None = None
    timings: dict[str, float] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @contextmanager
    def timeit(self, key: str):
        """Add the wall-clock time of the block to `timings[key]`."""
        start = time.perf_counter()
        try:
            yield
        finally:
            elapsed = time.perf_counter() - start
            self.timings[key] = self.timings.get(key, 0.0) + elapsed


def _sdp_record_spread(extra: dict[str, Any], key: str, values) -> None:
    """Record `(min, median, max)` of per-subdomain `values` as `extra[key]`; no-op when empty."""
    v = np.asarray(values, dtype=float).ravel()
    if v.size:
        extra[key] = (float(v.min()), float(np.median(v)), float(v.max()))


def _sdp_finalize_setup_stats(*, stats: SDPSetupStats, subdomains: Sequence[Subdomain]) -> None:
    """Populate derived statistics for a completed setup.

    Parameters
    ----------
    stats
        The stats object (mutated in-place).
    subdomains
        Registered subdomains.
    """
    stats.n_subdomains = len(subdomains)
    stats.n_multipliers = int(subdomains[0].jump.shape[0]) if subdomains else 0

    n_local = [sub.n_local for sub in subdomains if sub.n_local is not None]
    _sdp_record_spread(stats.extra, "local", n_local)
    _sdp_record_spread(stats.extra, "skeleton", [sub.n_skeleton for sub in subdomains])
    _sdp_record_spread(stats.extra, "jump_nnz", [sub.jump.nnz for sub in subdomains])

    weights = [sub.weights for sub in subdomains if sub.weights is not None]
    if weights:
        _sdp_record_spread(stats.extra, "weight", np.concatenate(weights))


def _sdp_fmt_scalar(value) -> str:
    """Compact text for a scalar: scientific notation outside [1e-2, 1e4)."""
    if isinstance(value, (int, np.integer)):
        return str(value)
    v = float(value)
    if v != 0.0 and not 1e-2 <= abs(v) < 1e4:
        return f"{v:.2e}"
    return f"{v:.3g}"


def _sdp_fmt_spread(extra: dict[str, Any], key: str) -> str:
    """Return the recorded spread `extra[key]` as `min/med/max`, or `n/a`."""
    spread = extra.get(key)
    if spread is None:
        return "n/a"
    return "/".join(_sdp_fmt_scalar(v) for v in spread)


def _sdp_fmt_seconds(t: float) -> str:
    """Durations below one second in milliseconds, longer ones in seconds."""
    if t < 1.0:
        return f"{1e3 * t:7.1f}ms"
    return f"{t:7.2f}s"


def _sdp_print_setup_summary(
    stats: SDPSetupStats,
    *,
    print_info: bool,
    prefix: str = "SDP",
    indent: str = "",
) -> None:
    """Print a compact summary of setup diagnostics and timings.

    Parameters
    ----------
    stats
        Stats object that has already been finalized.
    print_info
        If False, does nothing.
    prefix
        Short label prefix.
    indent
        Optional indentation string (useful if caller nests printing).
    """
    if not print_info:
        return

    K = stats.n_subdomains if stats.n_subdomains is not None else "?"
    M = stats.n_multipliers if stats.n_multipliers is not None else "?"
    print(f"{indent}{prefix:<3}  subdomains={K:<5}  multipliers={M:<7}  scaling={stats.scaling or 'none'}")

    print(f"{indent}     subdomains (min/med/max):")
    print(f"{indent}       local    : {_sdp_fmt_spread(stats.extra, 'local')}")
    print(f"{indent}       skeleton : {_sdp_fmt_spread(stats.extra, 'skeleton')}")
    print(f"{indent}       B nnz    : {_sdp_fmt_spread(stats.extra, 'jump_nnz')}")
    print(f"{indent}       weight   : {_sdp_fmt_spread(stats.extra, 'weight')}")

    if "faces" in stats.extra:
        print(f"{indent}     deluxe:")
        print(f"{indent}       faces    : {stats.extra['faces']}")
        print(f"{indent}       dofs     : {stats.extra.get('deluxe_dofs', 'n/a')} deluxe, "
              f"{stats.extra.get('counted_dofs', 'n/a')} counted")

    phases = [(k, stats.timings[k]) for k in PHASES if k in stats.timings]
    print(f"{indent}     timing:")
    for k, seconds in phases:
        print(f"{indent}       {k:<11} {_sdp_fmt_seconds(seconds)}")
    print(f"{indent}       {'total':<11} {_sdp_fmt_seconds(sum(s for _, s in phases))}")


def _sdp_print_solve_summary(result, *, print_info: bool, indent: str = "") -> None:
    """Print the outcome of a Krylov solve.

    Parameters
    ----------
    result
        A `BiCGStabResult`.
    print_info
        If False, does nothing.
    indent
        Optional indentation prefix.
    """
    if not print_info:
        return
    print(
        f"{indent}SDP  solve  state={result.state.name}  iters={result.iterations}  "
        f"res={_sdp_fmt_scalar(result.residual)}  restarts={result.restarts}"
    )
