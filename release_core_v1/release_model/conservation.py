"""
conservation.py — mass-conservation check for a release trajectory.

    total(τ) = sum(LIGAND(τ)) + sum(COMPLEX(τ)) + RELEASE(τ)

must stay at total(0) up to integration tolerance. Drift above the threshold
is reported (ConservationViolation warning), never raised: some drift is
expected from tolerances, systematic drift points at the discretisation.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
from numpy.typing import ArrayLike

from .core import StateIndexLayout, Trajectory
from .errors import ConservationViolation, InvalidParameter


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConservationReport:
    """
    Outcome of check_mass_conservation().

      totals            : total(τ) for every output time
      max_abs_deviation : max |total(τ) - total(0)|
      max_rel_deviation : max_abs_deviation / |total(0)| (absolute if total(0) == 0)
      violated          : max_rel_deviation > threshold
      growing           : late-half drift more than twice the early-half drift
    """

    times: np.ndarray
    totals: np.ndarray
    max_abs_deviation: float
    max_rel_deviation: float
    threshold: float
    violated: bool
    growing: bool

    def summary(self) -> dict:
        return {
            "initial_total": float(self.totals[0]),
            "final_total": float(self.totals[-1]),
            "max_abs_deviation": self.max_abs_deviation,
            "max_rel_deviation": self.max_rel_deviation,
            "threshold": self.threshold,
            "violated": self.violated,
            "growing": self.growing,
        }


def mass_totals(
    states: Union[Trajectory, ArrayLike],
    layout: Optional[StateIndexLayout] = None,
) -> np.ndarray:
    """total(τ) per row of an (n_times, 2N+1) state history or a Trajectory."""
    if isinstance(states, Trajectory):
        layout = states.layout
        states = states.states
    if layout is None:
        raise InvalidParameter("a StateIndexLayout is required for raw state arrays")

    L, C, R = layout.unpack_trajectory(states)
    return L.sum(axis=1) + C.sum(axis=1) + R


def check_mass_conservation(
    trajectory: Trajectory,
    threshold: float = 1e-3,
    *,
    warn: bool = True,
) -> ConservationReport:
    """Compare total(τ) against total(0) over the whole trajectory."""
    if not threshold > 0.0:
        raise InvalidParameter(f"threshold must be positive, got {threshold}")

    totals = mass_totals(trajectory)
    deviation = np.abs(totals - totals[0])

    scale = abs(float(totals[0]))
    if scale == 0.0:
        scale = 1.0
    rel = deviation / scale

    max_abs = float(np.max(deviation))
    max_rel = float(np.max(rel))
    violated = max_rel > threshold

    half = max(1, rel.size // 2)
    early = float(np.max(rel[:half]))
    late = float(np.max(rel[half:])) if rel.size > half else early
    growing = late > 2.0 * early and late > 0.1 * threshold

    report = ConservationReport(
        times=np.asarray(trajectory.times),
        totals=totals,
        max_abs_deviation=max_abs,
        max_rel_deviation=max_rel,
        threshold=float(threshold),
        violated=bool(violated),
        growing=bool(growing),
    )

    if violated:
        msg = (
            f"mass conservation drift {max_rel:.3e} exceeds threshold {threshold:.1e} "
            f"(total {totals[0]:.6g} -> {totals[-1]:.6g}{', growing' if growing else ''})"
        )
        LOGGER.warning(msg)
        if warn:
            warnings.warn(msg, ConservationViolation, stacklevel=2)
    else:
        LOGGER.debug("mass conservation ok: max relative drift %.3e", max_rel)

    return report
