"""
Ligand release from a host-loaded polymer cylinder — core (v1)

This package exposes the main model classes from `core.py` for convenience.
"""

from .core import (
    StateIndexLayout,
    ReleaseParams,
    ModelOptions,
    Trajectory,
    EvaluationCounter,
    ReleaseModel,
    binding_rate,
    reaction_rates,
    diffusion_term,
    diffusion_rates,
    release_rate,
    derivative,
    equilibrium_complex,
    make_output_times,
)
from .conservation import ConservationReport, check_mass_conservation, mass_totals
from .errors import (
    ReleaseModelError,
    InvalidLength,
    InvalidParameter,
    IntegrationFailure,
    ConservationViolation,
)
