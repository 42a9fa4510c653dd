"""
config.py — run configuration (YAML) and physical → dimensionless parameters.

A run file looks like:

    n_layers: 50
    physical:                 # or `dimensionless: {p1, p2, p3}`
      half_length_m: 1.0e-3
      diffusion_m2_s: 1.0e-10
      k_on_per_M_s: 1.0e4
      k_off_per_s: 1.0e-2
      ligand_loading_M: 1.0e-3
      host_M: 2.0e-3
    time:
      t_end_s: 3600.0         # or tau_end / tau_step
      t_step_s: 60.0
    solver:
      method: BDF
      rtol: 1.0e-6
      atol: 1.0e-9
    model:
      react_at_interface: false
      release_flux: layer_balance
    conservation:
      threshold: 1.0e-3

Time is scaled by the dissociation rate, τ = k_off · t, which gives

    p1 = k_on · c0 / k_off       p2 = D / (k_off · L²)       p3 = host / c0
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import numpy as np
import yaml

from .core import STIFF_METHODS, ModelOptions, ReleaseParams, make_output_times
from .errors import InvalidParameter


_MISSING = object()


# ---------------------------------------------------------------------------
#  Physical parameters
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PhysicalParameters:
    """
    Physical inputs of one release experiment (SI / molar units).

      half_length_m     : distance from the symmetry centre to the liquid interface
      diffusion_m2_s    : free-ligand diffusion coefficient in the polymer
      k_on_per_M_s      : association rate constant ligand + host → complex
      k_off_per_s       : dissociation rate constant
      ligand_loading_M  : initial total ligand concentration c0 (normalisation)
      host_M            : total host concentration
    """

    half_length_m: float
    diffusion_m2_s: float
    k_on_per_M_s: float
    k_off_per_s: float
    ligand_loading_M: float
    host_M: float

    def __post_init__(self) -> None:
        for name in ("half_length_m", "diffusion_m2_s", "k_off_per_s", "ligand_loading_M"):
            value = getattr(self, name)
            if not (np.isfinite(value) and value > 0.0):
                raise InvalidParameter(f"{name} must be positive, got {value!r}")
        for name in ("k_on_per_M_s", "host_M"):
            value = getattr(self, name)
            if not (np.isfinite(value) and value >= 0.0):
                raise InvalidParameter(f"{name} must be non-negative, got {value!r}")

    def to_dimensionless(self, n_layers: int) -> ReleaseParams:
        return ReleaseParams(
            n_layers=n_layers,
            p1=self.k_on_per_M_s * self.ligand_loading_M / self.k_off_per_s,
            p2=self.diffusion_m2_s / (self.k_off_per_s * self.half_length_m ** 2),
            p3=self.host_M / self.ligand_loading_M,
        )

    def tau_from_time(self, t_s):
        return self.k_off_per_s * np.asarray(t_s, dtype=float)

    def time_from_tau(self, tau):
        return np.asarray(tau, dtype=float) / self.k_off_per_s


# ---------------------------------------------------------------------------
#  Run configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SolverSettings:
    method: str = "BDF"
    rtol: float = 1e-6
    atol: float = 1e-9
    max_step: Optional[float] = None
    max_evaluations: Optional[int] = None

    def __post_init__(self) -> None:
        if self.method not in STIFF_METHODS:
            raise InvalidParameter(f"solver.method must be one of {STIFF_METHODS}, got {self.method!r}")

    def as_kwargs(self) -> dict:
        return {
            "method": self.method,
            "rtol": self.rtol,
            "atol": self.atol,
            "max_step": self.max_step,
            "max_evaluations": self.max_evaluations,
        }


@dataclass(frozen=True)
class RunConfig:
    """Everything needed for one simulate() call plus its conservation check."""

    params: ReleaseParams
    times: np.ndarray
    options: ModelOptions = field(default_factory=ModelOptions)
    solver: SolverSettings = field(default_factory=SolverSettings)
    conservation_threshold: float = 1e-3
    physical: Optional[PhysicalParameters] = None


def _section(cfg: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = cfg.get(key) or {}
    if not isinstance(value, Mapping):
        raise InvalidParameter(f"'{key}' must be a mapping, got {type(value).__name__}")
    return value


def _number(section: Mapping[str, Any], key: str, default: Any = _MISSING, cast=float):
    if key not in section or section[key] is None:
        if default is _MISSING:
            raise InvalidParameter(f"missing required key '{key}'")
        return default
    try:
        return cast(section[key])
    except (TypeError, ValueError) as exc:
        raise InvalidParameter(f"'{key}' is not a valid number: {section[key]!r}") from exc


def _integer(section: Mapping[str, Any], key: str, default: Any = _MISSING):
    value = _number(section, key, default=default)
    if value is None or value is default:
        return value
    if isinstance(section[key], bool) or not float(value).is_integer():
        raise InvalidParameter(f"'{key}' must be an integer, got {section[key]!r}")
    return int(value)


def _flag(section: Mapping[str, Any], key: str, default: bool) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise InvalidParameter(f"'{key}' must be true or false, got {value!r}")
    return value


def build_physical_from_yaml(phys: Mapping[str, Any]) -> PhysicalParameters:
    return PhysicalParameters(
        half_length_m=_number(phys, "half_length_m"),
        diffusion_m2_s=_number(phys, "diffusion_m2_s"),
        k_on_per_M_s=_number(phys, "k_on_per_M_s"),
        k_off_per_s=_number(phys, "k_off_per_s"),
        ligand_loading_M=_number(phys, "ligand_loading_M"),
        host_M=_number(phys, "host_M"),
    )


def build_run_from_yaml(cfg: Mapping[str, Any]) -> RunConfig:
    """Turn a parsed YAML mapping into a validated RunConfig."""
    if not isinstance(cfg, Mapping):
        raise InvalidParameter("run configuration must be a mapping")

    n_layers = _integer(cfg, "n_layers")

    # --- parameters -------------------------------------------------------
    physical: Optional[PhysicalParameters] = None
    if "physical" in cfg:
        if "dimensionless" in cfg:
            raise InvalidParameter("give either 'physical' or 'dimensionless', not both")
        physical = build_physical_from_yaml(_section(cfg, "physical"))
        params = physical.to_dimensionless(n_layers)
    else:
        dim = _section(cfg, "dimensionless")
        params = ReleaseParams(
            n_layers=n_layers,
            p1=_number(dim, "p1"),
            p2=_number(dim, "p2"),
            p3=_number(dim, "p3"),
        )

    # --- output times -----------------------------------------------------
    tcfg = _section(cfg, "time")
    if "t_end_s" in tcfg:
        if physical is None:
            raise InvalidParameter("time in seconds needs a 'physical' block")
        tau_end = float(physical.tau_from_time(_number(tcfg, "t_end_s")))
        tau_step = float(physical.tau_from_time(_number(tcfg, "t_step_s")))
    else:
        tau_end = _number(tcfg, "tau_end")
        tau_step = _number(tcfg, "tau_step", default=tau_end / 100.0)
    times = make_output_times(tau_end, tau_step)

    # --- solver / model / conservation -------------------------------------
    scfg = _section(cfg, "solver")
    max_evaluations = _integer(scfg, "max_evaluations", default=None)
    solver = SolverSettings(
        method=str(scfg.get("method", "BDF")),
        rtol=_number(scfg, "rtol", default=1e-6),
        atol=_number(scfg, "atol", default=1e-9),
        max_step=_number(scfg, "max_step", default=None),
        max_evaluations=max_evaluations,
    )

    mcfg = _section(cfg, "model")
    options = ModelOptions(
        react_at_interface=_flag(mcfg, "react_at_interface", False),
        release_flux=str(mcfg.get("release_flux", "layer_balance")),
    )

    threshold = _number(_section(cfg, "conservation"), "threshold", default=1e-3)

    return RunConfig(
        params=params,
        times=times,
        options=options,
        solver=solver,
        conservation_threshold=threshold,
        physical=physical,
    )


def load_run_config(path: Union[str, Path]) -> RunConfig:
    path = Path(path)
    with path.open("r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f)
    return build_run_from_yaml(cfg)
