from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pytest
import yaml

import run_release
from release_model import InvalidParameter
from release_model.config import (
    PhysicalParameters,
    build_run_from_yaml,
    load_run_config,
)


@pytest.fixture
def physical() -> PhysicalParameters:
    return PhysicalParameters(
        half_length_m=1.0e-3,
        diffusion_m2_s=1.0e-10,
        k_on_per_M_s=1.0e4,
        k_off_per_s=1.0e-2,
        ligand_loading_M=1.0e-3,
        host_M=2.0e-3,
    )


@pytest.fixture
def small_run() -> dict:
    return {
        "n_layers": 6,
        "dimensionless": {"p1": 2.0, "p2": 1.0, "p3": 1.0},
        "time": {"tau_end": 4.0, "tau_step": 0.5},
        "solver": {"method": "Radau", "rtol": 1.0e-7},
        "model": {"react_at_interface": True},
        "conservation": {"threshold": 1.0e-4},
    }


def test_physical_parameters_become_dimensionless(physical: PhysicalParameters) -> None:
    params = physical.to_dimensionless(25)

    assert params.n_layers == 25
    assert params.p1 == pytest.approx(1000.0)
    assert params.p2 == pytest.approx(0.01)
    assert params.p3 == pytest.approx(2.0)


def test_time_scaling_round_trip(physical: PhysicalParameters) -> None:
    assert float(physical.tau_from_time(100.0)) == pytest.approx(1.0)
    np.testing.assert_allclose(physical.time_from_tau([0.5, 2.0]), [50.0, 200.0])


def test_physical_parameters_reject_non_positive_length() -> None:
    with pytest.raises(InvalidParameter):
        PhysicalParameters(0.0, 1e-10, 1e4, 1e-2, 1e-3, 2e-3)


def test_build_run_from_dimensionless_block(small_run: dict) -> None:
    run_cfg = build_run_from_yaml(small_run)

    assert run_cfg.params.p1 == 2.0
    assert run_cfg.physical is None
    np.testing.assert_allclose(run_cfg.times, np.arange(9) * 0.5)
    assert run_cfg.solver.method == "Radau"
    assert run_cfg.solver.rtol == pytest.approx(1e-7)
    assert run_cfg.solver.atol == pytest.approx(1e-9)
    assert run_cfg.options.react_at_interface is True
    assert run_cfg.options.release_flux == "layer_balance"
    assert run_cfg.conservation_threshold == pytest.approx(1e-4)


def test_build_run_from_physical_block() -> None:
    cfg = {
        "n_layers": 10,
        "physical": {
            "half_length_m": 1.0e-3,
            "diffusion_m2_s": 1.0e-10,
            "k_on_per_M_s": 1.0e4,
            "k_off_per_s": 1.0e-2,
            "ligand_loading_M": 1.0e-3,
            "host_M": 2.0e-3,
        },
        "time": {"t_end_s": 1000.0, "t_step_s": 100.0},
    }
    run_cfg = build_run_from_yaml(cfg)

    assert run_cfg.physical is not None
    assert run_cfg.params.p2 == pytest.approx(0.01)
    assert run_cfg.times[-1] == pytest.approx(10.0)
    assert run_cfg.times.size == 11


@pytest.mark.parametrize(
    "mutate",
    [
        lambda cfg: cfg["dimensionless"].pop("p2"),
        lambda cfg: cfg.update(physical={"half_length_m": 1.0}),
        lambda cfg: cfg.update(time={"t_end_s": 10.0, "t_step_s": 1.0}),
        lambda cfg: cfg["solver"].update(method="RK45"),
        lambda cfg: cfg["model"].update(release_flux="sideways"),
        lambda cfg: cfg["dimensionless"].update(p1="lots"),
        lambda cfg: cfg.update(n_layers=2),
        lambda cfg: cfg.update(n_layers=10.5),
        lambda cfg: cfg["solver"].update(max_evaluations=1500.5),
        lambda cfg: cfg["model"].update(react_at_interface="false"),
        lambda cfg: cfg["model"].update(react_at_interface=1),
    ],
)
def test_malformed_run_files_are_rejected(small_run: dict, mutate) -> None:
    mutate(small_run)
    with pytest.raises(InvalidParameter):
        build_run_from_yaml(small_run)


def test_load_run_config_reads_yaml(tmp_path: Path, small_run: dict) -> None:
    path = tmp_path / "run.yaml"
    path.write_text(yaml.safe_dump(small_run), encoding="utf-8")

    run_cfg = load_run_config(path)
    assert run_cfg.params.n_layers == 6


def test_example_runner_writes_outputs(tmp_path: Path, small_run: dict) -> None:
    path = tmp_path / "run.yaml"
    path.write_text(yaml.safe_dump(small_run), encoding="utf-8")
    outdir = tmp_path / "out"

    summary = run_release.run(path, outdir, prefix="case")

    assert (outdir / "case_times.csv").exists()
    states = np.load(outdir / "case_states.npy")
    assert states.shape == (9, 13)

    written = json.loads((outdir / "case_summary.json").read_text(encoding="utf-8"))
    assert written["conservation"]["violated"] is False
    assert written["options"]["react_at_interface"] is True
    assert summary["solver"]["method"] == "Radau"
    assert 0.0 < summary["derived"]["released_fraction"] <= 1.0 + 1e-6


def test_packaged_example_file_parses() -> None:
    example = Path(run_release.__file__).with_name("params_example.yaml")
    run_cfg = load_run_config(example)

    assert run_cfg.params.n_layers == 50
    assert run_cfg.params.p1 == pytest.approx(1000.0)
    assert run_cfg.times[-1] == pytest.approx(864.0)


def test_integral_floats_are_accepted_for_integer_keys(small_run: dict) -> None:
    small_run["n_layers"] = 8.0
    small_run["solver"]["max_evaluations"] = 1.5e3

    run_cfg = build_run_from_yaml(small_run)

    assert run_cfg.params.n_layers == 8
    assert isinstance(run_cfg.params.n_layers, int)
    assert run_cfg.solver.max_evaluations == 1500
    assert isinstance(run_cfg.solver.max_evaluations, int)
