from __future__ import annotations

import numpy as np
import pytest

from release_model import (
    ConservationViolation,
    InvalidParameter,
    ModelOptions,
    ReleaseModel,
    ReleaseParams,
    StateIndexLayout,
    Trajectory,
    check_mass_conservation,
    make_output_times,
    mass_totals,
)


def _synthetic(totals) -> Trajectory:
    """Three-layer trajectory whose only moving part is RELEASE."""

    layout = StateIndexLayout(3)
    rows = [layout.pack([0.5, 0.3, 0.0], [0.1, 0.1, 0.0], total - 1.0) for total in totals]
    return Trajectory(
        times=np.arange(len(totals), dtype=float),
        states=np.vstack(rows),
        layout=layout,
        evaluations=0,
        steps=0,
        method="BDF",
    )


def test_mass_totals_sums_every_field() -> None:
    traj = _synthetic([1.0, 1.0, 1.0])
    np.testing.assert_allclose(mass_totals(traj), [1.0, 1.0, 1.0])
    np.testing.assert_allclose(mass_totals(traj.states, traj.layout), [1.0, 1.0, 1.0])


def test_mass_totals_needs_layout_for_raw_arrays() -> None:
    with pytest.raises(InvalidParameter):
        mass_totals(np.zeros((2, 7)))


def test_tolerance_noise_is_not_a_violation() -> None:
    traj = _synthetic([1.0, 1.0 + 1e-7, 1.0 - 1e-7, 1.0 + 2e-7, 1.0])
    report = check_mass_conservation(traj, threshold=1e-3)

    assert not report.violated
    assert not report.growing
    assert report.max_abs_deviation == pytest.approx(2e-7)


def test_growing_drift_is_reported_as_warning() -> None:
    traj = _synthetic([1.0, 1.01, 1.02, 1.03, 1.04, 1.05])

    with pytest.warns(ConservationViolation):
        report = check_mass_conservation(traj, threshold=1e-3)

    assert report.violated
    assert report.growing
    assert report.max_rel_deviation == pytest.approx(0.05)
    assert report.summary()["final_total"] == pytest.approx(1.05)


def test_check_can_stay_silent() -> None:
    import warnings

    traj = _synthetic([1.0, 1.5])
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        report = check_mass_conservation(traj, warn=False)
    assert report.violated


def test_threshold_must_be_positive() -> None:
    with pytest.raises(InvalidParameter):
        check_mass_conservation(_synthetic([1.0, 1.0]), threshold=0.0)


@pytest.mark.parametrize("react_at_interface", [False, True])
def test_conservative_release_holds_for_both_interface_policies(react_at_interface: bool) -> None:
    params = ReleaseParams(n_layers=12, p1=20.0, p2=0.5, p3=1.5)
    model = ReleaseModel(params, ModelOptions(react_at_interface=react_at_interface))
    traj = model.simulate(make_output_times(5.0, 0.5), model.make_initial_state(), rtol=1e-8, atol=1e-11)

    report = check_mass_conservation(traj, threshold=1e-5)
    assert not report.violated


def test_interface_gradient_release_is_flagged() -> None:
    params = ReleaseParams(n_layers=10, p1=2.0, p2=1.0, p3=1.0)
    model = ReleaseModel(params, ModelOptions(release_flux="interface_gradient"))
    traj = model.simulate(make_output_times(3.0, 0.5), model.make_initial_state())

    with pytest.warns(ConservationViolation, match="exceeds threshold"):
        report = check_mass_conservation(traj)
    assert report.violated
