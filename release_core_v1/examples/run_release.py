import argparse
import json
import logging
from pathlib import Path

import numpy as np

from release_model import ReleaseModel, check_mass_conservation
from release_model.config import load_run_config


def run(params_path: Path, outdir: Path, prefix: str = "release_run") -> dict:
    run_cfg = load_run_config(params_path)

    model = ReleaseModel(run_cfg.params, run_cfg.options)
    y0 = model.make_initial_state()

    traj = model.simulate(run_cfg.times, y0, **run_cfg.solver.as_kwargs())
    report = check_mass_conservation(traj, threshold=run_cfg.conservation_threshold)
    derived = model.compute_derived_outputs(traj)

    summary = {
        "params": {
            "n_layers": run_cfg.params.n_layers,
            "p1": run_cfg.params.p1,
            "p2": run_cfg.params.p2,
            "p3": run_cfg.params.p3,
        },
        "options": {
            "react_at_interface": run_cfg.options.react_at_interface,
            "release_flux": run_cfg.options.release_flux,
        },
        "solver": {"method": traj.method, "steps": traj.steps, "evaluations": traj.evaluations},
        "derived": derived,
        "conservation": report.summary(),
    }
    if run_cfg.physical is not None and derived["tau_half_release"] is not None:
        summary["derived"]["t_half_release_s"] = float(
            run_cfg.physical.time_from_tau(derived["tau_half_release"])
        )

    # Save outputs
    outdir.mkdir(parents=True, exist_ok=True)
    np.savetxt(outdir / f"{prefix}_times.csv", traj.times, delimiter=",")
    np.save(outdir / f"{prefix}_states.npy", traj.states)
    with (outdir / f"{prefix}_summary.json").open("w", encoding="utf-8") as f:
        json.dump(summary, f, indent=2)

    return summary


def main():
    parser = argparse.ArgumentParser(description="Run the ligand-release core on a YAML run file.")
    parser.add_argument("--params", type=str, required=True, help="Path to run YAML")
    parser.add_argument("--outdir", type=str, default="outputs", help="Output directory")
    parser.add_argument("--prefix", type=str, default="release_run", help="Output file prefix")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level")
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")

    summary = run(Path(args.params), Path(args.outdir), args.prefix)

    print("Simulation finished.")
    print("Summary:")
    print(json.dumps(summary, indent=2))


if __name__ == "__main__":
    main()
