import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
for path in (ROOT, ROOT / "examples"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

import numpy as np
import pytest

from release_model import ModelOptions, ReleaseModel, ReleaseParams


@pytest.fixture
def diffusion_params() -> ReleaseParams:
    """Ten layers, no host: pure diffusion out of the interface."""

    return ReleaseParams(n_layers=10, p1=0.0, p2=1.0, p3=0.0)


@pytest.fixture
def binding_params() -> ReleaseParams:
    return ReleaseParams(n_layers=10, p1=5.0, p2=1.0, p3=1.0)


@pytest.fixture
def binding_model(binding_params: ReleaseParams) -> ReleaseModel:
    return ReleaseModel(binding_params, ModelOptions())


@pytest.fixture
def random_state():
    def _make(n_layers: int, seed: int = 7) -> np.ndarray:
        rng = np.random.default_rng(seed)
        ligand = rng.uniform(0.0, 1.0, n_layers)
        complex_ = rng.uniform(0.0, 0.5, n_layers)
        return np.concatenate([ligand, complex_, [0.3]])

    return _make
