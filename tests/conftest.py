import numpy as np
import pytest  # type: ignore

from pybdlm.statespace.model import ModelStructure, build_model
from pybdlm.statespace.simulation import simulate
from pybdlm.utils.data_transforms import as_observations


@pytest.fixture(scope="session")
def default_structure() -> ModelStructure:
    """Two series, local linear trend and three harmonics of period 6."""
    return ModelStructure()


@pytest.fixture(scope="session")
def default_theta(default_structure) -> np.ndarray:
    theta = np.full(default_structure.num_params, 0.05)
    theta[default_structure.observation_variance_index] = [0.5, 0.3]
    return theta


@pytest.fixture(scope="session")
def simulated_pair(default_structure, default_theta):
    """A deterministic two-series sample drawn from the default model."""
    model = build_model(default_theta, default_structure)
    rng = np.random.default_rng(123)
    sim = simulate(model, 60, rng, init_state=np.zeros(default_structure.num_state_eqs))
    return model, as_observations(sim.simulated_response), sim


@pytest.fixture(scope="session")
def local_level_structure() -> ModelStructure:
    return ModelStructure(num_series=1, trend_order=1, trig_seasonal=())
