import numpy as np
from typing import NamedTuple
from .model import StateSpaceModel
from ..utils import array_operations as ao


class SLSS(NamedTuple):
    simulated_response: np.ndarray
    simulated_state: np.ndarray


def simulate(model: StateSpaceModel,
             num_obs: int,
             rng: np.random.Generator,
             init_state: np.ndarray = None) -> SLSS:
    """
    Simulate a response and state trajectory from a linear-Gaussian state-space model:

        state(t) = G.state(t-1) + w(t),  w(t) ~ N(0, W)
        y(t) = F.state(t) + v(t),        v(t) ~ N(0, V)

    :param model: StateSpaceModel.
    :param num_obs: number of time steps n.
    :param rng: numpy Generator.
    :param init_state: ndarray of dimension (d,). If not provided, the initial
    state is drawn from N(m0, C0).
    :return: Named tuple with simulated_response (n, p) and simulated_state (n + 1, d).
    """
    F, G, V, W, m0, C0 = model
    p, d = F.shape

    state = np.empty((num_obs + 1, d), dtype=np.float64)
    y = np.empty((num_obs, p), dtype=np.float64)

    if init_state is None:
        state[0] = m0 + ao.psd_sqrt(C0).T.dot(rng.standard_normal(d))
    else:
        state[0] = init_state

    sqrt_W = ao.psd_sqrt(W).T
    sqrt_V = ao.psd_sqrt(V).T
    for t in range(1, num_obs + 1):
        state[t] = G.dot(state[t - 1]) + sqrt_W.dot(rng.standard_normal(d))
        y[t - 1] = F.dot(state[t]) + sqrt_V.dot(rng.standard_normal(p))

    return SLSS(y, state)
