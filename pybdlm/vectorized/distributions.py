import numpy as np
from numba import njit


@njit
def vec_ig(rng, shape, rate):
    """
    Independent inverse-gamma draws, one per component of shape/rate.
    Draws are taken from the generator passed in so that every chain
    owns its random stream.
    """
    ig = np.empty(shape.size, dtype=np.float64)
    for i in range(shape.size):
        ig[i] = 1. / rng.gamma(shape[i], 1. / rate[i])
    return ig
