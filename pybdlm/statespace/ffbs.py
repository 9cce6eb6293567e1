import numpy as np
from .kalman_filter import KF, SVD_TOL
from ..errors import NumericalFailureError
from ..utils import array_operations as ao


def backward_sample(kf: KF,
                    rng: np.random.Generator) -> np.ndarray:
    """
    Forward-filtering backward-sampling. Draws one state trajectory from the
    joint posterior p(state(0), ..., state(n) | y(1), ..., y(n)) given the output
    of the Kalman filter:

        state(n) ~ N(m(n), C(n)),

    then for t = n - 1, ..., 0,

        state(t) | state(t+1) ~ N(h(t), H(t)),
        h(t) = m(t) + C(t).G'.R(t+1)^+.(state(t+1) - a(t+1)),
        H(t) = C(t) - C(t).G'.R(t+1)^+.G.C(t).

    The recursion mirrors the smoother, with the sampled state(t+1) standing in
    for the smoothed mean.

    :param kf: Output of kalman_filter().
    :param rng: numpy Generator that owns the random stream for the draw.
    :return: ndarray of dimension (n + 1, d). Row 0 is the initial state.
    """
    G = kf.model.G
    a = kf.predicted_state
    m = kf.filtered_state
    n, d = m.shape[0] - 1, m.shape[1]

    theta = np.empty_like(m)
    z = rng.standard_normal((n + 1, d))

    theta[n] = m[n] + kf.filtered_cov_U[n].dot(kf.filtered_cov_D[n] * z[n])

    for t in range(n - 1, -1, -1):
        C = ao.covariance(kf.filtered_cov_U[t], kf.filtered_cov_D[t])
        R_next_inv = ao.pinv_from_factors(kf.predicted_cov_U[t + 1], kf.predicted_cov_D[t + 1], SVD_TOL)
        CG = C.dot(G.T)
        J = CG.dot(R_next_inv)

        h = m[t] + J.dot(theta[t + 1] - a[t + 1])
        U_H, D_H = ao.psd_factor(C - J.dot(CG.T))
        theta[t] = h + U_H.dot(D_H * z[t])

    if not np.all(np.isfinite(theta)):
        raise NumericalFailureError('The sampled state trajectory is not finite')

    return theta
