import numpy as np
from typing import NamedTuple
from .kalman_filter import KF, SVD_TOL
from .model import StateSpaceModel
from ..errors import NumericalFailureError
from ..utils import array_operations as ao


class KS(NamedTuple):
    smoothed_state: np.ndarray
    smoothed_cov_U: np.ndarray
    smoothed_cov_D: np.ndarray


def kalman_smoother(kf: KF) -> KS:
    """
    Rauch-Tung-Striebel smoother. Starting from s(n) = m(n) and S(n) = C(n),
    for t = n - 1, ..., 0:

        J(t) = C(t).G'.R(t+1)^+
        s(t) = m(t) + J(t).(s(t+1) - a(t+1))
        S(t) = C(t) - J(t).(R(t+1) - S(t+1)).J(t)'

    where R(t+1)^+ is the pseudo-inverse of the predicted state covariance.
    S(t) is stored in SVD-factored form like the filter covariances.

    :param kf: Output of kalman_filter().
    :return: Named tuple with smoothed_state (n + 1, d) and the factors
    smoothed_cov_U (n + 1, d, d), smoothed_cov_D (n + 1, d) of
    S(t) = Var[state(t) | y(1), ..., y(n)].
    """
    G = kf.model.G
    a = kf.predicted_state
    m = kf.filtered_state
    n = m.shape[0] - 1

    s = np.empty_like(m)
    U_S = np.empty_like(kf.filtered_cov_U)
    D_S = np.empty_like(kf.filtered_cov_D)

    s[n] = m[n]
    U_S[n], D_S[n] = kf.filtered_cov_U[n], kf.filtered_cov_D[n]
    S_next = ao.covariance(U_S[n], D_S[n])

    for t in range(n - 1, -1, -1):
        C = ao.covariance(kf.filtered_cov_U[t], kf.filtered_cov_D[t])
        R_next = ao.covariance(kf.predicted_cov_U[t + 1], kf.predicted_cov_D[t + 1])
        R_next_inv = ao.pinv_from_factors(kf.predicted_cov_U[t + 1], kf.predicted_cov_D[t + 1], SVD_TOL)
        J = C.dot(G.T).dot(R_next_inv)

        s[t] = m[t] + J.dot(s[t + 1] - a[t + 1])
        U_S[t], D_S[t] = ao.psd_factor(C - J.dot(R_next - S_next).dot(J.T))
        S_next = ao.covariance(U_S[t], D_S[t])

        if not (np.all(np.isfinite(s[t])) and np.all(np.isfinite(D_S[t]))):
            raise NumericalFailureError('The smoothed state distribution is not finite', timestep=t)

    return KS(s, U_S, D_S)


def smoothed_covariances(ks: KS) -> np.ndarray:
    return np.einsum('tij,tj,tkj->tik', ks.smoothed_cov_U, ks.smoothed_cov_D ** 2, ks.smoothed_cov_U)


def smoothed_series(ks: KS, model: StateSpaceModel) -> tuple:
    """
    Smoothed signal F.s(t) for each series and its variance diag(F.S(t).F').
    Each series' variance is computed from its own row of F.

    :return: tuple (mean, variance), each ndarray of dimension (n, p) for t = 1, ..., n.
    """
    F = model.F
    mean = ks.smoothed_state[1:].dot(F.T)
    FU = np.einsum('pj,tjk->tpk', F, ks.smoothed_cov_U[1:])
    variance = np.einsum('tpk,tk->tp', FU ** 2, ks.smoothed_cov_D[1:] ** 2)
    return mean, variance
