import numpy as np
from typing import NamedTuple
from scipy.linalg import cho_factor, cho_solve, LinAlgError
from .model import StateSpaceModel
from ..errors import ConfigurationError, NumericalFailureError
from ..utils import array_operations as ao
from ..utils.data_transforms import Observations

# Relative size below which a singular value of the predicted state covariance
# is considered 0, in which case the square-root information update is not used.
SVD_TOL = 1e-10


class KF(NamedTuple):
    observations: Observations
    model: StateSpaceModel
    predicted_state: np.ndarray
    predicted_cov_U: np.ndarray
    predicted_cov_D: np.ndarray
    filtered_state: np.ndarray
    filtered_cov_U: np.ndarray
    filtered_cov_D: np.ndarray
    forecast: np.ndarray
    forecast_covariance: np.ndarray


def check_model(model: StateSpaceModel, num_series: int = None) -> None:
    F, G, V, W, m0, C0 = model
    p, d = F.shape

    if num_series is not None and p != num_series:
        raise ConfigurationError(f'The observation matrix has {p} rows but the response has '
                                 f'{num_series} series.')

    if not G.shape == (d, d):
        raise ConfigurationError('The state transition matrix must have shape (d, d), where d denotes '
                                 'the number of state equations.')

    if not V.shape == (p, p):
        raise ConfigurationError('The observation error covariance matrix must have shape (p, p), '
                                 'where p denotes the number of series.')

    if not W.shape == (d, d):
        raise ConfigurationError('The state error covariance matrix must have shape (d, d), where '
                                 'd denotes the number of state equations.')

    if not m0.shape == (d,):
        raise ConfigurationError('The initial state mean must have shape (d,).')

    if not C0.shape == (d, d):
        raise ConfigurationError('The initial state covariance matrix must have shape (d, d).')

    for name, x in (('observation error covariance', V),
                    ('state error covariance', W),
                    ('initial state covariance', C0)):
        if not np.all(np.isfinite(x)):
            raise ConfigurationError(f'The {name} matrix cannot have NaN or Inf/-Inf values.')
        if not ao.is_symmetric(x):
            raise ConfigurationError(f'The {name} matrix must be symmetric.')
        if not np.all(np.diag(x) >= 0):
            raise ConfigurationError(f'All values along the diagonal of the {name} matrix '
                                     f'must be non-negative.')


def _predict(G, sqrt_W, m, U_C, D_C):
    a = G.dot(m)
    tmp = np.concatenate((D_C[:, np.newaxis] * G.dot(U_C).T, sqrt_W), axis=0)
    _, D_R, Vt = np.linalg.svd(tmp, full_matrices=False)
    return a, Vt.T, D_R


def _sqrt_information_update(y, a, U_R, D_R, F, V):
    """
    Update in square-root information form: with R = U_R.diag(D_R ** 2).U_R',
    C^{-1} = R^{-1} + F'.V^{-1}.F is obtained from the SVD of the stacked matrix
    [V^{-1/2}.F.U_R; diag(1 / D_R)]. Returns None if the observed block of V is
    not positive definite.
    """
    eig_val, eig_vec = np.linalg.eigh(V)
    if eig_val.min() <= SVD_TOL * max(eig_val.max(), 1.):
        return None

    sqrt_V_inv = eig_vec.T / np.sqrt(eig_val)[:, np.newaxis]
    tmp = np.concatenate((sqrt_V_inv.dot(F).dot(U_R), np.diag(1. / D_R)), axis=0)
    _, s, Vt = np.linalg.svd(tmp, full_matrices=False)
    U_C = U_R.dot(Vt.T)
    D_C = 1. / s
    C = ao.covariance(U_C, D_C)
    V_inv = sqrt_V_inv.T.dot(sqrt_V_inv)
    m = a + C.dot(F.T).dot(V_inv).dot(y - F.dot(a))
    return m, U_C, D_C


def _gain_update(y, a, U_R, D_R, F, V, t):
    R = ao.covariance(U_R, D_R)
    Q = ao.symmetrize(F.dot(R).dot(F.T) + V)
    try:
        chol = cho_factor(Q, lower=True)
    except LinAlgError:
        raise NumericalFailureError('The innovation covariance matrix is not positive definite', timestep=t)

    FR = F.dot(R)
    K = cho_solve(chol, FR).T
    m = a + K.dot(y - F.dot(a))
    U_C, D_C = ao.psd_factor(R - K.dot(FR))
    return m, U_C, D_C


def kalman_filter(observations: Observations,
                  model: StateSpaceModel) -> KF:
    """
    Kalman filter with covariance matrices carried in SVD-factored form,
    i.e., C = U.diag(D ** 2).U'. Dense covariance matrices are never propagated
    from one time step to the next, which keeps them positive semi-definite.

    Observation components that are missing at time t are dropped from the
    update at time t (rows of F, rows and columns of V, entries of y). If every
    component is missing, the filtered state equals the predicted state.

    :param observations: Observations with n rows and p series.

    :param model: StateSpaceModel with F (p, d), G (d, d), V (p, p), W (d, d),
    m0 (d,), C0 (d, d).

    :return: Named tuple with the following (row 0 of state arrays is the prior
    at time 0, row t is time t for t = 1, ..., n):

    1. predicted_state: ndarray (n + 1, d), a(t) = E[state(t) | y(1), ..., y(t-1)]
    2. predicted_cov_U, predicted_cov_D: SVD factors of R(t) = Var[state(t) | y(1), ..., y(t-1)]
    3. filtered_state: ndarray (n + 1, d), m(t) = E[state(t) | y(1), ..., y(t)]
    4. filtered_cov_U, filtered_cov_D: SVD factors of C(t) = Var[state(t) | y(1), ..., y(t)]
    5. forecast: ndarray (n, p), one-step-ahead forecast F.a(t) for row t - 1 of the response
    6. forecast_covariance: ndarray (n, p, p), F.R(t).F' + V
    """
    y = observations.values
    observed = observations.observed
    n, p = y.shape
    check_model(model, num_series=p)

    F, G, V, W, m0, C0 = model
    d = G.shape[0]
    sqrt_W = ao.psd_sqrt(W)

    a = np.empty((n + 1, d), dtype=np.float64)
    U_R = np.empty((n + 1, d, d), dtype=np.float64)
    D_R = np.empty((n + 1, d), dtype=np.float64)
    m = np.empty((n + 1, d), dtype=np.float64)
    U_C = np.empty((n + 1, d, d), dtype=np.float64)
    D_C = np.empty((n + 1, d), dtype=np.float64)
    f = np.empty((n, p), dtype=np.float64)
    Q = np.empty((n, p, p), dtype=np.float64)

    a[0] = m[0] = m0
    U_C[0], D_C[0] = ao.psd_factor(C0)
    U_R[0], D_R[0] = U_C[0], D_C[0]

    for t in range(1, n + 1):
        a[t], U_R[t], D_R[t] = _predict(G, sqrt_W, m[t - 1], U_C[t - 1], D_C[t - 1])

        FU = F.dot(U_R[t])
        f[t - 1] = F.dot(a[t])
        Q[t - 1] = ao.symmetrize((FU * D_R[t] ** 2).dot(FU.T) + V)

        obs = observed[t - 1]
        if not obs.any():
            m[t], U_C[t], D_C[t] = a[t], U_R[t], D_R[t]
        else:
            y_t = y[t - 1, obs]
            F_t = F[obs]
            V_t = V[np.ix_(obs, obs)]

            update = None
            if D_R[t].min() > SVD_TOL * D_R[t].max():
                update = _sqrt_information_update(y_t, a[t], U_R[t], D_R[t], F_t, V_t)
            if update is None:
                update = _gain_update(y_t, a[t], U_R[t], D_R[t], F_t, V_t, t)

            m[t], U_C[t], D_C[t] = update

        if not (np.all(np.isfinite(m[t])) and np.all(np.isfinite(D_C[t]))
                and np.all(np.isfinite(Q[t - 1]))):
            raise NumericalFailureError('The filtered state distribution is not finite', timestep=t)

    return KF(observations, model, a, U_R, D_R, m, U_C, D_C, f, Q)


def filtered_covariances(kf: KF) -> np.ndarray:
    """
    :return: ndarray (n + 1, d, d) of dense filtered covariance matrices C(t).
    """
    return np.einsum('tij,tj,tkj->tik', kf.filtered_cov_U, kf.filtered_cov_D ** 2, kf.filtered_cov_U)


def predicted_covariances(kf: KF) -> np.ndarray:
    return np.einsum('tij,tj,tkj->tik', kf.predicted_cov_U, kf.predicted_cov_D ** 2, kf.predicted_cov_U)


def one_step_forecast(kf: KF) -> tuple:
    """
    :return: tuple (mean, variance), each an ndarray of dimension (n, p), with the
    one-step-ahead forecast mean and variance for each series.
    """
    return kf.forecast, np.diagonal(kf.forecast_covariance, axis1=1, axis2=2).copy()
