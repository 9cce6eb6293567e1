import numpy as np
import pandas as pd
import warnings
from typing import NamedTuple
from scipy.stats import multivariate_normal


class MSFE(NamedTuple):
    mean_squared_forecast_error: np.ndarray
    forecast_bias: np.ndarray
    num_obs: np.ndarray


def forecast_loglike(kf) -> float:
    """
    Gaussian log-likelihood of the observed data from the prediction error
    decomposition,

        log p(y(1), ..., y(n) | theta) = SUM[log N(y(t) | F.a(t), F.R(t).F' + V), t=1,...,n],

    where each term is restricted to the series observed at time t. Time steps
    with no observed series contribute 0.

    :param kf: Output of kalman_filter().
    :return: float
    """
    y = kf.observations.values
    observed = kf.observations.observed
    loglike = 0.
    for t in range(y.shape[0]):
        obs = observed[t]
        if not obs.any():
            continue
        loglike += multivariate_normal.logpdf(y[t, obs],
                                              mean=kf.forecast[t, obs],
                                              cov=kf.forecast_covariance[t][np.ix_(obs, obs)])

    return float(loglike)


def mean_squared_forecast_error(kf, num_first_obs_ignore: int = 0) -> MSFE:
    """
    Mean squared one-step-ahead forecast error and forecast bias per series,
    over observed cells only. The first few forecasts are dominated by the
    diffuse initial state and can be ignored with num_first_obs_ignore.
    """
    y = kf.observations.values[num_first_obs_ignore:]
    observed = kf.observations.observed[num_first_obs_ignore:]
    resid = np.where(observed, y - kf.forecast[num_first_obs_ignore:], 0.)
    num_obs = observed.sum(axis=0)

    with np.errstate(invalid='ignore', divide='ignore'):
        msfe = np.sum(resid ** 2, axis=0) / num_obs
        bias = np.sum(resid, axis=0) / num_obs

    return MSFE(msfe, bias, num_obs)


def summarize(draws: pd.DataFrame, cred_int_level: float = 0.05) -> pd.DataFrame:
    """
    Posterior mean, standard deviation and equal-tailed credible interval of
    every parameter column in a chain record frame (columns other than
    'chain' and 'iteration'), pooled across chains.
    """
    if isinstance(cred_int_level, float) and (0 < cred_int_level < 1):
        lb = 0.5 * cred_int_level
        ub = 1. - lb
    else:
        raise ValueError('cred_int_level must be a value in the interval (0, 1).')

    params = draws.drop(columns=['chain', 'iteration'], errors='ignore')
    smy = pd.DataFrame({
        'Posterior.Mean': params.mean(),
        'Posterior.StdDev': params.std(ddof=0),
        'Posterior.CredInt.LB': params.quantile(lb),
        'Posterior.CredInt.UB': params.quantile(ub),
    })
    smy.index.name = 'parameter'
    return smy


def gelman_rubin(draws: pd.DataFrame) -> pd.Series:
    """
    Potential scale reduction factor (R-hat) of Gelman and Rubin (1992) for
    every parameter column of a chain record frame with at least two chains.
    Chains are truncated to the length of the shortest one.

        B = N / (M - 1) * SUM[(mean_m - mean) ** 2, m=1,...,M]
        W = 1 / M * SUM[var_m, m=1,...,M]
        R-hat = sqrt(((N - 1) / N * W + B / N) / W)
    """
    groups = [g.drop(columns=['chain', 'iteration']) for _, g in draws.groupby('chain')]
    if len(groups) < 2:
        raise ValueError('R-hat requires at least two chains.')

    N = min(len(g) for g in groups)
    if N < 2:
        raise ValueError('R-hat requires at least two draws per chain.')

    x = np.stack([g.to_numpy(dtype=np.float64)[:N] for g in groups])
    M = x.shape[0]
    chain_means = x.mean(axis=1)
    B = N / (M - 1) * np.sum((chain_means - chain_means.mean(axis=0)) ** 2, axis=0)
    W = x.var(axis=1, ddof=1).mean(axis=0)

    with np.errstate(invalid='ignore', divide='ignore'):
        rhat = np.sqrt(((N - 1) / N * W + B / N) / W)

    constant = W == 0
    if np.any(constant):
        rhat[constant & (B == 0)] = 1.
        warnings.warn('Some parameters do not vary within chains. Their R-hat is not informative.')

    return pd.Series(rhat, index=groups[0].columns, name='R-hat')
