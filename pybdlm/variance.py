import numpy as np
from numba import njit
from scipy.stats import invwishart
from typing import NamedTuple, Union
from .errors import ConfigurationError, NumericalFailureError
from .statespace.model import StateSpaceModel
from .utils import array_operations as ao
from .utils.data_transforms import Observations
from .vectorized import distributions as dist


class InverseGammaPrior(NamedTuple):
    shape: Union[float, np.ndarray]
    rate: Union[float, np.ndarray]


class InverseWishartPrior(NamedTuple):
    dof: float
    scale: np.ndarray


def check_inverse_gamma_prior(prior: InverseGammaPrior, size: int, name: str) -> InverseGammaPrior:
    """
    Validate an inverse-gamma prior and broadcast its shape and rate to one
    value per variance component.
    """
    if not isinstance(prior, InverseGammaPrior):
        raise ConfigurationError(f'{name} must be an InverseGammaPrior.')

    try:
        shape = np.broadcast_to(np.asarray(prior.shape, dtype=np.float64), (size,)).copy()
        rate = np.broadcast_to(np.asarray(prior.rate, dtype=np.float64), (size,)).copy()
    except ValueError:
        raise ConfigurationError(f'The shape and rate of {name} must be scalars or have length {size}.')

    for label, x in (('shape', shape), ('rate', rate)):
        if not np.all(np.isfinite(x)):
            raise ConfigurationError(f'The {label} of {name} cannot have NaN or Inf/-Inf values.')
        if not np.all(x > 0):
            raise ConfigurationError(f'The {label} of {name} must be strictly positive.')

    return InverseGammaPrior(shape, rate)


def check_inverse_wishart_prior(prior: InverseWishartPrior, dim: int, name: str) -> InverseWishartPrior:
    if not isinstance(prior, InverseWishartPrior):
        raise ConfigurationError(f'{name} must be an InverseWishartPrior.')

    scale = np.asarray(prior.scale, dtype=np.float64)
    if scale.ndim == 0:
        scale = np.eye(dim) * scale

    if not scale.shape == (dim, dim):
        raise ConfigurationError(f'The scale matrix of {name} must have shape ({dim}, {dim}).')

    if not np.all(np.isfinite(scale)):
        raise ConfigurationError(f'The scale matrix of {name} cannot have NaN or Inf/-Inf values.')

    if not ao.is_symmetric(scale):
        raise ConfigurationError(f'The scale matrix of {name} must be symmetric.')

    if not ao.is_positive_definite(scale):
        raise ConfigurationError(f'The scale matrix of {name} must be positive definite.')

    if not np.isfinite(prior.dof) or prior.dof <= dim - 1:
        raise ConfigurationError(f'The degrees of freedom of {name} must be greater than {dim - 1}.')

    return InverseWishartPrior(float(prior.dof), scale)


@njit(cache=True)
def state_sse(theta: np.ndarray, G: np.ndarray) -> np.ndarray:
    """
    Sum of squared state innovations, state(t) - G.state(t-1), t = 1, ..., n,
    for each state equation.
    """
    n = theta.shape[0] - 1
    d = theta.shape[1]
    sse = np.zeros(d)
    for t in range(1, n + 1):
        resid = theta[t] - G.dot(theta[t - 1])
        sse += resid ** 2
    return sse


@njit(cache=True)
def observation_sse(y: np.ndarray, observed: np.ndarray, theta: np.ndarray, F: np.ndarray) -> tuple:
    """
    Sum of squared observation residuals, y(t) - F.state(t), over observed
    cells only, together with the number of observed cells per series.
    """
    n, p = y.shape
    sse = np.zeros(p)
    num_obs = np.zeros(p)
    for t in range(n):
        fitted = F.dot(theta[t + 1])
        for i in range(p):
            if observed[t, i]:
                sse[i] += (y[t, i] - fitted[i]) ** 2
                num_obs[i] += 1.
    return sse, num_obs


def _check_variance_draw(x: np.ndarray, name: str) -> None:
    if not (np.all(np.isfinite(x)) and np.all(x > 0)):
        raise NumericalFailureError(f'The {name} draw is not strictly positive and finite')


def sample_state_covariance(rng: np.random.Generator,
                            theta: np.ndarray,
                            model: StateSpaceModel,
                            prior: InverseGammaPrior,
                            stochastic: np.ndarray = None) -> np.ndarray:
    """
    Draw a diagonal state error covariance matrix W from its conjugate
    posterior given a sampled trajectory. Each stochastic state equation j gets

        W_jj ~ IG(shape_j + n / 2, rate_j + SSE_j / 2).

    Non-stochastic state equations keep a variance of 0.

    :param prior: InverseGammaPrior with shape and rate already broadcast to
    length d (see check_inverse_gamma_prior).
    :return: ndarray of dimension (d, d).
    """
    n = theta.shape[0] - 1
    d = theta.shape[1]
    if stochastic is None:
        stochastic = np.ones(d, dtype=bool)

    sse = state_sse(theta, model.G)
    shape_post = prior.shape[stochastic] + 0.5 * n
    rate_post = prior.rate[stochastic] + 0.5 * sse[stochastic]

    state_var = np.zeros(d)
    if stochastic.any():
        draw = dist.vec_ig(rng, shape_post, rate_post)
        _check_variance_draw(draw, 'state variance')
        state_var[stochastic] = draw

    return np.diag(state_var)


def sample_observation_covariance(rng: np.random.Generator,
                                  observations: Observations,
                                  theta: np.ndarray,
                                  model: StateSpaceModel,
                                  prior: InverseGammaPrior) -> np.ndarray:
    """
    Draw a diagonal observation error covariance matrix V. Series i gets

        V_ii ~ IG(shape_i + n_i / 2, rate_i + SSE_i / 2),

    where n_i and SSE_i only count the time steps where series i is observed.
    """
    sse, num_obs = observation_sse(observations.values, observations.observed, theta, model.F)
    draw = dist.vec_ig(rng, prior.shape + 0.5 * num_obs, prior.rate + 0.5 * sse)
    _check_variance_draw(draw, 'observation variance')
    return np.diag(draw)


def sample_full_observation_covariance(rng: np.random.Generator,
                                       observations: Observations,
                                       theta: np.ndarray,
                                       model: StateSpaceModel,
                                       prior: InverseWishartPrior) -> np.ndarray:
    """
    Draw a full observation error covariance matrix V from its inverse-Wishart
    posterior,

        V ~ IW(dof + n_c, scale + SUM[e(t).e(t)']),

    where e(t) = y(t) - F.state(t) and the sum runs over the n_c time steps at
    which every series is observed. Partially observed time steps do not enter
    the cross-product, since their contribution is not conjugate.
    """
    complete = observations.observed.all(axis=1)
    resid = observations.values[complete] - theta[1:][complete].dot(model.F.T)
    scale_post = ao.symmetrize(prior.scale + resid.T.dot(resid))
    dof_post = prior.dof + complete.sum()

    V = np.atleast_2d(invwishart.rvs(df=dof_post, scale=scale_post, random_state=rng))
    if not (np.all(np.isfinite(V)) and ao.is_positive_definite(ao.symmetrize(V))):
        raise NumericalFailureError('The observation covariance draw is not positive definite')

    return ao.symmetrize(V)
