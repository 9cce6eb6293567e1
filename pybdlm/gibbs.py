import numpy as np
import pandas as pd
import warnings
from joblib import Parallel, delayed
from typing import NamedTuple, Union
from .errors import ConfigurationError, NumericalFailureError, ChainAbortedError
from .statespace.model import (ModelStructure, StateSpaceModel, build_model, check_structure,
                               theta_from_covariances, parameter_names)
from .statespace.kalman_filter import kalman_filter, one_step_forecast, KF
from .statespace.kalman_smoother import kalman_smoother, smoothed_series, KS
from .statespace.ffbs import backward_sample
from .utils.data_transforms import Observations, as_observations, series_frame
from .variance import (InverseGammaPrior, InverseWishartPrior, check_inverse_gamma_prior,
                       check_inverse_wishart_prior, sample_state_covariance,
                       sample_observation_covariance, sample_full_observation_covariance)
from .model_assessment.performance import summarize, gelman_rubin


class GibbsConfig(NamedTuple):
    num_samp: int
    observation_var_prior: InverseGammaPrior
    state_var_prior: InverseGammaPrior
    observation_cov_prior: InverseWishartPrior = None
    num_chains: int = 1
    seeds: tuple = None
    n_jobs: int = 1


class ChainDraws(NamedTuple):
    chain_id: int
    observation_error_covariance: np.ndarray
    state_error_covariance: np.ndarray

    @property
    def num_samp(self) -> int:
        return self.observation_error_covariance.shape[0]


class Posterior(NamedTuple):
    chains: list
    structure: ModelStructure
    series_names: list
    full_observation_covariance: bool = False

    @property
    def num_chains(self) -> int:
        return len(self.chains)

    @property
    def parameter_names(self) -> list:
        return parameter_names(self.structure, self.series_names)

    def to_frame(self, burn: int = 0) -> pd.DataFrame:
        """
        Records of the hyperparameter chains with one row per (chain, iteration).
        Columns are 'chain', 'iteration', then one column per entry of the
        parameter vector. For a full observation covariance, off-diagonal entries
        are added as 'Irregular.Cov[a,b]' columns.
        """
        if not isinstance(burn, (int, np.integer)) or burn < 0:
            raise ValueError('burn must be a non-negative integer.')

        structure = self.structure
        names = self.parameter_names
        frames = []
        for c in self.chains:
            if c.num_samp <= burn:
                continue
            V = c.observation_error_covariance[burn:]
            W = c.state_error_covariance[burn:]

            theta = np.empty((V.shape[0], structure.num_params))
            theta[:, structure.observation_variance_index] = np.diagonal(V, axis1=1, axis2=2)
            theta[:, structure.state_variance_index] = np.diagonal(W, axis1=1, axis2=2)
            df = pd.DataFrame(theta, columns=names)

            if self.full_observation_covariance:
                p = V.shape[1]
                for i in range(p):
                    for j in range(i + 1, p):
                        a, b = self.series_names[i], self.series_names[j]
                        df[f"Irregular.Cov[{a},{b}]"] = V[:, i, j]

            df.insert(0, 'iteration', np.arange(burn, c.num_samp))
            df.insert(0, 'chain', c.chain_id)
            frames.append(df)

        if len(frames) == 0:
            return pd.DataFrame(columns=['chain', 'iteration'] + names)

        return pd.concat(frames, ignore_index=True)


def check_config(config: GibbsConfig, structure: ModelStructure, num_series: int) -> GibbsConfig:
    if not isinstance(config.num_samp, (int, np.integer)) or config.num_samp < 1:
        raise ConfigurationError('num_samp must be a strictly positive integer.')

    if not isinstance(config.num_chains, (int, np.integer)) or config.num_chains < 1:
        raise ConfigurationError('num_chains must be a strictly positive integer.')

    if config.seeds is not None:
        if len(config.seeds) != config.num_chains:
            raise ConfigurationError('seeds must provide one seed per chain.')
        for s in config.seeds:
            if not isinstance(s, (int, np.integer)) or not 0 <= s < 2 ** 32:
                raise ConfigurationError('Each seed must be an integer between 0 and 2**32 - 1.')
        if len(set(config.seeds)) < len(config.seeds):
            warnings.warn('Some chains share a seed. Their draws will be identical whenever '
                          'their starting values are identical.')

    if not isinstance(config.n_jobs, (int, np.integer)) or config.n_jobs == 0:
        raise ConfigurationError('n_jobs must be a non-zero integer.')

    obs_prior = check_inverse_gamma_prior(config.observation_var_prior, num_series,
                                          'observation_var_prior')
    state_prior = check_inverse_gamma_prior(config.state_var_prior, structure.num_state_eqs,
                                            'state_var_prior')

    obs_cov_prior = config.observation_cov_prior
    if obs_cov_prior is not None:
        obs_cov_prior = check_inverse_wishart_prior(obs_cov_prior, num_series, 'observation_cov_prior')

    return config._replace(observation_var_prior=obs_prior,
                           state_var_prior=state_prior,
                           observation_cov_prior=obs_cov_prior)


def default_priors(observations: Observations, structure: ModelStructure) -> tuple:
    """
    Weakly informative inverse-gamma priors scaled to each series. With
    root_scale = 0.01 * sd(y_i), series i gets a rate of root_scale ** 2 for its
    observation and level variances, (0.2 * root_scale) ** 2 for higher trend
    states, and root_scale ** 2 divided by the number of seasonal states for
    each seasonal state. Every shape is 0.01.

    :return: tuple (observation_var_prior, state_var_prior) of InverseGammaPrior.
    """
    p = observations.num_series
    var_y = np.array([np.var(observations.values[observations.observed[:, i], i], ddof=1)
                      if observations.observed[:, i].sum() > 1 else 1. for i in range(p)])
    var_y[~np.isfinite(var_y) | (var_y <= 0)] = 1.
    default_shape_prior = 0.01
    default_root_scale = 0.01 * np.sqrt(var_y)

    block = np.ones(structure.num_series_state_eqs)
    block[1:structure.trend_order] = 0.2 ** 2
    if structure.num_trig_season_state_eqs > 0:
        block[structure.trend_order:] = 1. / structure.num_trig_season_state_eqs

    state_rate = np.concatenate([default_root_scale[i] ** 2 * block for i in range(p)])
    return (InverseGammaPrior(default_shape_prior, default_root_scale ** 2),
            InverseGammaPrior(default_shape_prior, state_rate))


def chain_generators(num_chains: int, seeds: tuple = None, entropy: int = None) -> list:
    """
    Independent random generators, one per chain. Explicit seeds are used as
    given. Otherwise the streams are spawned from a single SeedSequence so that
    they are statistically independent.
    """
    if seeds is not None:
        return [np.random.default_rng(s) for s in seeds]

    return [np.random.default_rng(s) for s in np.random.SeedSequence(entropy).spawn(num_chains)]


def run_chain(observations: Observations,
              structure: ModelStructure,
              theta0: np.ndarray,
              config: GibbsConfig,
              rng: np.random.Generator,
              chain_id: int = 0) -> ChainDraws:
    """
    Run one Gibbs chain: starting from M(theta0), repeat num_samp times

        1. Kalman filter y given M(theta)
        2. draw a state trajectory by backward sampling
        3. draw V and W from their conjugate posteriors given the trajectory
        4. record (V, W) and rebuild M(theta) from the new draws

    The config must already be validated by check_config().

    :return: ChainDraws with observation_error_covariance (num_samp, p, p) and
    state_error_covariance (num_samp, d, d).
    :raises ChainAbortedError: if an iteration fails. The error carries the
    draws of every completed iteration.
    """
    p = observations.num_series
    d = structure.num_state_eqs
    num_samp = config.num_samp
    stochastic = structure.stochastic_states
    full_obs_cov = config.observation_cov_prior is not None

    observation_error_covariance = np.empty((num_samp, p, p))
    state_error_covariance = np.empty((num_samp, d, d))

    model = build_model(theta0, structure)

    for s in range(num_samp):
        try:
            kf = kalman_filter(observations, model)
            theta = backward_sample(kf, rng)
            W = sample_state_covariance(rng, theta, model, config.state_var_prior, stochastic)
            if full_obs_cov:
                V = sample_full_observation_covariance(rng, observations, theta, model,
                                                       config.observation_cov_prior)
            else:
                V = sample_observation_covariance(rng, observations, theta, model,
                                                  config.observation_var_prior)
        except (NumericalFailureError, ConfigurationError) as e:
            if isinstance(e, NumericalFailureError):
                e.iteration = s
            partial = ChainDraws(chain_id,
                                 observation_error_covariance[:s].copy(),
                                 state_error_covariance[:s].copy())
            raise ChainAbortedError(chain_id, s, e, partial) from e

        observation_error_covariance[s] = V
        state_error_covariance[s] = W

        model = build_model(theta_from_covariances(V, W, structure), structure)
        if full_obs_cov:
            model = model._replace(V=V)

    return ChainDraws(chain_id, observation_error_covariance, state_error_covariance)


def _run_chain_safe(*args, **kwargs):
    # Aborted chains are returned rather than raised so that the other chains
    # can complete before the failure is reported.
    try:
        return run_chain(*args, **kwargs)
    except ChainAbortedError as e:
        return e


class DLMGibbsSampler:
    def __init__(self,
                 response: Union[np.ndarray, list, tuple, pd.Series, pd.DataFrame, np.ma.MaskedArray],
                 structure: ModelStructure = None):
        """

        :param response: Numpy array, masked array, list, tuple, Pandas Series, or Pandas
        DataFrame, float64. Array of dimension (n, p) that represents the observed series on a
        fixed time grid. NaN (or masked) cells are treated as missing.

        :param structure: ModelStructure. Defines the trend and seasonal components shared by
        every series. The number of series must match the response. If not provided, a local
        linear trend with no seasonality is used for each series.
        """
        self.observations = as_observations(response)
        p = self.observations.num_series

        if structure is None:
            structure = ModelStructure(num_series=p, trend_order=2, trig_seasonal=())

        if not isinstance(structure, ModelStructure):
            raise TypeError('structure must be a ModelStructure.')

        check_structure(structure)
        if structure.num_series != p:
            raise ConfigurationError(f'The model structure has {structure.num_series} series but '
                                     f'the response has {p}.')

        self.structure = structure
        self.parameters = parameter_names(structure, self.observations.series_names)
        self.posterior = None

        if self.observations.num_obs <= structure.num_series_state_eqs:
            warnings.warn('The number of state equations implied by the model specification '
                          'is at least as large as the number of observations in the response '
                          'array. Predictions from the model may be significantly compromised.')

    @property
    def num_obs(self) -> int:
        return self.observations.num_obs

    def model(self, theta: Union[np.ndarray, list, tuple]) -> StateSpaceModel:
        return build_model(theta, self.structure)

    def filter(self, theta: Union[np.ndarray, list, tuple]) -> KF:
        return kalman_filter(self.observations, self.model(theta))

    def smooth(self, theta: Union[np.ndarray, list, tuple]) -> KS:
        return kalman_smoother(self.filter(theta))

    def forecast_frame(self, theta: Union[np.ndarray, list, tuple]) -> pd.DataFrame:
        """
        One-step-ahead forecast mean and variance of each series at each time step.
        """
        mean, variance = one_step_forecast(self.filter(theta))
        return series_frame(mean, variance, self.observations)

    def smoothed_frame(self, theta: Union[np.ndarray, list, tuple]) -> pd.DataFrame:
        """
        Smoothed signal mean and variance of each series at each time step.
        """
        model = self.model(theta)
        ks = kalman_smoother(kalman_filter(self.observations, model))
        mean, variance = smoothed_series(ks, model)
        return series_frame(mean, variance, self.observations)

    def sample(self,
               num_samp: int,
               theta0: Union[np.ndarray, list, tuple],
               observation_var_prior: InverseGammaPrior = None,
               state_var_prior: InverseGammaPrior = None,
               observation_cov_prior: InverseWishartPrior = None,
               num_chains: int = 1,
               seeds: tuple = None,
               n_jobs: int = 1) -> Posterior:
        """

        :param num_samp: integer > 0. Number of Gibbs iterations per chain.

        :param theta0: array-like of length structure.num_params, or a sequence of num_chains
        such arrays (one starting point per chain). Typically a maximum likelihood estimate.

        :param observation_var_prior: InverseGammaPrior for the diagonal of V. Shape and rate may
        be scalars or have one value per series. Default is shape 0.01 and rate (0.01 * sd(y_i)) ** 2.

        :param state_var_prior: InverseGammaPrior for the diagonal of W. Shape and rate may be
        scalars or have one value per state equation. Default is shape 0.01 and, for the states
        of series i, rate (0.01 * sd(y_i)) ** 2 for the level, (0.002 * sd(y_i)) ** 2 for higher
        trend states, and (0.01 * sd(y_i)) ** 2 / (number of seasonal states) for seasonal states.

        :param observation_cov_prior: InverseWishartPrior. If provided, V is sampled as a full
        covariance matrix from its inverse-Wishart posterior instead of as independent variances.

        :param num_chains: integer > 0. Number of independent chains.

        :param seeds: tuple of num_chains integers. If not provided, independent streams are
        spawned from fresh entropy.

        :param n_jobs: number of joblib workers used to run the chains. -1 uses all processors.

        :return: Posterior. If a chain fails, ChainAbortedError is raised once every chain has
        finished; its 'partial' attribute holds a Posterior with the completed draws of all chains.
        """
        obs = self.observations
        structure = self.structure
        p = obs.num_series

        default_obs_prior, default_state_prior = default_priors(obs, structure)
        if observation_var_prior is None:
            observation_var_prior = default_obs_prior

        if state_var_prior is None:
            state_var_prior = default_state_prior

        config = check_config(GibbsConfig(num_samp=num_samp,
                                          observation_var_prior=observation_var_prior,
                                          state_var_prior=state_var_prior,
                                          observation_cov_prior=observation_cov_prior,
                                          num_chains=num_chains,
                                          seeds=seeds,
                                          n_jobs=n_jobs),
                              structure, p)

        theta0 = np.asarray(theta0, dtype=np.float64)
        if theta0.ndim == 1:
            theta0 = np.tile(theta0, (num_chains, 1))
        if theta0.ndim != 2 or theta0.shape[0] != num_chains:
            raise ConfigurationError('theta0 must be a single parameter vector or one parameter '
                                     'vector per chain.')

        # Build every starting model up-front so that configuration errors
        # surface before any chain runs.
        for th in theta0:
            build_model(th, structure)

        self.posterior = None
        rngs = chain_generators(num_chains, seeds)
        results = Parallel(n_jobs=config.n_jobs)(
            delayed(_run_chain_safe)(obs, structure, theta0[c], config, rngs[c], c)
            for c in range(num_chains)
        )

        chains = []
        aborted = []
        for r in results:
            if isinstance(r, ChainAbortedError):
                aborted.append(r)
                chains.append(r.partial)
            else:
                chains.append(r)

        posterior = self._posterior(chains, config.observation_cov_prior is not None)
        if len(aborted) > 0:
            err = aborted[0]
            raise ChainAbortedError(err.chain_id, err.iteration, err.cause, posterior) from err.cause

        self.posterior = posterior
        return posterior

    def _posterior(self, chains: list, full_observation_covariance: bool) -> Posterior:
        return Posterior(chains, self.structure, self.observations.series_names,
                         full_observation_covariance)

    def _posterior_exists_check(self) -> None:
        if self.posterior is None:
            raise AttributeError("No posterior distribution was found. The sample() method must be called.")

    def posterior_dict(self, burn: int = 0) -> dict:
        self._posterior_exists_check()
        df = self.posterior.to_frame(burn=burn)
        return {p: df[p].to_numpy() for p in df.columns if p not in ('chain', 'iteration')}

    def summary(self,
                burn: int = 0,
                cred_int_level: float = 0.05) -> pd.DataFrame:
        """
        Summary of the posterior distribution for each parameter in the model.

        :param burn: non-negative integer. Number of initial draws of each chain to discard.

        :param cred_int_level: float in (0, 1). Defines the width of the credible interval.
        E.g., a value of 0.05 gives the 2.5% and 97.5% quantiles.

        :return: DataFrame indexed by parameter name with the posterior mean, standard
        deviation, credible interval bounds and, for more than one chain, R-hat.
        """
        self._posterior_exists_check()
        df = self.posterior.to_frame(burn=burn)
        smy = summarize(df, cred_int_level=cred_int_level)

        if self.posterior.num_chains > 1:
            rhat = gelman_rubin(df)
            smy['R-hat'] = rhat
            high = rhat[rhat > 1.1]
            if len(high) > 0:
                warnings.warn(f"R-hat exceeds 1.1 for {list(high.index)}. The chains may not "
                              f"have converged; consider more iterations or a larger burn.")

        return smy
