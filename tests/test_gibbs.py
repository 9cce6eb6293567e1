"""Tests for the Gibbs sampler over the noise covariances."""

import numpy as np
import pandas as pd
import pytest  # type: ignore

import pybdlm.gibbs as gibbs
from pybdlm import (
    ChainAbortedError,
    ConfigurationError,
    DLMGibbsSampler,
    InverseGammaPrior,
    InverseWishartPrior,
    ModelStructure,
    NumericalFailureError,
    build_model,
)
from pybdlm.statespace.simulation import simulate
from pybdlm.utils.data_transforms import as_observations


@pytest.fixture(scope="module")
def local_level_data():
    """Local level whose noise is centred, uncorrelated and rescaled to V = 0.5, W = 0.2."""
    rng = np.random.default_rng(31)
    n = 1000
    w = rng.normal(size=n)
    v = rng.normal(size=n)
    w = w - w.mean()
    v = v - v.mean()
    v = v - v.dot(w) / w.dot(w) * w
    w = w / w.std() * np.sqrt(0.2)
    v = v / v.std() * np.sqrt(0.5)
    return 5. + np.cumsum(w) + v


@pytest.fixture(scope="module")
def two_series_data():
    rng = np.random.default_rng(32)
    level = np.cumsum(rng.normal(scale=0.3, size=(40, 2)), axis=0)
    y = level + rng.normal(scale=[0.7, 0.5], size=(40, 2))
    y[12:15, 0] = np.nan
    return pd.DataFrame(y, columns=['north', 'south'])


@pytest.fixture
def two_series_sampler(two_series_data):
    return DLMGibbsSampler(two_series_data, ModelStructure(num_series=2, trend_order=1, trig_seasonal=()))


@pytest.mark.slow
def test_local_level_posterior_recovers_variances(local_level_data):
    sampler = DLMGibbsSampler(local_level_data, ModelStructure(num_series=1, trend_order=1, trig_seasonal=()))
    sampler.sample(1000, [1., 1.],
                   observation_var_prior=InverseGammaPrior(0.01, 0.01),
                   state_var_prior=InverseGammaPrior(0.01, 0.01),
                   seeds=(2024,))
    smy = sampler.summary(burn=200, cred_int_level=0.05)

    for name, truth in (('Irregular.Var[y1]', 0.5), ('Level.Var[y1]', 0.2)):
        row = smy.loc[name]
        assert row['Posterior.Mean'] == pytest.approx(truth, rel=0.2)
        assert row['Posterior.CredInt.LB'] < truth < row['Posterior.CredInt.UB']


def test_draws_are_positive_and_shaped(two_series_sampler):
    post = two_series_sampler.sample(15, [0.5, 0.1, 0.5, 0.1], seeds=(1,))
    assert post.num_chains == 1
    chain = post.chains[0]
    assert chain.observation_error_covariance.shape == (15, 2, 2)
    assert chain.state_error_covariance.shape == (15, 2, 2)
    assert np.all(np.diagonal(chain.observation_error_covariance, axis1=1, axis2=2) > 0)
    assert np.all(np.diagonal(chain.state_error_covariance, axis1=1, axis2=2) > 0)
    # Diagonal variance draws stay diagonal
    assert np.all(chain.observation_error_covariance[:, 0, 1] == 0.)


def test_same_seed_reproduces_chain(two_series_sampler):
    theta0 = [0.5, 0.1, 0.5, 0.1]
    a = two_series_sampler.sample(10, theta0, seeds=(7,)).to_frame()
    b = two_series_sampler.sample(10, theta0, seeds=(7,)).to_frame()
    c = two_series_sampler.sample(10, theta0, seeds=(8,)).to_frame()
    pd.testing.assert_frame_equal(a, b)
    assert not np.allclose(a.iloc[:, 2:].to_numpy(), c.iloc[:, 2:].to_numpy())


def test_chains_differ_and_parallel_matches_sequential(two_series_sampler):
    theta0 = [0.5, 0.1, 0.5, 0.1]
    seq = two_series_sampler.sample(8, theta0, num_chains=2, seeds=(3, 4), n_jobs=1).to_frame()
    par = two_series_sampler.sample(8, theta0, num_chains=2, seeds=(3, 4), n_jobs=2).to_frame()
    pd.testing.assert_frame_equal(seq, par)

    chain0 = seq[seq['chain'] == 0].iloc[:, 2:].to_numpy()
    chain1 = seq[seq['chain'] == 1].iloc[:, 2:].to_numpy()
    assert not np.allclose(chain0, chain1)


def test_spawned_streams_are_independent(two_series_sampler):
    df = two_series_sampler.sample(5, [0.5, 0.1, 0.5, 0.1], num_chains=3).to_frame()
    assert sorted(df['chain'].unique()) == [0, 1, 2]
    first_draws = df[df['iteration'] == 0].iloc[:, 2:].to_numpy()
    assert len({tuple(r) for r in first_draws}) == 3


def test_to_frame_layout(two_series_sampler):
    post = two_series_sampler.sample(12, [0.5, 0.1, 0.5, 0.1], seeds=(5,))
    df = post.to_frame(burn=2)
    assert list(df.columns) == ['chain', 'iteration', 'Irregular.Var[north]', 'Level.Var[north]',
                                'Irregular.Var[south]', 'Level.Var[south]']
    assert df.shape[0] == 10
    assert df['iteration'].tolist() == list(range(2, 12))
    np.testing.assert_allclose(df['Irregular.Var[south]'],
                               post.chains[0].observation_error_covariance[2:, 1, 1])

    with pytest.raises(ValueError):
        post.to_frame(burn=-1)


def test_per_chain_starting_values(two_series_sampler):
    theta0 = [[0.5, 0.1, 0.5, 0.1], [2., 1., 2., 1.]]
    post = two_series_sampler.sample(4, theta0, num_chains=2, seeds=(1, 2))
    assert post.num_chains == 2

    with pytest.raises(ConfigurationError):
        two_series_sampler.sample(4, theta0, num_chains=3)


def test_full_observation_covariance(two_series_sampler):
    post = two_series_sampler.sample(20, [0.5, 0.1, 0.5, 0.1],
                                     observation_cov_prior=InverseWishartPrior(3., 0.1),
                                     seeds=(11,))
    V = post.chains[0].observation_error_covariance
    for v in V:
        np.testing.assert_allclose(v, v.T)
        assert np.linalg.eigvalsh(v).min() > 0
    assert np.any(V[:, 0, 1] != 0.)

    df = post.to_frame()
    np.testing.assert_allclose(df['Irregular.Cov[north,south]'], V[:, 0, 1])


def test_chain_abort_preserves_completed_draws(two_series_sampler, monkeypatch):
    calls = {'n': 0}
    kalman_filter = gibbs.kalman_filter

    def failing_filter(observations, model):
        calls['n'] += 1
        if calls['n'] == 4:
            raise NumericalFailureError('Innovation covariance is singular', timestep=5)
        return kalman_filter(observations, model)

    monkeypatch.setattr(gibbs, 'kalman_filter', failing_filter)

    with pytest.raises(ChainAbortedError) as e:
        two_series_sampler.sample(10, [0.5, 0.1, 0.5, 0.1], seeds=(1,))

    err = e.value
    assert err.chain_id == 0
    assert err.iteration == 3
    assert isinstance(err.cause, NumericalFailureError)
    assert err.cause.iteration == 3 and err.cause.timestep == 5
    assert err.partial.chains[0].num_samp == 3
    assert err.partial.to_frame().shape[0] == 3
    assert two_series_sampler.posterior is None


@pytest.mark.parametrize("kwargs", [
    dict(num_samp=0),
    dict(num_samp=10, seeds=(1, 2)),
    dict(num_samp=10, n_jobs=0),
    dict(num_samp=10, observation_var_prior=InverseGammaPrior(-1., 1.)),
    dict(num_samp=10, state_var_prior=InverseGammaPrior(1., [1., 1., 1.])),
    dict(num_samp=10, observation_cov_prior=InverseWishartPrior(0.5, 1.)),
])
def test_invalid_sampler_settings_raise(two_series_sampler, kwargs):
    with pytest.raises(ConfigurationError):
        two_series_sampler.sample(theta0=[0.5, 0.1, 0.5, 0.1], **kwargs)


def test_invalid_starting_values_raise(two_series_sampler):
    with pytest.raises(ConfigurationError):
        two_series_sampler.sample(5, [0.5, -0.1, 0.5, 0.1])
    with pytest.raises(ConfigurationError):
        two_series_sampler.sample(5, [0.5, 0.1, 0.5])


def test_duplicate_seeds_warn(two_series_sampler):
    with pytest.warns(UserWarning):
        two_series_sampler.sample(3, [0.5, 0.1, 0.5, 0.1], num_chains=2, seeds=(9, 9))


def test_summary_reports_r_hat_for_multiple_chains(two_series_sampler):
    with pytest.raises(AttributeError):
        two_series_sampler.summary()

    two_series_sampler.sample(30, [0.5, 0.1, 0.5, 0.1], num_chains=2, seeds=(1, 2))
    smy = two_series_sampler.summary(burn=10)
    assert list(smy.columns) == ['Posterior.Mean', 'Posterior.StdDev', 'Posterior.CredInt.LB',
                                 'Posterior.CredInt.UB', 'R-hat']
    assert list(smy.index) == two_series_sampler.parameters
    assert np.all(smy['Posterior.CredInt.LB'] <= smy['Posterior.Mean'])
    assert np.all(smy['Posterior.Mean'] <= smy['Posterior.CredInt.UB'])

    draws = two_series_sampler.posterior_dict(burn=10)
    assert set(draws) == set(two_series_sampler.parameters)
    assert all(v.size == 40 for v in draws.values())


def test_default_structure_and_dimension_checks(two_series_data):
    sampler = DLMGibbsSampler(two_series_data)
    assert sampler.structure == ModelStructure(num_series=2, trend_order=2, trig_seasonal=())
    assert len(sampler.parameters) == 6

    with pytest.raises(ConfigurationError):
        DLMGibbsSampler(two_series_data, ModelStructure(num_series=3))
    with pytest.raises(TypeError):
        DLMGibbsSampler(two_series_data, structure=(2, 2))


def test_fixed_theta_frames(two_series_sampler, two_series_data):
    theta = [0.5, 0.1, 0.25, 0.1]
    fc = two_series_sampler.forecast_frame(theta)
    sm = two_series_sampler.smoothed_frame(theta)
    for df in (fc, sm):
        assert df.shape == (40, 4)
        assert list(df.columns.get_level_values(0).unique()) == ['north', 'south']
        assert df.index.equals(two_series_data.index)
        assert np.all(df.xs('variance', axis=1, level=1) > 0)
    # The smoother uses the whole sample
    assert np.all(sm[('north', 'variance')].to_numpy()[5:-5] < fc[('north', 'variance')].to_numpy()[5:-5])


def test_default_priors_scale_with_each_series(two_series_data):
    structure = ModelStructure(num_series=2, trend_order=2, trig_seasonal=(6, 3))
    obs_prior, state_prior = gibbs.default_priors(as_observations(two_series_data), structure)
    var_y = two_series_data.var().to_numpy()

    np.testing.assert_allclose(obs_prior.shape, 0.01)
    np.testing.assert_allclose(obs_prior.rate, 1e-4 * var_y)

    # Level, slope, then five seasonal states per series
    block = np.array([1., 0.04] + [0.2] * 5)
    np.testing.assert_allclose(state_prior.shape, 0.01)
    np.testing.assert_allclose(state_prior.rate, np.concatenate([1e-4 * v * block for v in var_y]))


@pytest.mark.slow
def test_default_priors_do_not_swamp_trending_data():
    # A strong drift makes var(y) large relative to the noise variances
    structure = ModelStructure(num_series=1, trend_order=2, trig_seasonal=())
    theta_true = np.array([0.5, 0.2, 1e-6])
    rng = np.random.default_rng(41)
    sim = simulate(build_model(theta_true, structure), 500, rng, init_state=np.array([10., 2.]))

    sampler = DLMGibbsSampler(sim.simulated_response, structure)
    sampler.sample(600, [1., 1., 0.01], seeds=(2025,))
    smy = sampler.summary(burn=200)

    assert smy.loc['Irregular.Var[y1]', 'Posterior.Mean'] == pytest.approx(0.5, rel=0.3)
    assert smy.loc['Level.Var[y1]', 'Posterior.Mean'] == pytest.approx(0.2, rel=0.5)


def test_aborted_run_clears_previous_posterior(two_series_sampler, monkeypatch):
    two_series_sampler.sample(5, [0.5, 0.1, 0.5, 0.1], seeds=(1,))
    assert two_series_sampler.posterior is not None

    calls = {'n': 0}
    kalman_filter = gibbs.kalman_filter

    def failing_filter(observations, model):
        calls['n'] += 1
        if calls['n'] == 3:
            raise NumericalFailureError('Innovation covariance is singular', timestep=0)
        return kalman_filter(observations, model)

    monkeypatch.setattr(gibbs, 'kalman_filter', failing_filter)
    with pytest.raises(ChainAbortedError):
        two_series_sampler.sample(5, [0.5, 0.1, 0.5, 0.1], seeds=(2,))

    assert two_series_sampler.posterior is None
    with pytest.raises(AttributeError):
        two_series_sampler.summary()


def test_numpy_integer_burn_is_accepted(two_series_sampler):
    post = two_series_sampler.sample(12, [0.5, 0.1, 0.5, 0.1], seeds=(5,))
    pd.testing.assert_frame_equal(post.to_frame(burn=np.int64(2)), post.to_frame(burn=2))

    draws = two_series_sampler.posterior_dict(burn=np.int32(4))
    assert all(v.size == 8 for v in draws.values())
