"""Tests for the SVD-factored Kalman filter."""

import numpy as np
import pytest  # type: ignore

from pybdlm.errors import ConfigurationError, NumericalFailureError
from pybdlm.statespace.kalman_filter import (
    filtered_covariances,
    kalman_filter,
    one_step_forecast,
    predicted_covariances,
)
from pybdlm.statespace.model import ModelStructure, StateSpaceModel, build_model
from pybdlm.utils.data_transforms import as_observations


def _dense_filter(y, model):
    """Textbook covariance-form Kalman filter used as an independent reference."""
    F, G, V, W, m0, C0 = model
    n = y.shape[0]
    m, C = m0.copy(), C0.copy()
    means, covs = [m], [C]
    for t in range(n):
        a = G @ m
        R = G @ C @ G.T + W
        obs = ~np.isnan(y[t])
        if obs.any():
            F_t = F[obs]
            Q = F_t @ R @ F_t.T + V[np.ix_(obs, obs)]
            K = R @ F_t.T @ np.linalg.inv(Q)
            m = a + K @ (y[t, obs] - F_t @ a)
            C = R - K @ F_t @ R
        else:
            m, C = a, R
        means.append(m)
        covs.append(C)
    return np.array(means), np.array(covs)


def test_local_level_matches_closed_form(local_level_structure):
    y = np.array([1.2, 0.7, np.nan, 1.9, 2.4, 2.0, np.nan, np.nan, 3.1, 2.8])
    model = build_model([0.5, 0.2], local_level_structure)
    model = model._replace(C0=np.array([[10.]]))
    kf = kalman_filter(as_observations(y), model)

    # Scalar recursion written out by hand
    m, C = 0., 10.
    for t, y_t in enumerate(y, start=1):
        a, R = m, C + 0.2
        if np.isnan(y_t):
            m, C = a, R
        else:
            K = R / (R + 0.5)
            m, C = a + K * (y_t - a), R - K * R
        assert kf.filtered_state[t, 0] == pytest.approx(m, rel=1e-10)
        assert filtered_covariances(kf)[t, 0, 0] == pytest.approx(C, rel=1e-10)
        assert kf.forecast_covariance[t - 1, 0, 0] == pytest.approx(R + 0.5, rel=1e-10)


def test_multivariate_filter_matches_dense_reference(simulated_pair):
    model, obs, _ = simulated_pair
    # Moderate prior so that the dense reference is well conditioned
    model = model._replace(C0=np.eye(model.G.shape[0]) * 10.)
    y = np.where(obs.observed, obs.values, np.nan)
    kf = kalman_filter(obs, model)
    means, covs = _dense_filter(y, model)

    np.testing.assert_allclose(kf.filtered_state, means, rtol=1e-7, atol=1e-7)
    np.testing.assert_allclose(filtered_covariances(kf), covs, rtol=1e-6, atol=1e-7)


def test_filter_with_missing_matches_dense_reference(simulated_pair):
    model, obs, sim = simulated_pair
    model = model._replace(C0=np.eye(model.G.shape[0]) * 10.)
    y = sim.simulated_response.copy()
    y[5:9, 0] = np.nan
    y[20, :] = np.nan
    y[30:33, 1] = np.nan
    kf = kalman_filter(as_observations(y), model)
    means, covs = _dense_filter(y, model)

    np.testing.assert_allclose(kf.filtered_state, means, rtol=1e-7, atol=1e-7)
    np.testing.assert_allclose(filtered_covariances(kf), covs, rtol=1e-6, atol=1e-7)


def test_filtered_covariances_are_positive_semidefinite(simulated_pair):
    model, obs, _ = simulated_pair
    kf = kalman_filter(obs, model)
    for C in filtered_covariances(kf):
        np.testing.assert_allclose(C, C.T, atol=1e-8 * max(1., np.abs(C).max()))
        eig = np.linalg.eigvalsh(C)
        assert eig.min() >= -1e-9 * max(1., eig.max())


def test_all_missing_step_skips_update(simulated_pair):
    model, _, sim = simulated_pair
    y = sim.simulated_response.copy()
    y[10] = np.nan
    kf = kalman_filter(as_observations(y), model)

    np.testing.assert_allclose(kf.filtered_state[11], kf.predicted_state[11])
    np.testing.assert_allclose(filtered_covariances(kf)[11], predicted_covariances(kf)[11])


def test_fully_missing_series_does_not_affect_other_series(default_structure, default_theta, simulated_pair):
    _, _, sim = simulated_pair
    y = sim.simulated_response.copy()
    y[:, 1] = np.nan
    with pytest.warns(UserWarning):
        obs = as_observations(y)
    kf = kalman_filter(obs, build_model(default_theta, default_structure))

    single = ModelStructure(num_series=1)
    kf_single = kalman_filter(as_observations(y[:, 0]), build_model(default_theta[:8], single))

    d = single.num_state_eqs
    np.testing.assert_allclose(kf.filtered_state[:, :d], kf_single.filtered_state, rtol=1e-6, atol=1e-6)
    C = filtered_covariances(kf)[:, :d, :d]
    C_single = filtered_covariances(kf_single)
    np.testing.assert_allclose(C, C_single, rtol=1e-6, atol=1e-6)


def test_forecast_variance_through_missing_gap():
    structure = ModelStructure(num_series=2, trend_order=1, trig_seasonal=())
    model = build_model([0.5, 0.2, 0.3, 0.1], structure)
    rng = np.random.default_rng(11)
    y = np.cumsum(rng.normal(size=(40, 2)), axis=0)
    y[10:21, 1] = np.nan

    kf = kalman_filter(as_observations(y), model)
    mean, var = one_step_forecast(kf)

    assert np.all(np.isfinite(mean))
    assert np.all(np.isfinite(var)) and np.all(var > 0)
    # Rows 11, ..., 21 are forecast with series 2 unobserved since row 9
    assert np.all(np.diff(var[10:22, 1]) > 0)
    # Row 21 is observed again, so the next forecast variance drops
    assert var[22, 1] < var[21, 1]
    # Series 1 keeps its steady-state forecast variance
    np.testing.assert_allclose(var[15:, 0], var[15, 0], rtol=1e-6)


def test_one_step_forecast_uses_predicted_state(simulated_pair):
    model, obs, _ = simulated_pair
    kf = kalman_filter(obs, model)
    mean, var = one_step_forecast(kf)
    np.testing.assert_allclose(mean, kf.predicted_state[1:] @ model.F.T)
    R = predicted_covariances(kf)[1:]
    expected = np.einsum('pi,tij,pj->tp', model.F, R, model.F) + np.diag(model.V)
    np.testing.assert_allclose(var, expected, rtol=1e-8)


def test_singular_observation_variance_uses_fallback(local_level_structure):
    y = np.array([1., 1.5, 2., 2.2])
    model = build_model([0., 0.3], local_level_structure)
    kf = kalman_filter(as_observations(y), model)
    # Exact observations pin the level to the data
    np.testing.assert_allclose(kf.filtered_state[1:, 0], y, atol=1e-8)
    assert np.all(filtered_covariances(kf)[1:, 0, 0] < 1e-8)


def test_degenerate_innovation_covariance_raises(local_level_structure):
    model = StateSpaceModel(F=np.array([[1.]]), G=np.array([[1.]]), V=np.array([[0.]]),
                            W=np.array([[0.]]), m0=np.zeros(1), C0=np.array([[0.]]))
    with pytest.raises(NumericalFailureError) as e:
        kalman_filter(as_observations(np.array([1., 2.])), model)
    assert e.value.timestep == 1


def test_mismatched_model_raises(default_structure, default_theta):
    model = build_model(default_theta, default_structure)
    with pytest.raises(ConfigurationError):
        kalman_filter(as_observations(np.ones((5, 3))), model)
