from pybdlm import DLMGibbsSampler, InverseGammaPrior, ModelStructure, build_model
from pybdlm.model_assessment.performance import forecast_loglike, mean_squared_forecast_error
from pybdlm.statespace.simulation import simulate
import numpy as np
import pandas as pd


# Simulate two hourly sensor series (temperature, humidity) with a local linear
# trend and a 6-hour cycle
seed = 123
rng = np.random.default_rng(seed)
structure = ModelStructure(num_series=2, trend_order=2, trig_seasonal=(6, 3))
theta_true = np.full(structure.num_params, 0.02)
theta_true[structure.observation_variance_index] = [0.5, 0.3]
n = 300

sim = simulate(build_model(theta_true, structure), n, rng,
               init_state=np.zeros(structure.num_state_eqs))
y = pd.DataFrame(sim.simulated_response,
                 columns=['temperature', 'humidity'],
                 index=pd.date_range('2024-06-01', periods=n, freq='60min'))

# Knock out a sensor outage and some scattered readings
y.iloc[100:120, 1] = np.nan
y.iloc[rng.choice(n, size=15, replace=False), 0] = np.nan

if __name__ == '__main__':
    sampler = DLMGibbsSampler(y, structure)

    ''' Fixed-parameter filtering and smoothing at the generating values '''
    kf = sampler.filter(theta_true)
    print(f"Log-likelihood at the generating values: {forecast_loglike(kf):.2f}")
    msfe = mean_squared_forecast_error(kf, num_first_obs_ignore=20)
    print(pd.DataFrame({'MSFE': msfe.mean_squared_forecast_error, 'Bias': msfe.forecast_bias},
                       index=y.columns))

    smoothed = sampler.smoothed_frame(theta_true)
    print(smoothed['humidity'].iloc[95:125])

    ''' Posterior of the noise variances, two chains in parallel '''
    theta0 = np.full(structure.num_params, 0.1)
    theta0[structure.observation_variance_index] = 1.
    sampler.sample(2000, theta0,
                   observation_var_prior=InverseGammaPrior(0.01, 0.01),
                   state_var_prior=InverseGammaPrior(0.01, 0.01),
                   num_chains=2,
                   seeds=(seed, seed + 1),
                   n_jobs=2)

    print(sampler.summary(burn=500))
