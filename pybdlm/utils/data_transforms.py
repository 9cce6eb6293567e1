import numpy as np
import pandas as pd
import warnings
from typing import NamedTuple, Union
from ..errors import ConfigurationError


class Observations(NamedTuple):
    """
    Observation matrix with an explicit missing-value mask.

    values: ndarray of dimension (n, p). Cells that are not observed hold 0
    and are never read.
    observed: boolean ndarray of dimension (n, p). True where a value was
    recorded.
    series_names: list of p names.
    time_index: index of length n (pandas Index or ndarray).
    """
    values: np.ndarray
    observed: np.ndarray
    series_names: list
    time_index: Union[pd.Index, np.ndarray]

    @property
    def num_obs(self) -> int:
        return self.values.shape[0]

    @property
    def num_series(self) -> int:
        return self.values.shape[1]


def as_observations(data: Union[np.ndarray, list, tuple, pd.Series, pd.DataFrame, np.ma.MaskedArray, Observations]
                    ) -> Observations:
    """
    Convert a response array into Observations. NaN cells (or masked cells of
    a masked array) are treated as missing.

    :param data: array-like of dimension (n,) or (n, p), a pandas Series or
    DataFrame, or a numpy masked array.
    :return: Observations
    """
    if isinstance(data, Observations):
        return data

    if isinstance(data, pd.Series):
        data = data.to_frame()

    if isinstance(data, pd.DataFrame):
        series_names = [str(c) for c in data.columns]
        time_index = data.index
        values = data.to_numpy(dtype=np.float64, na_value=np.nan)
        missing = np.isnan(values)
    elif isinstance(data, np.ma.MaskedArray):
        values = np.ma.getdata(data).astype(np.float64)
        missing = np.ma.getmaskarray(data) | np.isnan(values)
        series_names = None
        time_index = None
    elif isinstance(data, (np.ndarray, list, tuple)):
        values = np.asarray(data, dtype=np.float64)
        missing = np.isnan(values)
        series_names = None
        time_index = None
    else:
        raise TypeError('The response must be a Numpy array, masked array, list, tuple, '
                        'Pandas Series, or Pandas DataFrame.')

    if values.ndim == 1:
        values = values.reshape(-1, 1)
        missing = missing.reshape(-1, 1)

    if values.ndim != 2:
        raise ConfigurationError('The response must have dimension 1 or 2.')

    n, p = values.shape
    if n == 0:
        raise ConfigurationError('The response must have at least one observation.')

    if np.any(np.isinf(values[~missing])):
        raise ConfigurationError('The response cannot have Inf and/or -Inf values.')

    if series_names is None:
        series_names = [f"y{i + 1}" for i in range(p)]

    if time_index is None:
        time_index = np.arange(n)

    observed = ~missing
    empty_series = [series_names[i] for i in range(p) if not observed[:, i].any()]
    if len(empty_series) > 0:
        warnings.warn(f"The following series have no observed values: {empty_series}. "
                      f"Their states are driven by the prior and state noise alone.")

    return Observations(values=np.where(observed, values, 0.),
                        observed=observed,
                        series_names=series_names,
                        time_index=time_index)


def series_frame(mean: np.ndarray,
                 variance: np.ndarray,
                 observations: Observations) -> pd.DataFrame:
    """
    Per-time, per-series mean and variance as a DataFrame with a two-level
    column index (series, statistic), indexed like the response.
    """
    frames = {}
    for i, name in enumerate(observations.series_names):
        frames[name] = pd.DataFrame({'mean': mean[:, i], 'variance': variance[:, i]},
                                    index=observations.time_index)

    return pd.concat(frames, axis=1)
