import numpy as np
from typing import NamedTuple, Union
from ..errors import ConfigurationError


class StateSpaceModel(NamedTuple):
    F: np.ndarray
    G: np.ndarray
    V: np.ndarray
    W: np.ndarray
    m0: np.ndarray
    C0: np.ndarray


class ModelStructure(NamedTuple):
    """
    Fixed dimensions of a multivariate trend plus trigonometric-seasonal model.
    Every series gets the same component specification and the series blocks
    are combined block-diagonally.

    num_series: number of observed series p.
    trend_order: order of the polynomial trend (1 = local level, 2 = local linear trend).
    trig_seasonal: (period, num_harmonics), or () for no seasonal component.
    stochastic_trend: whether the trend state equations carry noise.
    stochastic_trig_seasonal: whether the seasonal state equations carry noise.
    If False, the seasonal pattern is exact and its variances are pinned at 0.
    init_state_variance: diagonal of the (diffuse) initial state covariance C0.
    """
    num_series: int = 2
    trend_order: int = 2
    trig_seasonal: tuple = (6, 3)
    stochastic_trend: bool = True
    stochastic_trig_seasonal: bool = True
    init_state_variance: float = 1e7

    @property
    def num_trig_season_state_eqs(self) -> int:
        if len(self.trig_seasonal) == 0:
            return 0
        period, num_harmonics = self.trig_seasonal
        if period / num_harmonics == 2:
            return 2 * num_harmonics - 1
        return 2 * num_harmonics

    @property
    def num_series_state_eqs(self) -> int:
        return self.trend_order + self.num_trig_season_state_eqs

    @property
    def num_state_eqs(self) -> int:
        return self.num_series * self.num_series_state_eqs

    @property
    def num_series_params(self) -> int:
        return 1 + self.num_series_state_eqs

    @property
    def num_params(self) -> int:
        return self.num_series * self.num_series_params

    @property
    def observation_variance_index(self) -> np.ndarray:
        """Positions in theta of the diagonal of V."""
        return np.arange(self.num_series) * self.num_series_params

    @property
    def state_variance_index(self) -> np.ndarray:
        """Positions in theta of the diagonal of W, in state order."""
        k = self.num_series_params
        return np.concatenate([i * k + 1 + np.arange(k - 1) for i in range(self.num_series)])

    @property
    def stochastic_states(self) -> np.ndarray:
        block = np.concatenate((np.full(self.trend_order, self.stochastic_trend),
                                np.full(self.num_trig_season_state_eqs, self.stochastic_trig_seasonal)))
        return np.tile(block, self.num_series).astype(bool)


def check_structure(structure: ModelStructure) -> None:
    if not isinstance(structure.num_series, (int, np.integer)) or structure.num_series < 1:
        raise ConfigurationError('num_series must be a strictly positive integer.')

    if not isinstance(structure.trend_order, (int, np.integer)) or structure.trend_order < 1:
        raise ConfigurationError('trend_order must be a strictly positive integer.')

    if len(structure.trig_seasonal) > 0:
        if len(structure.trig_seasonal) != 2:
            raise ConfigurationError('trig_seasonal must be empty or a tuple of the form '
                                     '(period, num_harmonics).')
        period, num_harmonics = structure.trig_seasonal
        if not isinstance(period, (int, np.integer)) or period < 2:
            raise ConfigurationError('The seasonal period must be an integer greater than 1.')
        if not isinstance(num_harmonics, (int, np.integer)) or num_harmonics < 1:
            raise ConfigurationError('The number of harmonics must be a strictly positive integer.')
        if num_harmonics > period // 2:
            raise ConfigurationError(f'The number of harmonics for period {period} cannot '
                                     f'exceed {period // 2}.')

    if not np.isfinite(structure.init_state_variance) or structure.init_state_variance <= 0:
        raise ConfigurationError('init_state_variance must be a strictly positive number.')


def trig_transition_matrix(freq: float) -> np.ndarray:
    real_part = np.array([[np.cos(freq), np.sin(freq)]])
    imaginary_part = np.array([[-np.sin(freq), np.cos(freq)]])
    return np.concatenate((real_part, imaginary_part), axis=0)


def _series_observation_row(structure: ModelStructure) -> np.ndarray:
    z = np.zeros(structure.num_series_state_eqs)
    z[0] = 1.
    # The cosine state of each harmonic loads on the response
    z[structure.trend_order::2] = 1.
    return z


def _series_transition_block(structure: ModelStructure) -> np.ndarray:
    m = structure.num_series_state_eqs
    T = np.zeros((m, m))

    r = structure.trend_order
    T[:r, :r] = np.eye(r) + np.eye(r, k=1)

    if len(structure.trig_seasonal) > 0:
        period, num_harmonics = structure.trig_seasonal
        i = r
        for k in range(1, num_harmonics + 1):
            freq = 2. * np.pi * k / period
            if k == num_harmonics and period / num_harmonics == 2:
                T[i, i] = trig_transition_matrix(freq)[0, 0]
                i += 1
            else:
                T[i:i + 2, i:i + 2] = trig_transition_matrix(freq)
                i += 2

    return T


def observation_matrix(structure: ModelStructure) -> np.ndarray:
    """
    :param structure: ModelStructure.
    :return: ndarray of dimension (p, d). Row i picks the level and the
    cosine state of every harmonic from series block i.
    """
    p = structure.num_series
    m = structure.num_series_state_eqs
    F = np.zeros((p, p * m))
    z = _series_observation_row(structure)
    for i in range(p):
        F[i, i * m:(i + 1) * m] = z

    return F


def state_transition_matrix(structure: ModelStructure) -> np.ndarray:
    """
    :param structure: ModelStructure.
    :return: ndarray of dimension (d, d), block diagonal across series.
    """
    p = structure.num_series
    m = structure.num_series_state_eqs
    G = np.zeros((p * m, p * m))
    block = _series_transition_block(structure)
    for i in range(p):
        G[i * m:(i + 1) * m, i * m:(i + 1) * m] = block

    return G


def build_model(theta: Union[np.ndarray, list, tuple],
                structure: ModelStructure) -> StateSpaceModel:
    """
    Map a parameter vector to the matrices of the state-space model.

    theta is laid out series by series. For series i, the block
    theta[i * k:(i + 1) * k], with k = 1 + num_series_state_eqs, holds the
    observation variance followed by the variances of the series' state
    equations (trend states first, then seasonal states).

    :param theta: array-like of length structure.num_params. Variances must be
    non-negative. Variances of non-stochastic states must be exactly 0.
    :param structure: ModelStructure.
    :return: StateSpaceModel
    """
    check_structure(structure)
    theta = np.asarray(theta, dtype=np.float64)

    if theta.ndim != 1 or theta.size != structure.num_params:
        raise ConfigurationError(f'The parameter vector must have length {structure.num_params} '
                                 f'for the given model structure, but has shape {theta.shape}.')

    if not np.all(np.isfinite(theta)):
        raise ConfigurationError('The parameter vector cannot have NaN or Inf/-Inf values.')

    obs_var = theta[structure.observation_variance_index]
    state_var = theta[structure.state_variance_index]

    if np.any(obs_var < 0):
        raise ConfigurationError('Observation variances in the parameter vector must be non-negative.')

    if np.any(state_var < 0):
        raise ConfigurationError('State variances in the parameter vector must be non-negative.')

    if np.any(state_var[~structure.stochastic_states] != 0):
        raise ConfigurationError('Non-stochastic state equations must have a variance of 0 '
                                 'in the parameter vector.')

    d = structure.num_state_eqs
    return StateSpaceModel(F=observation_matrix(structure),
                           G=state_transition_matrix(structure),
                           V=np.diag(obs_var),
                           W=np.diag(state_var),
                           m0=np.zeros(d),
                           C0=np.eye(d) * structure.init_state_variance)


def theta_from_covariances(V: np.ndarray,
                           W: np.ndarray,
                           structure: ModelStructure) -> np.ndarray:
    theta = np.empty(structure.num_params)
    theta[structure.observation_variance_index] = np.diag(V)
    theta[structure.state_variance_index] = np.diag(W)
    return theta


def _component_names(structure: ModelStructure) -> list:
    trend_names = ['Level', 'Slope', 'Curvature']
    block = [trend_names[j] if j < len(trend_names) else f"Trend.{j}"
             for j in range(structure.trend_order)]
    if len(structure.trig_seasonal) > 0:
        period = structure.trig_seasonal[0]
        for j in range(structure.num_trig_season_state_eqs):
            part = 'Cos' if j % 2 == 0 else 'Sin'
            block.append(f"Trig-Seasonal.{period}.{j // 2 + 1}.{part}")

    return block


def _default_series_names(structure: ModelStructure) -> list:
    return [f"y{i + 1}" for i in range(structure.num_series)]


def parameter_names(structure: ModelStructure, series_names: list = None) -> list:
    """
    Names of the entries of theta, e.g. 'Irregular.Var[temperature]' or
    'Trig-Seasonal.24.1.Cos.Var[humidity]'.
    """
    if series_names is None:
        series_names = _default_series_names(structure)

    if len(series_names) != structure.num_series:
        raise ConfigurationError(f'Expected {structure.num_series} series names, '
                                 f'got {len(series_names)}.')

    names = [''] * structure.num_params
    components = _component_names(structure)
    for i, j in enumerate(structure.observation_variance_index):
        names[j] = f"Irregular.Var[{series_names[i]}]"

    for c, j in enumerate(structure.state_variance_index):
        series = series_names[c // structure.num_series_state_eqs]
        component = components[c % structure.num_series_state_eqs]
        names[j] = f"{component}.Var[{series}]"

    return names
