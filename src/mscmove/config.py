"""Run configuration and set-up of the data, parameters and initial switches."""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .habitat import HabitatMap, find_region
from .mh_moves import parameter_groups
from .states import OU, PROCESS_TYPES, ChainState, MovementParams, Observations, SwitchSet
from .switching import HabitatRates, RateModel, StatePairRates


class ConfigurationError(ValueError):
    """Invalid set-up input; raised before any iteration runs."""


@dataclass
class Controls:
    """Control parameters of the sampler."""

    kappa: float = 3.0  # upper bound of any switching rate
    lenmin: int = 3  # min number of fixes in an updated interval
    lenmax: int = 6  # max number of fixes in an updated interval
    thin: int = 100
    pr_update_move: float = 1.0  # probability of a movement-parameter update
    sdp: float = 0.15  # spread of the local switch-point move
    max_tries: int = 100  # simulator retries before reporting failure

    def validate(self, n_obs: int) -> None:
        if not (np.isfinite(self.kappa) and self.kappa > 0.0):
            raise ConfigurationError("kappa must be positive")
        if not (2 <= self.lenmin <= self.lenmax):
            raise ConfigurationError("need 2 <= lenmin <= lenmax")
        if self.lenmax > n_obs:
            raise ConfigurationError(f"lenmax ({self.lenmax}) exceeds the number of fixes ({n_obs})")
        if self.thin < 1:
            raise ConfigurationError("thin must be at least 1")
        if not 0.0 <= self.pr_update_move <= 1.0:
            raise ConfigurationError("pr_update_move must be a probability")
        if self.sdp < 0.0:
            raise ConfigurationError("sdp must be non-negative")
        if self.max_tries < 1:
            raise ConfigurationError("max_tries must be at least 1")


@dataclass
class Homogeneity:
    """Which movement components are shared by all states."""

    m: bool = False
    b: bool = False
    v: bool = False

    def any(self) -> bool:
        return self.m or self.b or self.v


@dataclass
class Priors:
    """Gaussian priors and random-walk SDs on the working scale, Beta shapes for rates."""

    mean: np.ndarray  # (4S,)
    sd: np.ndarray  # (4S,)
    proposal_sd: np.ndarray  # (4S,)
    shape: Tuple[float, float] = (4.0, 4.0)


@dataclass
class MCMCSetup:
    """Everything the driver needs, validated."""

    obs: Observations
    switches0: SwitchSet
    params0: MovementParams
    rates0: RateModel
    priors: Priors
    controls: Controls
    homog: Homogeneity
    groups: List[np.ndarray]
    n_states: int
    n_iter: int
    habitat_map: Optional[HabitatMap] = None

    @property
    def adaptive(self) -> bool:
        return self.rates0.adaptive

    def initial_state(self) -> ChainState:
        return ChainState(
            obs=self.obs.copy(),
            switches=self.switches0.copy(),
            params=self.params0.copy(),
            rates=self.rates0.copy(),
            iteration=0,
        )


def _process_ids(mty: Sequence[Union[int, str]]) -> np.ndarray:
    out = []
    for p in mty:
        if isinstance(p, str):
            if p.lower() not in PROCESS_TYPES:
                raise ConfigurationError(f"unknown process type {p!r}")
            out.append(PROCESS_TYPES[p.lower()])
        elif int(p) in PROCESS_TYPES.values():
            out.append(int(p))
        else:
            raise ConfigurationError(f"unknown process type {p!r}")
    return np.array(out, dtype=np.int64)


def _vector(name: str, values, length: int) -> np.ndarray:
    arr = np.asarray(values, dtype=np.float64).reshape(-1)
    if arr.shape[0] != length:
        raise ConfigurationError(f"'{name}' must have length {length}, got {arr.shape[0]}")
    return arr


def _component_vector(name: str, d: Dict, S: int) -> np.ndarray:
    missing = {"m", "b", "v"} - set(d)
    if missing:
        raise ConfigurationError(f"'{name}' is missing {sorted(missing)}")
    return np.concatenate(
        [_vector(f"{name}['m']", d["m"], 2 * S), _vector(f"{name}['b']", d["b"], S), _vector(f"{name}['v']", d["v"], S)]
    )


def _working(natural: np.ndarray, S: int) -> np.ndarray:
    with np.errstate(invalid="ignore", divide="ignore"):
        return np.concatenate([natural[: 2 * S], np.log(natural[2 * S :])])


def initial_switches(obs: Observations, habitat_map: Optional[HabitatMap]) -> SwitchSet:
    """One switch shortly before every change of label, at the fix position."""

    which = np.flatnonzero(obs.state[1:] != obs.state[:-1]) + 1
    if len(obs) < 2 or which.size == 0:
        return SwitchSet.empty()
    dt = 0.1 * np.min(np.diff(obs.time))
    xy = obs.xy[which].copy()
    return SwitchSet(
        xy=xy,
        time=obs.time[which] - dt,
        state=obs.state[which].copy(),
        habitat=find_region(xy, habitat_map),
    )


def setup_mcmc(
    obs,
    par0: Dict,
    rates0,
    mty: Sequence[Union[int, str]],
    *,
    states0=None,
    homog: Optional[Homogeneity] = None,
    prior_mean: Optional[Dict] = None,
    prior_sd: Optional[Dict] = None,
    proposal_sd: Optional[Dict] = None,
    prior_shape: Tuple[float, float] = (4.0, 4.0),
    n_iter: int = 500_000,
    habitat_map: Optional[HabitatMap] = None,
    n_states: Optional[int] = None,
    controls: Optional[Controls] = None,
    rng: Optional[np.random.Generator] = None,
) -> MCMCSetup:
    """Validate inputs and build the initial chain.

    ``obs`` is an (n, 3) table of x, y, time. ``par0`` holds natural-scale
    ``m`` (length 2S), ``b`` and ``v`` (length S). Priors are given on the
    natural scale and defaulted as in the working-scale rules: mean equal to
    the initial values, SD 10; proposal SDs 0.03 for m and 0.1 for log b and
    log v. With a habitat map the adaptive rate model is used and the states
    are the habitats.
    """

    controls = Controls() if controls is None else controls
    homog = Homogeneity() if homog is None else homog

    if habitat_map is None:
        if n_states is None:
            raise ConfigurationError("'n_states' needs to be specified if no map is given.")
        S = int(n_states)
    else:
        S = habitat_map.n_habitats
    if S < 1:
        raise ConfigurationError("need at least one state")

    process = _process_ids(mty)
    if process.shape[0] != S:
        raise ConfigurationError(f"'mty' must have one entry per state ({S})")

    # ---- movement parameters ----
    par = _component_vector("par0", par0, S)
    b0 = par[2 * S : 3 * S]
    if np.any(b0[process == OU] <= 0.0) or np.any(~np.isfinite(b0[process == OU])):
        raise ConfigurationError("Initial values for b should be positive (attraction strength).")
    if np.any(par[3 * S :] <= 0.0):
        raise ConfigurationError("Initial values for v should be positive.")
    params0 = MovementParams(m=par[: 2 * S], b=b0, v=par[3 * S :], process=process)
    if not params0.is_valid():
        raise ConfigurationError("initial movement parameters are not finite")

    if homog.any() and np.any(process != process[0]):
        warnings.warn(
            "Movement parameters must be state-dependent if different process types are "
            "used in the different states; homogeneity is switched off."
        )
        homog = Homogeneity()
    _check_homogeneous(params0, homog)

    # ---- priors and proposals (working scale) ----
    if prior_mean is None:
        mean = params0.to_working()
    else:
        pm = _component_vector("prior_mean", prior_mean, S)
        if np.any(pm[2 * S :][np.r_[process == OU, np.ones(S, dtype=bool)]] <= 0.0):
            raise ConfigurationError("prior means of b and v are on the natural scale and must be positive")
        mean = _working(pm, S)
    sd = (
        np.full(4 * S, 10.0)
        if prior_sd is None
        else _component_vector("prior_sd", prior_sd, S)
    )
    psd = (
        np.concatenate([np.full(2 * S, 0.03), np.full(2 * S, 0.1)])
        if proposal_sd is None
        else _component_vector("proposal_sd", proposal_sd, S)
    )
    active = np.r_[np.ones(2 * S, dtype=bool), process == OU, np.ones(S, dtype=bool)]
    if np.any(sd[active] <= 0.0) or np.any(psd[active] < 0.0):
        raise ConfigurationError("prior SDs must be positive and proposal SDs non-negative")
    a, b = prior_shape
    if not (a > 0.0 and b > 0.0):
        raise ConfigurationError("Beta prior shapes must be positive")
    priors = Priors(mean=mean, sd=sd, proposal_sd=psd, shape=(float(a), float(b)))

    # ---- observations ----
    table = np.asarray(obs, dtype=np.float64)
    if table.ndim != 2 or table.shape[1] < 3:
        raise ConfigurationError("obs must be a table with columns x, y, time")
    xy, time = table[:, :2], table[:, 2]
    if np.any(np.isnan(xy)):
        raise ConfigurationError("There should not be NAs in the data.")
    habitat = find_region(xy, habitat_map)
    if states0 is not None:
        state = np.asarray(states0, dtype=np.int64)
    elif habitat_map is not None:
        state = habitat.copy()
    else:
        rng = np.random.default_rng() if rng is None else rng
        state = rng.integers(1, S + 1, size=table.shape[0])
    if state.shape != (table.shape[0],) or np.any(state < 1) or np.any(state > S):
        raise ConfigurationError(f"initial states must be one label in 1..{S} per fix")
    try:
        observations = Observations(xy=xy, time=time, state=state, habitat=habitat)
    except ValueError as err:
        raise ConfigurationError(str(err)) from err
    controls.validate(len(observations))

    # ---- switching rates ----
    rate_cls = StatePairRates if habitat_map is None else HabitatRates
    if rates0 is None:
        n_rates = S if habitat_map is not None else S * (S - 1)
        default = controls.kappa / 2.0 if habitat_map is not None else controls.kappa / (2.0 * max(S - 1, 1))
        rates0 = np.full(n_rates, default)
    rates = rate_cls(rates0, S, controls.kappa)
    try:
        rates.validate()
    except ValueError as err:
        raise ConfigurationError(str(err)) from err

    return MCMCSetup(
        obs=observations,
        switches0=initial_switches(observations, habitat_map),
        params0=params0,
        rates0=rates,
        priors=priors,
        controls=controls,
        homog=homog,
        groups=parameter_groups(process, homog.m, homog.b, homog.v),
        n_states=S,
        n_iter=int(n_iter),
        habitat_map=habitat_map,
    )


def _check_homogeneous(params: MovementParams, homog: Homogeneity) -> None:
    if homog.m and np.any(params.m != params.m[0]):
        raise ConfigurationError("homogeneous m requires equal initial values across states")
    b_ou = params.b[params.process == OU]
    if homog.b and b_ou.size and np.any(b_ou != b_ou[0]):
        raise ConfigurationError("homogeneous b requires equal initial values across states")
    if homog.v and np.any(params.v != params.v[0]):
        raise ConfigurationError("homogeneous v requires equal initial values across states")


__all__ = [name for name in globals() if not name.startswith("_")]
