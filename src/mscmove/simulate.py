"""Endpoint-conditioned trajectory proposals by uniformization and thinning."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

import numpy as np

from .habitat import HabitatMap, find_region
from .movement import bridge_moments, bridge_switch_positions, segment_moments
from .states import AugmentedData, MovementParams, Observations, SwitchSet
from .switching import RateModel


@dataclass
class SimulationSuccess:
    """Candidate window: fixes with new labels merged with new switch points."""

    trajectory: AugmentedData
    tries: int = 1

    @property
    def fix_index(self) -> np.ndarray:
        return self.trajectory.fix_rank

    @property
    def switch_index(self) -> np.ndarray:
        return self.trajectory.switch_rank


@dataclass
class SimulationFailure:
    """No proposal this iteration (``reason`` is "endpoint" or "numerical")."""

    reason: str
    tries: int = 0


SimulationResult = Union[SimulationSuccess, SimulationFailure]


def _candidate_epochs(rng, kappa, t_beg, t_end, fix_times):
    n = rng.poisson(kappa * (t_end - t_beg))
    epochs = np.sort(rng.uniform(t_beg, t_end, size=n))
    return epochs[(epochs > t_beg) & ~np.isin(epochs, fix_times)]


def _thin_state_path(rng, rates, epochs, start_state):
    """States after each candidate epoch (habitat-free rates)."""

    states = np.empty(epochs.shape[0], dtype=np.int64)
    s = start_state
    for i in range(epochs.shape[0]):
        s = int(rng.choice(rates.n_states, p=rates.jump_probs(s, 0))) + 1
        states[i] = s
    return states


def _simulate_unconstrained(rng, block, params, rates, kappa, habitat_map):
    epochs = _candidate_epochs(rng, kappa, block.time[0], block.time[-1], block.time)
    after = _thin_state_path(rng, rates, epochs, int(block.state[0]))

    # keep actual switches only
    prev = np.concatenate([[block.state[0]], after[:-1]]) if after.size else after
    jump = after != prev
    sw_time, sw_state = epochs[jump], after[jump]

    # state in effect at each fix: last switch before it, else the start state
    k = np.searchsorted(sw_time, block.time) - 1
    fix_state = np.r_[block.state[0], sw_state][k + 1]
    if fix_state[-1] != block.state[-1]:
        return None

    n_sw = sw_time.shape[0]
    traj = AugmentedData.merge(
        Observations(block.xy, block.time, fix_state, block.habitat),
        _placeholder_switches(sw_time, sw_state),
    )
    if n_sw:
        logq = bridge_switch_positions(traj, params, exact=True, rng=rng)
        if not np.isfinite(logq):
            return np.nan
        traj.habitat[traj.switch_rank] = find_region(traj.xy[traj.switch_rank], habitat_map)
    return traj


def _simulate_adaptive(rng, block, params, rates, kappa, habitat_map):
    epochs = _candidate_epochs(rng, kappa, block.time[0], block.time[-1], block.time)

    xy, time, state, habitat, is_switch = [], [], [], [], []

    def push(p_xy, p_t, p_s, p_h, p_sw):
        xy.append(p_xy)
        time.append(p_t)
        state.append(p_s)
        habitat.append(p_h)
        is_switch.append(p_sw)

    push(block.xy[0], block.time[0], int(block.state[0]), int(block.habitat[0]), False)
    s = int(block.state[0])
    f = 1  # next fix
    for tau in epochs:
        while block.time[f] < tau:
            push(block.xy[f], block.time[f], s, int(block.habitat[f]), False)
            f += 1
        new = int(rng.choice(rates.n_states, p=rates.jump_probs(s, habitat[-1]))) + 1
        if new == s:
            continue
        step = segment_moments(params, [s], [tau - time[-1]])
        ahead = segment_moments(params, [new], [block.time[f] - tau])
        mean, var = bridge_moments(
            xy[-1], tuple(a[0] for a in step), tuple(a[0] for a in ahead), block.xy[f]
        )
        if not (np.isfinite(var) and var > 0.0):
            return np.nan
        pos = mean + np.sqrt(var) * rng.standard_normal(2)
        s = new
        push(pos, tau, s, int(find_region(pos, habitat_map)), True)
    for g in range(f, len(block)):
        push(block.xy[g], block.time[g], s, int(block.habitat[g]), False)

    if s != block.state[-1]:
        return None
    return AugmentedData.from_points(np.array(xy), time, state, habitat, is_switch)


def _placeholder_switches(time, state):
    n = time.shape[0]
    return SwitchSet(np.zeros((n, 2)), time, state, np.zeros(n, dtype=np.int64))


def simulate_trajectory(
    rng: np.random.Generator,
    block: Observations,
    params: MovementParams,
    rates: RateModel,
    kappa: float,
    *,
    habitat_map: Optional[HabitatMap] = None,
    max_tries: int = 100,
) -> SimulationResult:
    """Propose a new switch history and switch positions over ``block``.

    Candidate epochs come from a Poisson(kappa) process on (Tbeg, Tend) and
    are thinned with the jump probabilities of ``rates``. The path is
    redrawn until the state in effect at Tend equals the label of the last
    fix, at most ``max_tries`` times.
    """

    simulate = _simulate_adaptive if rates.adaptive else _simulate_unconstrained
    for attempt in range(1, max_tries + 1):
        traj = simulate(rng, block, params, rates, kappa, habitat_map)
        if traj is None:
            continue
        if not isinstance(traj, AugmentedData):
            return SimulationFailure("numerical", tries=attempt)
        return SimulationSuccess(traj, tries=attempt)
    return SimulationFailure("endpoint", tries=max_tries)


__all__ = [name for name in globals() if not name.startswith("_")]
