"""Metropolis-Hastings moves on movement parameters and single switch points."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from .habitat import HabitatMap, find_region
from .movement import path_logdensity
from .states import OU, AugmentedData, MovementParams
from .switching import RateModel


def parameter_groups(process: np.ndarray, homog_m: bool, homog_b: bool, homog_v: bool) -> List[np.ndarray]:
    """Index groups of the working vector that share one random-walk increment.

    Working layout: ``mux1, muy1, ..., muxS, muyS, log b1..S, log v1..S``.
    A homogeneous component forms one group across states; otherwise each
    entry is its own group. ``b`` of Brownian states is never updated.
    """

    S = len(process)
    groups: List[np.ndarray] = []
    for coord in range(2):
        idx = np.arange(S) * 2 + coord
        groups += [idx] if homog_m else [idx[[s]] for s in range(S)]
    ou = np.flatnonzero(np.asarray(process) == OU)
    if ou.size:
        idx = 2 * S + ou
        groups += [idx] if homog_b else [idx[[i]] for i in range(ou.size)]
    idx = 3 * S + np.arange(S)
    groups += [idx] if homog_v else [idx[[s]] for s in range(S)]
    return groups


def propose_rw_grouped_np(
    rng: np.random.Generator, w: np.ndarray, groups: Sequence[np.ndarray], proposal_sd: np.ndarray
) -> np.ndarray:
    """Gaussian random walk with one shared increment per group."""

    out = w.copy()
    z = rng.standard_normal(len(groups))
    for g, zg in zip(groups, z):
        out[g] = w[g] + proposal_sd[g[0]] * zg
    return out


def log_prior_grouped_np(w: np.ndarray, groups, mean: np.ndarray, sd: np.ndarray) -> float:
    """Gaussian log-prior on the working scale, one term per group."""

    rep = np.array([g[0] for g in groups])
    z = (w[rep] - mean[rep]) / sd[rep]
    return float(np.sum(-0.5 * z * z - np.log(sd[rep]) - 0.5 * np.log(2.0 * np.pi)))


def mh_accept_np(rng: np.random.Generator, logpi_cur: float, logpi_prop: float, log_qcorr: float = 0.0) -> bool:
    delta = (logpi_prop - logpi_cur) + log_qcorr
    log_u = np.log(rng.random())
    return bool(log_u < delta)


def update_movement_params(
    rng: np.random.Generator,
    params: MovementParams,
    aug: AugmentedData,
    *,
    groups: Sequence[np.ndarray],
    prior_mean: np.ndarray,
    prior_sd: np.ndarray,
    proposal_sd: np.ndarray,
    batched_loglik: Callable[[AugmentedData, Sequence[MovementParams]], np.ndarray],
) -> Tuple[MovementParams, bool]:
    """One block random-walk Metropolis step on the movement parameters.

    Proposals with non-positive attraction or variance in natural units are
    rejected without evaluating the likelihood.
    """

    w_cur = params.to_working()
    w_prop = propose_rw_grouped_np(rng, w_cur, groups, proposal_sd)
    prop = MovementParams.from_working(w_prop, params.process)
    if not prop.is_valid():
        return params, False

    ll_cur, ll_prop = batched_loglik(aug, [params, prop])
    lp_cur = log_prior_grouped_np(w_cur, groups, prior_mean, prior_sd)
    lp_prop = log_prior_grouped_np(w_prop, groups, prior_mean, prior_sd)
    if not np.isfinite(ll_prop):
        return params, False
    if mh_accept_np(rng, ll_cur + lp_cur, ll_prop + lp_prop):
        return prop, True
    return params, False


@dataclass
class LocalMove:
    """Accepted relocation of switch ``index`` of the switch set."""

    index: int
    time: float
    xy: np.ndarray
    habitat: int


def _local_logtarget(local: AugmentedData, params: MovementParams, rates: RateModel) -> float:
    return path_logdensity(local, params) + rates.path_logprior(local)


def local_refine(
    rng: np.random.Generator,
    aug: AugmentedData,
    params: MovementParams,
    rates: RateModel,
    *,
    sdp: float,
    habitat_map: Optional[HabitatMap] = None,
) -> Tuple[Optional[LocalMove], bool]:
    """Random-walk the switch point that immediately precedes a random fix.

    Returns ``(move, attempted)``; ``move`` is None when the predecessor of
    the chosen fix is not a switch, when the proposed time leaves the gap
    between the neighbours, or when the proposal is rejected.
    """

    j = int(rng.integers(1, aug.fix_rank.shape[0]))
    k = int(aug.fix_rank[j]) - 1
    if not aug.is_switch[k]:
        return None, False

    t_prev, t_next = aug.time[k - 1], aug.time[k + 1]
    gap = t_next - t_prev
    s_prev = int(aug.state[k - 1])
    new_t = aug.time[k] + sdp * gap * rng.standard_normal()
    new_xy = aug.xy[k] + sdp * np.sqrt(params.v[s_prev - 1] * gap) * rng.standard_normal(2)
    if not (t_prev < new_t < t_next):
        return None, True

    cur = aug.sub(k - 1, k + 1)
    prop = aug.sub(k - 1, k + 1)
    prop.time[1] = new_t
    prop.xy[1] = new_xy
    if habitat_map is not None:
        prop.habitat[1] = int(find_region(new_xy, habitat_map))

    if mh_accept_np(rng, _local_logtarget(cur, params, rates), _local_logtarget(prop, params, rates)):
        move = LocalMove(aug.switch_number(k), float(new_t), new_xy, int(prop.habitat[1]))
        return move, True
    return None, True


__all__ = [name for name in globals() if not name.startswith("_")]
