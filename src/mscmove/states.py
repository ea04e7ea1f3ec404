"""Shared dataclasses and constants for the movement MCMC state."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

# Mapping of movement process names to the integer ids stored per state.
PROCESS_TYPES = {
    "bm": 1,  # Brownian motion with drift
    "ou": 2,  # location Ornstein-Uhlenbeck
}
BM = PROCESS_TYPES["bm"]
OU = PROCESS_TYPES["ou"]


def _as_xy(xy) -> np.ndarray:
    arr = np.asarray(xy, dtype=np.float64)
    if arr.ndim == 1 and arr.size == 0:
        arr = arr.reshape(0, 2)
    if arr.ndim != 2 or arr.shape[1] != 2:
        raise ValueError(f"positions must have shape (n, 2), got {arr.shape}")
    return arr


@dataclass
class Observations:
    """Observation store: position fixes with their inferred states.

    Only ``state`` changes during a run, through :meth:`assign_states`.
    Jump and behaviour flags are implicitly 0 for every fix.
    """

    xy: np.ndarray  # (n, 2)
    time: np.ndarray  # (n,) strictly increasing
    state: np.ndarray  # (n,) int in 1..S
    habitat: np.ndarray  # (n,) int, 0 when no habitat map is used

    def __post_init__(self):
        self.xy = _as_xy(self.xy)
        self.time = np.asarray(self.time, dtype=np.float64)
        self.state = np.asarray(self.state, dtype=np.int64)
        self.habitat = np.asarray(self.habitat, dtype=np.int64)
        n = self.time.shape[0]
        if self.time.ndim != 1 or self.xy.shape[0] != n:
            raise ValueError("xy and time must describe the same number of fixes")
        if self.state.shape != (n,) or self.habitat.shape != (n,):
            raise ValueError("state and habitat must have one entry per fix")
        if np.any(self.state < 1):
            raise ValueError("state labels start at 1")
        if not np.all(np.isfinite(self.xy)):
            raise ValueError("There should not be NaNs in the fix positions.")
        if not np.all(np.isfinite(self.time)):
            raise ValueError("fix times must be finite")
        if n > 1 and np.any(np.diff(self.time) <= 0.0):
            raise ValueError("fix times must be strictly increasing (no duplicates)")

    def __len__(self) -> int:
        return int(self.time.shape[0])

    def window(self, first: int, last: int) -> "Observations":
        """Copy of the contiguous block of fixes ``first..last`` (inclusive)."""

        sl = slice(first, last + 1)
        return Observations(
            xy=self.xy[sl].copy(),
            time=self.time[sl].copy(),
            state=self.state[sl].copy(),
            habitat=self.habitat[sl].copy(),
        )

    def assign_states(self, t_lo: float, t_hi: float, states: np.ndarray) -> None:
        """Relabel the fixes whose time lies in the closed interval [t_lo, t_hi]."""

        mask = (self.time >= t_lo) & (self.time <= t_hi)
        states = np.asarray(states, dtype=np.int64)
        if states.shape != (int(mask.sum()),):
            raise ValueError(f"expected {int(mask.sum())} states for the fixes in [{t_lo}, {t_hi}], got {states.shape}")
        self.state[mask] = states

    def copy(self) -> "Observations":
        return self.window(0, len(self) - 1)


@dataclass
class SwitchSet:
    """Time-ordered set of inferred behavioural switches (jump flag 1).

    ``state`` is the state entered at the switch time.
    """

    xy: np.ndarray  # (k, 2)
    time: np.ndarray  # (k,)
    state: np.ndarray  # (k,)
    habitat: np.ndarray  # (k,)

    def __post_init__(self):
        self.xy = _as_xy(self.xy)
        self.time = np.asarray(self.time, dtype=np.float64).reshape(-1)
        self.state = np.asarray(self.state, dtype=np.int64).reshape(-1)
        self.habitat = np.asarray(self.habitat, dtype=np.int64).reshape(-1)

    @staticmethod
    def empty() -> "SwitchSet":
        return SwitchSet(
            xy=np.zeros((0, 2)),
            time=np.zeros(0),
            state=np.zeros(0, dtype=np.int64),
            habitat=np.zeros(0, dtype=np.int64),
        )

    def __len__(self) -> int:
        return int(self.time.shape[0])

    def _range(self, t_lo: float, t_hi: float) -> slice:
        lo = int(np.searchsorted(self.time, t_lo, side="right"))
        hi = int(np.searchsorted(self.time, t_hi, side="left"))
        return slice(lo, max(lo, hi))

    def between(self, t_lo: float, t_hi: float) -> "SwitchSet":
        """Switches with t_lo < time < t_hi."""

        sl = self._range(t_lo, t_hi)
        return SwitchSet(
            xy=self.xy[sl].copy(),
            time=self.time[sl].copy(),
            state=self.state[sl].copy(),
            habitat=self.habitat[sl].copy(),
        )

    def replace_range(self, t_lo: float, t_hi: float, new: "SwitchSet") -> None:
        """Replace the switches inside (t_lo, t_hi) by ``new`` (sorted, same interval)."""

        if len(new) and (new.time[0] <= t_lo or new.time[-1] >= t_hi):
            raise ValueError("replacement switches must lie strictly inside the interval")
        sl = self._range(t_lo, t_hi)
        self.xy = np.concatenate([self.xy[: sl.start], new.xy, self.xy[sl.stop :]])
        self.time = np.concatenate([self.time[: sl.start], new.time, self.time[sl.stop :]])
        self.state = np.concatenate([self.state[: sl.start], new.state, self.state[sl.stop :]])
        self.habitat = np.concatenate(
            [self.habitat[: sl.start], new.habitat, self.habitat[sl.stop :]]
        )

    def replace_event(self, k: int, time: float, xy: np.ndarray, habitat: int) -> None:
        """Move switch ``k``; the caller keeps it between its neighbours."""

        self.time[k] = time
        self.xy[k] = xy
        self.habitat[k] = habitat

    def copy(self) -> "SwitchSet":
        return SwitchSet(
            xy=self.xy.copy(),
            time=self.time.copy(),
            state=self.state.copy(),
            habitat=self.habitat.copy(),
        )

    def check_invariants(self, fix_times: np.ndarray) -> bool:
        """True if strictly time-ordered and disjoint from the fix times."""

        if len(self) > 1 and np.any(np.diff(self.time) <= 0.0):
            return False
        return not np.any(np.isin(self.time, fix_times))


@dataclass
class AugmentedData:
    """Time-ordered merge of fixes and switches.

    Point ``k`` carries the state in effect on the segment (k, k+1); the
    segment's habitat covariate is ``habitat[k]``.
    """

    xy: np.ndarray  # (n, 2)
    time: np.ndarray  # (n,)
    state: np.ndarray  # (n,)
    habitat: np.ndarray  # (n,)
    is_switch: np.ndarray  # (n,) bool
    fix_rank: np.ndarray  # merged index of each fix
    switch_rank: np.ndarray  # merged index of each switch

    @staticmethod
    def merge(obs: Observations, switches: SwitchSet) -> "AugmentedData":
        """Stable two-way merge of two time-sorted sets (no full re-sort)."""

        n_f, n_s = len(obs), len(switches)
        fix_rank = np.arange(n_f) + np.searchsorted(switches.time, obs.time)
        switch_rank = np.arange(n_s) + np.searchsorted(obs.time, switches.time)
        n = n_f + n_s

        xy = np.empty((n, 2))
        time = np.empty(n)
        state = np.empty(n, dtype=np.int64)
        habitat = np.empty(n, dtype=np.int64)
        is_switch = np.zeros(n, dtype=bool)

        xy[fix_rank], xy[switch_rank] = obs.xy, switches.xy
        time[fix_rank], time[switch_rank] = obs.time, switches.time
        state[fix_rank], state[switch_rank] = obs.state, switches.state
        habitat[fix_rank], habitat[switch_rank] = obs.habitat, switches.habitat
        is_switch[switch_rank] = True

        return AugmentedData(
            xy=xy,
            time=time,
            state=state,
            habitat=habitat,
            is_switch=is_switch,
            fix_rank=fix_rank,
            switch_rank=switch_rank,
        )

    @staticmethod
    def from_points(xy, time, state, habitat, is_switch) -> "AugmentedData":
        is_switch = np.asarray(is_switch, dtype=bool)
        return AugmentedData(
            xy=_as_xy(xy),
            time=np.asarray(time, dtype=np.float64),
            state=np.asarray(state, dtype=np.int64),
            habitat=np.asarray(habitat, dtype=np.int64),
            is_switch=is_switch,
            fix_rank=np.flatnonzero(~is_switch),
            switch_rank=np.flatnonzero(is_switch),
        )

    def __len__(self) -> int:
        return int(self.time.shape[0])

    def sub(self, first: int, last: int) -> "AugmentedData":
        """Points ``first..last`` (inclusive) as a new merged block."""

        sl = slice(first, last + 1)
        return AugmentedData.from_points(
            self.xy[sl].copy(),
            self.time[sl].copy(),
            self.state[sl].copy(),
            self.habitat[sl].copy(),
            self.is_switch[sl].copy(),
        )

    def fixes(self) -> Observations:
        r = self.fix_rank
        return Observations(self.xy[r], self.time[r], self.state[r], self.habitat[r])

    def switches(self) -> SwitchSet:
        r = self.switch_rank
        return SwitchSet(self.xy[r], self.time[r], self.state[r], self.habitat[r])

    def switch_number(self, k: int) -> int:
        """Index in the switch set of merged point ``k`` (which must be a switch)."""

        return int(np.searchsorted(self.switch_rank, k))


@dataclass
class MovementParams:
    """Per-state movement parameters in natural units.

    ``m`` is the drift (BM) or centre of attraction (OU), ``b`` the attraction
    strength (NaN for BM states) and ``v`` the variance rate. Sampling happens
    on the working scale (m, log b, log v).
    """

    m: np.ndarray  # (S, 2)
    b: np.ndarray  # (S,)
    v: np.ndarray  # (S,)
    process: np.ndarray  # (S,) BM or OU

    def __post_init__(self):
        self.m = np.asarray(self.m, dtype=np.float64).reshape(-1, 2)
        self.b = np.asarray(self.b, dtype=np.float64).reshape(-1)
        self.v = np.asarray(self.v, dtype=np.float64).reshape(-1)
        self.process = np.asarray(self.process, dtype=np.int64).reshape(-1)
        self.b = np.where(self.process == OU, self.b, np.nan)

    @property
    def n_states(self) -> int:
        return int(self.process.shape[0])

    def is_valid(self) -> bool:
        """Attraction (OU states) and variance strictly positive and finite."""

        b_ou = self.b[self.process == OU]
        return bool(
            np.all(np.isfinite(self.m))
            and np.all(np.isfinite(self.v))
            and np.all(self.v > 0.0)
            and np.all(np.isfinite(b_ou))
            and np.all(b_ou > 0.0)
        )

    def to_working(self) -> np.ndarray:
        return np.concatenate([self.m.reshape(-1), np.log(self.b), np.log(self.v)])

    @staticmethod
    def from_working(w: np.ndarray, process: np.ndarray) -> "MovementParams":
        S = int(len(process))
        return MovementParams(
            m=w[: 2 * S].reshape(S, 2),
            b=np.exp(w[2 * S : 3 * S]),
            v=np.exp(w[3 * S : 4 * S]),
            process=process,
        )

    def as_row(self) -> np.ndarray:
        return np.concatenate([self.m.reshape(-1), self.b, self.v])

    def labels(self) -> List[str]:
        S = self.n_states
        names = []
        for s in range(1, S + 1):
            names += [f"mux{s}", f"muy{s}"]
        names += [f"b{s}" for s in range(1, S + 1)]
        names += [f"v{s}" for s in range(1, S + 1)]
        return names

    def copy(self) -> "MovementParams":
        return MovementParams(self.m.copy(), self.b.copy(), self.v.copy(), self.process.copy())


@dataclass
class ChainState:
    """Everything one chain needs to continue: the unit of checkpointing."""

    obs: Observations
    switches: SwitchSet
    params: MovementParams
    rates: "RateModel"  # noqa: F821  (see switching.py)
    iteration: int = 0
    rng_state: Optional[Dict] = None


@dataclass
class AcceptanceStats:
    """Attempt/accept counters of the three Metropolis moves."""

    traj_attempts: int = 0
    traj_accepts: int = 0
    traj_failures: int = 0
    par_attempts: int = 0
    par_accepts: int = 0
    local_attempts: int = 0
    local_accepts: int = 0

    @staticmethod
    def _pct(num: int, den: int) -> float:
        return 100.0 * num / den if den else 0.0

    def summary(self) -> Dict[str, float]:
        return {
            "acc_traj": self._pct(self.traj_accepts, self.traj_attempts),
            "acc_par": self._pct(self.par_accepts, self.par_attempts),
            "acc_local": self._pct(self.local_accepts, self.local_attempts),
            "fail_sim": self._pct(self.traj_failures, self.traj_attempts + self.traj_failures),
        }


@dataclass
class MCMCResult:
    """Output of a run: thinned traces, final chain state and move statistics."""

    iterations: np.ndarray  # (R,)
    params_trace: np.ndarray  # (R, 4S)
    rates_trace: np.ndarray  # (R, n_rates)
    state: ChainState
    stats: AcceptanceStats = field(default_factory=AcceptanceStats)


__all__ = [name for name in globals() if not name.startswith("_")]
