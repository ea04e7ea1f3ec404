"""Switching-rate models under uniformization at rate ``kappa``.

Two variants share the :class:`RateModel` interface and are chosen once at
set-up:

* :class:`StatePairRates`: one rate per ordered pair of distinct states,
  stored row-wise (``lambda12, lambda13, ..., lambda21, ...``).
* :class:`HabitatRates`: habitat-adaptive model; the switching rate on a
  segment depends only on the habitat ``h`` of the segment's starting point,
  and the entered state is uniform over the other states.
"""

from __future__ import annotations

from typing import List, Tuple

import numpy as np

from .states import AugmentedData


def _log_pos(x):
    with np.errstate(divide="ignore"):
        return np.where(x > 0.0, np.log(np.maximum(x, 1e-300)), -np.inf)


class RateModel:
    """Switching rates bounded by ``kappa`` (the uniformization rate)."""

    adaptive = False

    def __init__(self, values, n_states: int, kappa: float):
        self.values = np.asarray(values, dtype=np.float64).reshape(-1)
        self.n_states = int(n_states)
        self.kappa = float(kappa)

    def with_values(self, values) -> "RateModel":
        return type(self)(values, self.n_states, self.kappa)

    def copy(self) -> "RateModel":
        return self.with_values(self.values.copy())

    # ---- interface ----
    def labels(self) -> List[str]:
        raise NotImplementedError

    def validate(self) -> None:
        raise NotImplementedError

    def out_rate(self, states: np.ndarray, habitats: np.ndarray) -> np.ndarray:
        """Total switching hazard out of ``states`` on the given habitats."""
        raise NotImplementedError

    def switch_rate(self, src: np.ndarray, dst: np.ndarray, habitats: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def jump_probs(self, state: int, habitat: int) -> np.ndarray:
        """Distribution of the state after one candidate epoch of the rate-kappa process."""
        raise NotImplementedError

    def update(self, aug: AugmentedData, rng: np.random.Generator, shape: Tuple[float, float]) -> "RateModel":
        raise NotImplementedError

    # ---- shared ----
    def path_logprior(self, aug: AugmentedData) -> float:
        """Log-density of the switches of ``aug`` given its first point."""

        if len(aug) < 2:
            return 0.0
        src, hab = aug.state[:-1], aug.habitat[:-1]
        dt = np.diff(aug.time)
        lp = -np.sum(self.out_rate(src, hab) * dt)
        jumps = aug.is_switch[1:]
        if np.any(jumps):
            lp += np.sum(_log_pos(self.switch_rate(src[jumps], aug.state[1:][jumps], hab[jumps])))
        return float(lp)

    def _segment_stats(self, aug: AugmentedData):
        src, hab = aug.state[:-1], aug.habitat[:-1]
        dst = aug.state[1:]
        jumps = aug.is_switch[1:]
        return src, dst, hab, np.diff(aug.time), jumps

    def _check_bounds(self) -> None:
        if np.any(~np.isfinite(self.values)) or np.any(self.values < 0.0) or np.any(self.values > self.kappa):
            raise ValueError(f"switching rates must lie in [0, kappa={self.kappa}]")


class StatePairRates(RateModel):
    """Unconstrained model: rate ``lambda_ij`` from state i to state j."""

    def rate_matrix(self) -> np.ndarray:
        S = self.n_states
        L = np.zeros((S, S))
        L[~np.eye(S, dtype=bool)] = self.values
        return L

    def labels(self) -> List[str]:
        S = self.n_states
        return [f"lambda{i}{j}" for i in range(1, S + 1) for j in range(1, S + 1) if i != j]

    def validate(self) -> None:
        S = self.n_states
        if self.values.shape[0] != S * (S - 1):
            raise ValueError(f"expected {S * (S - 1)} switching rates, got {self.values.shape[0]}")
        self._check_bounds()
        if np.any(self.rate_matrix().sum(axis=1) > self.kappa * (1.0 + 1e-12)):
            raise ValueError("total switching rate out of a state must not exceed kappa")

    def out_rate(self, states, habitats):
        return self.rate_matrix().sum(axis=1)[np.asarray(states) - 1]

    def switch_rate(self, src, dst, habitats):
        return self.rate_matrix()[np.asarray(src) - 1, np.asarray(dst) - 1]

    def jump_probs(self, state, habitat):
        p = self.rate_matrix()[state - 1] / self.kappa
        p[state - 1] = max(0.0, 1.0 - p.sum())
        return p / p.sum()

    def update(self, aug, rng, shape):
        """Gibbs draw of the rates given the augmented path.

        Virtual (thinned) epochs per state are drawn given the current rates;
        then each row ``(lambda_i1/kappa, ..., stay)`` is Dirichlet with
        shapes ``(a + n_ij, ..., b + m_i)``. For two states this is the Beta
        update ``lambda/kappa ~ Beta(a + n, b + m)``.
        """

        S = self.n_states
        a, b = shape
        src, dst, _, dt, jumps = self._segment_stats(aug)
        counts = np.zeros((S, S))
        np.add.at(counts, (src[jumps] - 1, dst[jumps] - 1), 1.0)
        exposure = np.bincount(src - 1, weights=dt, minlength=S)

        L = self.rate_matrix()
        virtual = rng.poisson(np.maximum(self.kappa - L.sum(axis=1), 0.0) * exposure)

        new = np.zeros((S, S))
        off = ~np.eye(S, dtype=bool)
        for i in range(S):
            g = rng.gamma(a + counts[i, off[i]])
            g_stay = rng.gamma(b + virtual[i])
            new[i, off[i]] = self.kappa * g / (g.sum() + g_stay)
        return self.with_values(new[off])


class HabitatRates(RateModel):
    """Habitat-adaptive model: rate ``lambda_h`` on segments starting in habitat h."""

    adaptive = True

    def labels(self) -> List[str]:
        return [f"lambda{h}" for h in range(1, self.values.shape[0] + 1)]

    def validate(self) -> None:
        if self.values.shape[0] != self.n_states:
            raise ValueError(
                f"adaptive model needs one rate per habitat ({self.n_states}), got {self.values.shape[0]}"
            )
        if self.n_states < 2:
            raise ValueError("adaptive model needs at least two habitats")
        self._check_bounds()

    def out_rate(self, states, habitats):
        return self.values[np.asarray(habitats) - 1]

    def switch_rate(self, src, dst, habitats):
        rate = self.values[np.asarray(habitats) - 1] / (self.n_states - 1)
        return np.where(np.asarray(src) != np.asarray(dst), rate, 0.0)

    def jump_probs(self, state, habitat):
        p_move = self.values[habitat - 1] / self.kappa
        p = np.full(self.n_states, p_move / (self.n_states - 1))
        p[state - 1] = max(0.0, 1.0 - p_move)
        return p / p.sum()

    def update(self, aug, rng, shape):
        """``lambda_h/kappa ~ Beta(a + n_h, b + m_h)`` with virtual counts ``m_h``."""

        H = self.n_states
        a, b = shape
        _, _, hab, dt, jumps = self._segment_stats(aug)
        n = np.bincount(hab[jumps] - 1, minlength=H).astype(np.float64)
        exposure = np.bincount(hab - 1, weights=dt, minlength=H)
        virtual = rng.poisson(np.maximum(self.kappa - self.values, 0.0) * exposure)
        return self.with_values(self.kappa * rng.beta(a + n, b + virtual))


__all__ = [name for name in globals() if not name.startswith("_")]
