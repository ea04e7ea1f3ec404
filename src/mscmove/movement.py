"""Movement-model densities, switch-point bridges and the trajectory MH ratio.

Within a state the position follows ``X' = F X + c + N(0, Q I)`` over a
step of length ``dt``:

* BM (drift ``m``, variance ``v``): ``F = 1``, ``c = m dt``, ``Q = v dt``;
* OU (centre ``m``, attraction ``b``): ``F = exp(-b dt)``,
  ``c = (1 - F) m``, ``Q = v (1 - F^2) / (2 b)``.
"""

from __future__ import annotations

from typing import Callable, Sequence, Tuple

import numpy as np
import jax
import jax.numpy as jnp

from .states import OU, AugmentedData, MovementParams, Observations, SwitchSet

jax.config.update("jax_enable_x64", True)

_LOG_2PI = np.log(2.0 * np.pi)


def segment_moments(
    params: MovementParams, states: np.ndarray, dt: np.ndarray
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Affine Gaussian moments (F, c, Q) of segments with the given states."""

    idx = np.asarray(states, dtype=np.int64) - 1
    dt = np.asarray(dt, dtype=np.float64)
    is_ou = params.process[idx] == OU
    b = np.where(is_ou, params.b[idx], 1.0)
    v = params.v[idx]

    F = np.where(is_ou, np.exp(-b * dt), 1.0)
    drift = np.where(is_ou, -np.expm1(-b * dt), dt)  # multiplies m
    Q = np.where(is_ou, v * -np.expm1(-2.0 * b * dt) / (2.0 * b), v * dt)
    c = drift[..., None] * params.m[idx]
    return F, c, Q


def compose_moments(first, second):
    """Moments of ``first`` followed by ``second``."""

    F1, c1, Q1 = first
    F2, c2, Q2 = second
    return F2 * F1, F2 * c1 + c2, F2 * F2 * Q1 + Q2


def gaussian2_logpdf(z: np.ndarray, mean: np.ndarray, var: np.ndarray) -> np.ndarray:
    """Log-density of an isotropic bivariate normal."""

    r2 = np.sum((z - mean) ** 2, axis=-1)
    return -_LOG_2PI - np.log(var) - 0.5 * r2 / var


def path_logdensity(aug: AugmentedData, params: MovementParams) -> float:
    """Movement log-density of all points of ``aug`` given its first point."""

    if len(aug) < 2:
        return 0.0
    F, c, Q = segment_moments(params, aug.state[:-1], np.diff(aug.time))
    mean = F[:, None] * aug.xy[:-1] + c
    return float(np.sum(gaussian2_logpdf(aug.xy[1:], mean, Q)))


def fix_marginal_logdensity(aug: AugmentedData, params: MovementParams) -> float:
    """Log-density of the fixes of ``aug`` with the switch positions integrated out."""

    dt = np.diff(aug.time)
    F, c, Q = segment_moments(params, aug.state[:-1], dt)
    total = 0.0
    ranks = aug.fix_rank
    for f0, f1 in zip(ranks[:-1], ranks[1:]):
        acc = (F[f0], c[f0], Q[f0])
        for k in range(f0 + 1, f1):
            acc = compose_moments(acc, (F[k], c[k], Q[k]))
        Fa, ca, Qa = acc
        total += float(gaussian2_logpdf(aug.xy[f1], Fa * aug.xy[f0] + ca, Qa))
    return total


# -----------------------------------------------------------------------------
# Switch-point bridges
# -----------------------------------------------------------------------------


def bridge_moments(x_prev, step, ahead, x_next):
    """Mean and variance of a switch position given its two neighbours.

    ``step`` maps the previous point to the switch, ``ahead`` maps the switch
    to the next fix.
    """

    F1, c1, Q1 = step
    F2, c2, Q2 = ahead
    mu1 = F1 * x_prev + c1
    denom = F2 * F2 * Q1 + Q2
    mean = mu1 + (Q1 * F2 / denom) * (x_next - F2 * mu1 - c2)
    return mean, Q1 * Q2 / denom


def _ahead_moments(params, aug, k, f, exact):
    if not exact:
        # the entered state is taken to persist until the next fix
        F, c, Q = segment_moments(params, aug.state[k : k + 1], aug.time[f : f + 1] - aug.time[k : k + 1])
        return F[0], c[0], Q[0]
    F, c, Q = segment_moments(params, aug.state[k:f], np.diff(aug.time[k : f + 1]))
    acc = (F[0], c[0], Q[0])
    for j in range(1, f - k):
        acc = compose_moments(acc, (F[j], c[j], Q[j]))
    return acc


def bridge_switch_positions(
    aug: AugmentedData,
    params: MovementParams,
    *,
    exact: bool,
    rng: np.random.Generator | None = None,
) -> float:
    """Log proposal density of the switch positions of a block.

    Each switch is bridged between the previous point and the next fix. With
    ``exact`` the bridge runs through the actual states up to the next fix;
    otherwise the entered state is assumed to last until the next fix. When
    ``rng`` is given the positions are drawn and written into ``aug.xy``
    before being scored. Returns ``nan`` if a bridge is degenerate.
    """

    logq = 0.0
    next_fix = aug.fix_rank[np.searchsorted(aug.fix_rank, aug.switch_rank)]
    for k, f in zip(aug.switch_rank, next_fix):
        F1, c1, Q1 = segment_moments(params, aug.state[k - 1 : k], aug.time[k : k + 1] - aug.time[k - 1 : k])
        ahead = _ahead_moments(params, aug, k, f, exact)
        mean, var = bridge_moments(aug.xy[k - 1], (F1[0], c1[0], Q1[0]), ahead, aug.xy[f])
        if not (np.isfinite(var) and var > 0.0 and np.all(np.isfinite(mean))):
            return np.nan
        if rng is not None:
            aug.xy[k] = mean + np.sqrt(var) * rng.standard_normal(2)
        logq += float(gaussian2_logpdf(aug.xy[k], mean, var))
    return logq


# -----------------------------------------------------------------------------
# Likelihood evaluator
# -----------------------------------------------------------------------------


def trajectory_log_weight(aug: AugmentedData, params: MovementParams, *, exact: bool) -> float:
    """log p(points) - log q(switch positions) for one window."""

    return path_logdensity(aug, params) - bridge_switch_positions(aug, params, exact=exact)


def current_window(block: Observations, switches: SwitchSet) -> AugmentedData:
    """The accepted trajectory over the time span of ``block``."""

    return AugmentedData.merge(block, switches.between(block.time[0], block.time[-1]))


def trajectory_hastings_ratio(
    candidate: AugmentedData,
    block: Observations,
    switches: SwitchSet,
    params: MovementParams,
    *,
    exact: bool,
) -> float:
    """Metropolis-Hastings ratio of a simulated window against the current one.

    The switching-process prior cancels against the uniformization proposal,
    so the ratio is the movement density of each window divided by the bridge
    density of its switch positions. With exact bridges this equals the ratio
    of the fixes' marginal densities under the two state paths.
    """

    lw_new = trajectory_log_weight(candidate, params, exact=exact)
    if not np.isfinite(lw_new):
        return 0.0
    lw_old = trajectory_log_weight(current_window(block, switches), params, exact=exact)
    if not np.isfinite(lw_old):
        return np.inf
    return float(np.exp(min(lw_new - lw_old, 700.0)))


# -----------------------------------------------------------------------------
# Batched full-data log-likelihood (JAX)
# -----------------------------------------------------------------------------


def _augmented_loglik_masked_jax(start, end, dt, idx, mask, m, b, v, is_ou):
    ou = is_ou[idx]
    b_s = jnp.where(ou, b[idx], 1.0)
    v_s = v[idx]
    F = jnp.where(ou, jnp.exp(-b_s * dt), 1.0)
    drift = jnp.where(ou, -jnp.expm1(-b_s * dt), dt)
    Q = jnp.where(ou, v_s * -jnp.expm1(-2.0 * b_s * dt) / (2.0 * b_s), v_s * dt)
    mean = F[:, None] * start + drift[:, None] * m[idx]
    r2 = jnp.sum((end - mean) ** 2, axis=-1)
    ll = -_LOG_2PI - jnp.log(Q) - 0.5 * r2 / Q
    return jnp.sum(jnp.where(mask, ll, 0.0))


def _padded_capacity(n: int) -> int:
    return max(16, 1 << int(np.ceil(np.log2(max(n, 1)))))


def make_batched_augmented_loglik() -> Callable[[AugmentedData, Sequence[MovementParams]], np.ndarray]:
    """Return a JAX-compiled evaluator of the full augmented log-likelihood.

    batched(aug, [params_0, ..., params_{B-1}]) -> (B,)

    Segment arrays are padded to a power-of-two capacity and masked so that
    the compiled function is reused while the number of switches changes.
    """

    f = jax.jit(
        jax.vmap(
            _augmented_loglik_masked_jax,
            in_axes=(None, None, None, None, None, 0, 0, 0, None),
        )
    )

    def batched(aug: AugmentedData, params_list: Sequence[MovementParams]) -> np.ndarray:
        n = len(aug) - 1
        cap = _padded_capacity(n)
        start = np.zeros((cap, 2))
        end = np.zeros((cap, 2))
        dt = np.ones(cap)
        idx = np.zeros(cap, dtype=np.int32)
        mask = np.zeros(cap, dtype=bool)
        if n > 0:
            start[:n] = aug.xy[:-1]
            end[:n] = aug.xy[1:]
            dt[:n] = np.diff(aug.time)
            idx[:n] = aug.state[:-1] - 1
            mask[:n] = True

        m = np.stack([p.m for p in params_list])
        b = np.stack([p.b for p in params_list])
        v = np.stack([p.v for p in params_list])
        is_ou = params_list[0].process == OU
        out = f(
            jnp.asarray(start),
            jnp.asarray(end),
            jnp.asarray(dt),
            jnp.asarray(idx),
            jnp.asarray(mask),
            jnp.asarray(m),
            jnp.asarray(b),
            jnp.asarray(v),
            jnp.asarray(is_ou),
        )
        return np.asarray(out, dtype=np.float64)

    return batched


__all__ = [name for name in globals() if not name.startswith("_")]
