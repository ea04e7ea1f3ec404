from __future__ import annotations

from typing import Optional

import numpy as np
from tqdm.auto import tqdm

from .config import MCMCSetup
from .mh_moves import local_refine, update_movement_params
from .movement import make_batched_augmented_loglik, trajectory_hastings_ratio
from .simulate import SimulationSuccess, simulate_trajectory
from .states import AcceptanceStats, AugmentedData, ChainState, MCMCResult
from .trace import TraceWriter


def run_mcmc(
    setup: MCMCSetup,
    *,
    seed: int,
    n_iter: Optional[int] = None,
    state: Optional[ChainState] = None,
    writer: Optional[TraceWriter] = None,
    progress: bool = True,
    verbose: bool = False,
) -> MCMCResult:
    """
    Sampling loop. Each iteration:
     - simulates a new switch history over a random block of fixes and
       accepts it with probability min(1, HR);
     - builds the merged view of fixes and switches once;
     - updates movement parameters (with probability pr_update_move),
       switching rates (if the simulation succeeded and switches exist),
       and one switch point locally.
    Every ``thin`` iterations the parameters and rates are recorded.
    Passing ``state`` (e.g. from :func:`load_checkpoint`) resumes a chain.
    """

    ctl = setup.controls
    n_iter = setup.n_iter if n_iter is None else int(n_iter)
    rng = np.random.default_rng(seed)

    if state is None:
        chain = setup.initial_state()
    else:
        chain = ChainState(
            obs=state.obs.copy(),
            switches=state.switches.copy(),
            params=state.params.copy(),
            rates=state.rates.copy(),
            iteration=state.iteration,
        )
        if state.rng_state is not None:
            rng.bit_generator.state = state.rng_state

    batched_ll = make_batched_augmented_loglik()
    exact = not setup.adaptive
    obs = chain.obs
    n_obs = len(obs)
    stats = AcceptanceStats()

    iters, par_rows, rate_rows = [], [], []

    first = chain.iteration + 1
    last = chain.iteration + n_iter
    with tqdm(total=n_iter, desc="MCMC", unit="it", disable=not progress) as pbar:
        for it in range(first, last + 1):
            # ---- trajectory update over a random block of fixes ----
            length = int(rng.integers(ctl.lenmin, ctl.lenmax + 1))
            point1 = int(rng.integers(0, n_obs - length + 1))
            block = obs.window(point1, point1 + length - 1)
            t_beg, t_end = block.time[0], block.time[-1]

            sim = simulate_trajectory(
                rng,
                block,
                chain.params,
                chain.rates,
                ctl.kappa,
                habitat_map=setup.habitat_map,
                max_tries=ctl.max_tries,
            )
            failed = not isinstance(sim, SimulationSuccess)
            if failed:
                stats.traj_failures += 1
            else:
                stats.traj_attempts += 1
                hr = trajectory_hastings_ratio(
                    sim.trajectory, block, chain.switches, chain.params, exact=exact
                )
                if rng.random() < hr:
                    traj = sim.trajectory
                    obs.assign_states(t_beg, t_end, traj.state[sim.fix_index])
                    chain.switches.replace_range(t_beg, t_end, traj.switches())
                    stats.traj_accepts += 1

            # ---- merged view shared by the remaining updates ----
            aug = AugmentedData.merge(obs, chain.switches)

            if rng.random() < ctl.pr_update_move:
                stats.par_attempts += 1
                chain.params, accepted = update_movement_params(
                    rng,
                    chain.params,
                    aug,
                    groups=setup.groups,
                    prior_mean=setup.priors.mean,
                    prior_sd=setup.priors.sd,
                    proposal_sd=setup.priors.proposal_sd,
                    batched_loglik=batched_ll,
                )
                stats.par_accepts += int(accepted)

            if not failed and len(chain.switches) > 0:
                chain.rates = chain.rates.update(aug, rng, setup.priors.shape)

            move, attempted = local_refine(
                rng,
                aug,
                chain.params,
                chain.rates,
                sdp=ctl.sdp,
                habitat_map=setup.habitat_map,
            )
            stats.local_attempts += int(attempted)
            if move is not None:
                chain.switches.replace_event(move.index, move.time, move.xy, move.habitat)
                stats.local_accepts += 1

            chain.iteration = it
            if it % ctl.thin == 0:
                iters.append(it)
                par_rows.append(np.round(chain.params.as_row(), 6))
                rate_rows.append(chain.rates.values.copy())
                if writer is not None:
                    writer.write(par_rows[-1], rate_rows[-1])
                summary = stats.summary()
                pbar.set_postfix({k: f"{v:.1f}%" for k, v in summary.items()})
                if verbose:
                    tqdm.write(
                        f"[iter {it}] acc_traj={summary['acc_traj']:.1f}% "
                        f"acc_par={summary['acc_par']:.1f}% switches={len(chain.switches)}"
                    )
            pbar.update(1)

    chain.rng_state = rng.bit_generator.state
    n_par = chain.params.as_row().shape[0]
    n_rates = chain.rates.values.shape[0]
    return MCMCResult(
        iterations=np.array(iters, dtype=np.int64),
        params_trace=np.array(par_rows).reshape(-1, n_par),
        rates_trace=np.array(rate_rows).reshape(-1, n_rates),
        state=chain,
        stats=stats,
    )


def open_trace_writer(setup: MCMCSetup, directory=".", stamp: Optional[str] = None) -> TraceWriter:
    """Trace writer with the set-up's column labels and its initial row."""

    writer = TraceWriter(
        directory,
        param_labels=setup.params0.labels(),
        rate_labels=setup.rates0.labels(),
        stamp=stamp,
    )
    writer.write(setup.params0.as_row(), setup.rates0.values)
    return writer


__all__ = [name for name in globals() if not name.startswith("_")]
