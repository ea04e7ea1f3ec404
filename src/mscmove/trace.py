"""Append-only parameter/rate traces and chain checkpoints."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

import numpy as np

from .states import ChainState, MovementParams, SwitchSet


class TraceWriter:
    """Buffered ``params<stamp>.txt`` and ``rates<stamp>.txt`` writers.

    Both files are truncated on creation and start with a header row naming
    the columns; rows are only ever appended.
    """

    def __init__(
        self,
        directory=".",
        *,
        param_labels: Sequence[str],
        rate_labels: Sequence[str],
        stamp: Optional[str] = None,
    ):
        self.stamp = datetime.now().strftime("%Y-%m-%d-%H%M") if stamp is None else stamp
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        self.params_path = directory / f"params{self.stamp}.txt"
        self.rates_path = directory / f"rates{self.stamp}.txt"
        self._fp = open(self.params_path, "w")
        self._fr = open(self.rates_path, "w")
        self._fp.write(" ".join(param_labels) + "\n")
        self._fr.write(" ".join(rate_labels) + "\n")

    def write(self, params_row: np.ndarray, rates_row: np.ndarray) -> None:
        np.savetxt(self._fp, np.round(np.asarray(params_row, dtype=np.float64), 6)[None, :], fmt="%.6f")
        np.savetxt(self._fr, np.asarray(rates_row, dtype=np.float64)[None, :], fmt="%.10g")

    def close(self) -> None:
        self._fp.close()
        self._fr.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def save_checkpoint(path, state: ChainState) -> None:
    """Persist labels, switches, parameters, rates, iteration and RNG state as one file."""

    np.savez(
        path,
        obs_state=state.obs.state,
        sw_xy=state.switches.xy,
        sw_time=state.switches.time,
        sw_state=state.switches.state,
        sw_habitat=state.switches.habitat,
        m=state.params.m,
        b=state.params.b,
        v=state.params.v,
        process=state.params.process,
        rates=state.rates.values,
        iteration=np.array(state.iteration),
        rng_state=np.array(json.dumps(state.rng_state)),
    )


def load_checkpoint(path, setup) -> ChainState:
    """Rebuild a :class:`ChainState` saved by :func:`save_checkpoint` for ``setup``."""

    with np.load(path) as z:
        obs = setup.obs.copy()
        if z["obs_state"].shape != obs.state.shape:
            raise ValueError("checkpoint does not match the observations of this set-up")
        obs.state = z["obs_state"].astype(np.int64)
        return ChainState(
            obs=obs,
            switches=SwitchSet(z["sw_xy"], z["sw_time"], z["sw_state"], z["sw_habitat"]),
            params=MovementParams(z["m"], z["b"], z["v"], z["process"]),
            rates=setup.rates0.with_values(z["rates"]),
            iteration=int(z["iteration"]),
            rng_state=json.loads(str(z["rng_state"])),
        )


__all__ = [name for name in globals() if not name.startswith("_")]
