import numpy as np
import pytest

from mscmove import Controls, setup_mcmc


def synthetic_track(n=20, seed=1):
    rng = np.random.default_rng(seed)
    time = np.cumsum(rng.uniform(0.5, 1.5, size=n))
    xy = np.cumsum(rng.normal(0.0, 1.0, size=(n, 2)), axis=0)
    return np.column_stack([xy, time])


@pytest.fixture
def track20():
    return synthetic_track(20)


@pytest.fixture
def setup_bm_ou(track20):
    states0 = np.array([1] * 7 + [2] * 6 + [1] * 7)
    return setup_mcmc(
        track20,
        par0={"m": [0.0, 0.0, 1.0, 1.0], "b": [np.nan, 0.5], "v": [1.0, 2.0]},
        rates0=[0.5, 0.5],
        mty=["bm", "ou"],
        states0=states0,
        n_states=2,
        n_iter=1000,
        controls=Controls(kappa=2.0, lenmin=3, lenmax=6, thin=10),
    )
