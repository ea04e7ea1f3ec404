import warnings

import numpy as np
import pytest

from mscmove import ConfigurationError, Controls, Homogeneity, setup_mcmc

PAR0 = {"m": [0.0, 0.0, 1.0, 1.0], "b": [0.5, 0.5], "v": [1.0, 1.0]}


def _setup(track, **kw):
    args = dict(par0=PAR0, rates0=[0.5, 0.5], mty=["ou", "ou"], n_states=2)
    args.update(kw)
    return setup_mcmc(track, **args)


def test_defaults_follow_working_scale(track20):
    setup = _setup(track20, rates0=None, states0=np.ones(20, dtype=int))
    np.testing.assert_allclose(setup.priors.mean[4:6], np.log(0.5))
    np.testing.assert_allclose(setup.priors.sd, 10.0)
    np.testing.assert_allclose(setup.priors.proposal_sd, [0.03] * 4 + [0.1] * 4)
    np.testing.assert_allclose(setup.rates0.values, [setup.controls.kappa / 2] * 2)
    assert len(setup.switches0) == 0


def test_initial_switches_precede_label_changes(track20):
    states0 = np.array([1] * 5 + [2] * 10 + [1] * 5)
    setup = _setup(track20, states0=states0)
    sw = setup.switches0
    assert sw.state.tolist() == [2, 1]
    t = track20[:, 2]
    dt = 0.1 * np.min(np.diff(t))
    np.testing.assert_allclose(sw.time, t[[5, 15]] - dt)
    np.testing.assert_allclose(sw.xy, track20[[5, 15], :2])
    assert sw.check_invariants(t)


def test_missing_state_count_without_map(track20):
    with pytest.raises(ConfigurationError, match="n_states"):
        _setup(track20, n_states=None)


@pytest.mark.parametrize(
    "kw",
    [
        {"par0": {"m": [0.0, 0.0, 1.0, 1.0], "b": [-0.5, 0.5], "v": [1.0, 1.0]}},
        {"par0": {"m": [0.0, 0.0, 1.0], "b": [0.5, 0.5], "v": [1.0, 1.0]}},
        {"par0": {"m": [0.0, 0.0, 1.0, 1.0], "v": [1.0, 1.0]}},
        {"rates0": [0.5, 0.5, 0.5]},
        {"rates0": [5.0, 0.5]},
        {"prior_mean": {"m": [0, 0, 0, 0], "b": [-1.0, 1.0], "v": [1.0, 1.0]}},
        {"mty": ["ou", "levy"]},
        {"states0": [3] * 20},
        {"controls": Controls(lenmax=50)},
        {"controls": Controls(lenmin=1)},
        {"homog": Homogeneity(m=True)},
    ],
)
def test_invalid_configuration_fails_fast(track20, kw):
    with pytest.raises(ConfigurationError):
        _setup(track20, **kw)


def test_malformed_observations_fail_fast(track20):
    bad = track20.copy()
    bad[3, 2] = bad[2, 2]
    with pytest.raises(ConfigurationError):
        _setup(bad)
    bad = track20.copy()
    bad[4, 0] = np.nan
    with pytest.raises(ConfigurationError):
        _setup(bad)


def test_mixed_process_types_switch_homogeneity_off(track20):
    with pytest.warns(UserWarning, match="state-dependent"):
        setup = _setup(
            track20,
            mty=["bm", "ou"],
            par0={"m": [0.0, 0.0, 0.0, 0.0], "b": [np.nan, 0.5], "v": [1.0, 1.0]},
            homog=Homogeneity(v=True),
        )
    assert not setup.homog.any()
    assert len(setup.groups) == 7


def test_homogeneous_components_share_one_group(track20):
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        setup = _setup(
            track20,
            par0={"m": [1.0, 1.0, 1.0, 1.0], "b": [0.5, 0.5], "v": [1.0, 1.0]},
            homog=Homogeneity(m=True, v=True),
        )
    assert [g.tolist() for g in setup.groups] == [[0, 2], [1, 3], [4], [5], [6, 7]]
