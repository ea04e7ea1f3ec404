import numpy as np

from mscmove import (
    OU,
    AugmentedData,
    Controls,
    HabitatMap,
    load_checkpoint,
    open_trace_writer,
    run_mcmc,
    save_checkpoint,
    setup_mcmc,
)


def _assert_chain_consistent(state):
    obs, sw = state.obs, state.switches
    assert sw.check_invariants(obs.time)
    aug = AugmentedData.merge(obs, sw)
    prev = aug.state[:-1]
    jump = aug.is_switch[1:]
    assert np.all(aug.state[1:][jump] != prev[jump])
    assert np.all(aug.state[1:][~jump] == prev[~jump])


def test_run_is_deterministic_for_a_seed(setup_bm_ou):
    r1 = run_mcmc(setup_bm_ou, seed=123, n_iter=1000, progress=False)
    r2 = run_mcmc(setup_bm_ou, seed=123, n_iter=1000, progress=False)
    assert r1.params_trace.shape == (100, 8)
    np.testing.assert_array_equal(r1.iterations, r2.iterations)
    np.testing.assert_array_equal(r1.params_trace, r2.params_trace)
    np.testing.assert_array_equal(r1.rates_trace, r2.rates_trace)
    np.testing.assert_array_equal(r1.state.switches.time, r2.state.switches.time)


def test_run_preserves_invariants(setup_bm_ou):
    res = run_mcmc(setup_bm_ou, seed=7, n_iter=500, progress=False)
    _assert_chain_consistent(res.state)

    v = res.params_trace[:, 6:8]
    b_ou = res.params_trace[:, 4:6][:, setup_bm_ou.params0.process == OU]
    assert np.all(v > 0.0) and np.all(b_ou > 0.0)
    assert np.all(res.rates_trace >= 0.0) and np.all(res.rates_trace <= setup_bm_ou.controls.kappa)

    stats = res.stats
    assert stats.traj_attempts + stats.traj_failures == 500
    assert 0 <= stats.traj_accepts <= stats.traj_attempts
    assert stats.par_attempts == 500


def test_setup_data_is_not_mutated_by_a_run(setup_bm_ou):
    before = setup_bm_ou.obs.state.copy()
    sw_before = setup_bm_ou.switches0.time.copy()
    run_mcmc(setup_bm_ou, seed=1, n_iter=200, progress=False)
    np.testing.assert_array_equal(setup_bm_ou.obs.state, before)
    np.testing.assert_array_equal(setup_bm_ou.switches0.time, sw_before)


def test_trace_files_have_header_and_thinned_rows(setup_bm_ou, tmp_path):
    with open_trace_writer(setup_bm_ou, tmp_path, stamp="-test") as writer:
        res = run_mcmc(setup_bm_ou, seed=5, n_iter=50, writer=writer, progress=False)

    params_lines = (tmp_path / "params-test.txt").read_text().splitlines()
    rates_lines = (tmp_path / "rates-test.txt").read_text().splitlines()
    assert params_lines[0].split() == ["mux1", "muy1", "mux2", "muy2", "b1", "b2", "v1", "v2"]
    assert rates_lines[0].split() == ["lambda12", "lambda21"]
    # initial row + one row every 10 iterations
    assert len(params_lines) == 1 + 1 + 5
    assert len(rates_lines) == 1 + 1 + 5
    last = np.array(params_lines[-1].split(), dtype=float)
    np.testing.assert_allclose(last, res.params_trace[-1], equal_nan=True)


def test_checkpoint_resume_matches_uninterrupted_run(setup_bm_ou, tmp_path):
    full = run_mcmc(setup_bm_ou, seed=9, n_iter=200, progress=False)

    first = run_mcmc(setup_bm_ou, seed=9, n_iter=100, progress=False)
    path = tmp_path / "chain.npz"
    save_checkpoint(path, first.state)
    state = load_checkpoint(path, setup_bm_ou)
    assert state.iteration == 100
    second = run_mcmc(setup_bm_ou, seed=0, n_iter=100, state=state, progress=False)

    np.testing.assert_array_equal(second.iterations, full.iterations[10:])
    np.testing.assert_array_equal(
        np.vstack([first.params_trace, second.params_trace]), full.params_trace
    )
    np.testing.assert_array_equal(np.vstack([first.rates_trace, second.rates_trace]), full.rates_trace)


def test_adaptive_model_run(track20):
    hmap = HabitatMap(raster=[[1, 2], [2, 1]], origin=(-20.0, -20.0), cell_size=20.0)
    setup = setup_mcmc(
        track20,
        par0={"m": [0.0, 0.0, 0.0, 0.0], "b": [np.nan, np.nan], "v": [1.0, 1.0]},
        rates0=None,
        mty=["bm", "bm"],
        habitat_map=hmap,
        controls=Controls(kappa=2.0, thin=20),
    )
    assert setup.adaptive
    np.testing.assert_array_equal(setup.obs.state, setup.obs.habitat)
    res = run_mcmc(setup, seed=4, n_iter=200, progress=False)
    assert res.rates_trace.shape == (10, 2)
    assert np.all((res.rates_trace >= 0.0) & (res.rates_trace <= 2.0))
    _assert_chain_consistent(res.state)


def test_invariants_hold_after_every_iteration(setup_bm_ou):
    state = None
    for _ in range(40):
        res = run_mcmc(setup_bm_ou, seed=11, n_iter=1, state=state, progress=False)
        state = res.state
        _assert_chain_consistent(state)
    assert state.iteration == 40
