import numpy as np

from mscmove import (
    BM,
    OU,
    AugmentedData,
    MovementParams,
    Observations,
    StatePairRates,
    SwitchSet,
    local_refine,
    log_prior_grouped_np,
    make_batched_augmented_loglik,
    parameter_groups,
    propose_rw_grouped_np,
    update_movement_params,
)


def _aug():
    obs = Observations(
        xy=[[0.0, 0.0], [1.0, 0.5], [2.5, 1.0], [3.0, 3.0], [4.5, 2.0]],
        time=[0.0, 1.0, 2.0, 3.0, 4.0],
        state=[1, 1, 2, 2, 1],
        habitat=[0] * 5,
    )
    sw = SwitchSet(xy=[[2.0, 0.9], [4.0, 2.5]], time=[1.6, 3.7], state=[2, 1], habitat=[0, 0])
    return AugmentedData.merge(obs, sw)


def _params():
    return MovementParams(m=[[0.1, 0.1], [3.0, 2.0]], b=[np.nan, 0.4], v=[1.0, 0.8], process=[BM, OU])


def test_parameter_groups_layout():
    groups = parameter_groups(np.array([BM, OU, OU]), False, False, False)
    flat = sorted(int(i) for g in groups for i in g)
    # b of the Brownian state (index 6) is never updated
    assert flat == [0, 1, 2, 3, 4, 5, 7, 8, 9, 10, 11]

    groups = parameter_groups(np.array([OU, OU]), True, True, True)
    assert [g.tolist() for g in groups] == [[0, 2], [1, 3], [4, 5], [6, 7]]


def test_homogeneous_proposal_moves_components_together():
    rng = np.random.default_rng(0)
    p = MovementParams(m=[[1.0, 1.0], [1.0, 1.0]], b=[0.5, 0.5], v=[2.0, 2.0], process=[OU, OU])
    groups = parameter_groups(p.process, True, False, True)
    w = propose_rw_grouped_np(rng, p.to_working(), groups, np.full(8, 0.5))
    q = MovementParams.from_working(w, p.process)
    np.testing.assert_allclose(q.m[0], q.m[1])
    np.testing.assert_allclose(q.v[0], q.v[1])
    assert q.b[0] != q.b[1]


def test_grouped_prior_counts_shared_value_once():
    groups = parameter_groups(np.array([BM, BM]), False, False, True)
    w = np.zeros(8)
    mean, sd = np.zeros(8), np.ones(8)
    # 4 m entries and one shared v term
    np.testing.assert_allclose(log_prior_grouped_np(w, groups, mean, sd), -2.5 * np.log(2 * np.pi))


def test_parameter_updates_keep_positivity():
    rng = np.random.default_rng(1)
    aug = _aug()
    params = _params()
    groups = parameter_groups(params.process, False, False, False)
    batched = make_batched_augmented_loglik()
    n_acc = 0
    for _ in range(300):
        params, acc = update_movement_params(
            rng,
            params,
            aug,
            groups=groups,
            prior_mean=_params().to_working(),
            prior_sd=np.full(8, 10.0),
            proposal_sd=np.full(8, 0.3),
            batched_loglik=batched,
        )
        n_acc += acc
        assert params.is_valid()
        assert params.v.min() > 0.0 and params.b[1] > 0.0
        assert np.isnan(params.b[0])
    assert 0 < n_acc < 300


def test_local_refine_with_zero_spread_is_identity():
    rng = np.random.default_rng(2)
    aug = _aug()
    rates = StatePairRates([0.5, 0.5], n_states=2, kappa=2.0)
    moves = 0
    for _ in range(100):
        move, attempted = local_refine(rng, aug, _params(), rates, sdp=0.0)
        if move is not None:
            assert attempted
            k = aug.switch_rank[move.index]
            assert move.time == aug.time[k]
            np.testing.assert_array_equal(move.xy, aug.xy[k])
            moves += 1
    assert moves > 0


def test_local_refine_keeps_switch_inside_its_gap():
    rng = np.random.default_rng(3)
    aug = _aug()
    rates = StatePairRates([0.5, 0.5], n_states=2, kappa=2.0)
    for _ in range(200):
        move, _ = local_refine(rng, aug, _params(), rates, sdp=0.5)
        if move is not None:
            k = aug.switch_rank[move.index]
            assert aug.time[k - 1] < move.time < aug.time[k + 1]
