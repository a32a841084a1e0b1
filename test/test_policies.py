import numpy as np
import pytest

from rba_backend.config import RbaParameters
from rba_backend.engine import RbaEngine
from rba_backend.models import NewEdgeSpec, NewObservation, RbaContractError
from rba_backend.policies import (
    EdgeCreationPolicy,
    LinearGraphPolicy,
    LocalAreasFixedSizePolicy,
    estimate_relative_pose,
    make_policy,
)
from rba_backend.sensors import CartesianSensor


LOCAL_POINTS = np.array([[1.0, 0.5], [2.0, -1.0], [-0.5, 1.5], [1.5, 2.0], [0.3, -0.7]])


def _area_engine(submap_size=2, min_obs=4, depth=1):
    params = RbaParameters(max_tree_depth=depth)
    policy = LocalAreasFixedSizePolicy(submap_size=submap_size, min_obs_to_loop_closure=min_obs)
    return RbaEngine("se2", CartesianSensor(2), params=params, policy=policy)


def _observe_from(engine, T, lm_ids):
    algebra = engine.state.algebra
    return [NewObservation(landmark_id=int(l), z=algebra.inverse_transform_point(T, LOCAL_POINTS[l]))
            for l in lm_ids]


class TestLinearGraphPolicy:

    def test_chains_to_predecessor(self, se2_engine):
        assert se2_engine.define_new_keyframe([], run_local_optimization=False).created_edge_ids == []
        for k in range(1, 4):
            se2_engine.define_new_keyframe([], run_local_optimization=False)
        assert [(e.from_id, e.to_id) for e in se2_engine.get_k2k_edges()] == [(0, 1), (1, 2), (2, 3)]


class TestLocalAreasPolicy:

    def test_area_bases(self):
        policy = LocalAreasFixedSizePolicy(submap_size=15)
        assert [policy.area_base(k) for k in (0, 14, 15, 29, 30)] == [0, 0, 15, 15, 30]

    def test_edges_follow_area_bases(self):
        engine = _area_engine(submap_size=3, depth=3)
        for _ in range(8):
            engine.define_new_keyframe([], run_local_optimization=False)
        pairs = [(e.from_id, e.to_id) for e in engine.get_k2k_edges()]
        assert pairs == [(0, 1), (0, 2), (0, 3), (3, 4), (3, 5), (3, 6), (6, 7)]

    def test_default_submap_connects_to_previous_base(self, se2_area_engine):
        for _ in range(17):
            se2_area_engine.define_new_keyframe([], run_local_optimization=False)
        edges = {e.to_id: e.from_id for e in se2_area_engine.get_k2k_edges()}
        assert edges[14] == 0
        assert edges[15] == 0
        assert edges[16] == 15

    def test_loop_closure_between_area_bases(self):
        engine = _area_engine(submap_size=2, min_obs=4, depth=1)
        algebra = engine.state.algebra
        engine.define_new_keyframe(_observe_from(engine, algebra.identity(), range(4)),
                                   run_local_optimization=False)
        for _ in range(5):
            engine.define_new_keyframe([], run_local_optimization=False)

        T_0_6 = algebra.from_vector([0.4, -0.2, 0.3])
        info = engine.define_new_keyframe(_observe_from(engine, T_0_6, range(4)),
                                          run_local_optimization=False)
        pairs = [(engine.state.k2k_edges[e.edge_id].from_id, engine.state.k2k_edges[e.edge_id].to_id)
                 for e in info.created_edge_ids]
        assert pairs == [(4, 6), (0, 6)]
        # the primary base has no path to the landmarks' base; the closure does
        assert not info.created_edge_ids[0].has_approx_init_val
        assert info.created_edge_ids[1].has_approx_init_val
        closure = engine.state.k2k_edges[info.created_edge_ids[1].edge_id]
        assert np.allclose(closure.pose, T_0_6, atol=1e-9)
        assert engine.state.spanning_tree.distance(6, 0) == 1

    def test_too_few_shared_landmarks_gives_no_closure(self):
        engine = _area_engine(submap_size=2, min_obs=4, depth=1)
        algebra = engine.state.algebra
        engine.define_new_keyframe(_observe_from(engine, algebra.identity(), range(4)),
                                   run_local_optimization=False)
        for _ in range(5):
            engine.define_new_keyframe([], run_local_optimization=False)
        new_kf = engine.state.alloc_keyframe()
        specs = engine.policy.determine_edges(engine, new_kf, _observe_from(engine, algebra.identity(), range(3)))
        assert [(s.from_id, s.to_id) for s in specs] == [(4, 6)]

    def test_rejects_bad_submap_size(self):
        with pytest.raises(ValueError):
            LocalAreasFixedSizePolicy(submap_size=0)


class TestRelativePoseGuess:

    def test_needs_enough_shared_landmarks(self, se2_engine):
        algebra = se2_engine.state.algebra
        se2_engine.define_new_keyframe(_observe_from(se2_engine, algebra.identity(), range(5)))
        T = algebra.from_vector([1.0, 0.5, -0.2])
        assert estimate_relative_pose(se2_engine, 0, _observe_from(se2_engine, T, range(2))) is None
        guess = estimate_relative_pose(se2_engine, 0, _observe_from(se2_engine, T, range(5)))
        assert np.allclose(guess, T, atol=1e-9)

    def test_unseen_landmarks_are_ignored(self, se2_engine):
        algebra = se2_engine.state.algebra
        se2_engine.define_new_keyframe(_observe_from(se2_engine, algebra.identity(), range(3)))
        obs = _observe_from(se2_engine, algebra.identity(), range(5))
        obs[3].landmark_id = 100
        obs[4].landmark_id = 101
        assert np.allclose(estimate_relative_pose(se2_engine, 0, obs), algebra.identity(), atol=1e-9)


class TestPolicyContract:

    def test_edge_not_touching_new_keyframe_is_rejected(self):
        class Broken(EdgeCreationPolicy):
            name = "broken"

            def determine_edges(self, engine, new_kf_id, observations):
                return [NewEdgeSpec(0, 1, None)] if new_kf_id == 2 else []

        engine = RbaEngine("se2", CartesianSensor(2), policy=Broken())
        engine.define_new_keyframe([])
        engine.define_new_keyframe([])
        engine.create_k2k_edge(0, 1)
        with pytest.raises(RbaContractError):
            engine.define_new_keyframe([])
        assert engine.num_keyframes == 2
        assert len(engine.get_k2k_edges()) == 1

    def test_make_policy(self):
        assert isinstance(make_policy("linear"), LinearGraphPolicy)
        policy = make_policy("local-areas", submap_size=7, min_obs_to_loop_closure=2)
        assert isinstance(policy, LocalAreasFixedSizePolicy)
        assert (policy.submap_size, policy.min_obs_to_loop_closure) == (7, 2)
        with pytest.raises(ValueError):
            make_policy("star")
