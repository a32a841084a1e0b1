"""
Tests for the graph state: ids, edges, observations and path queries.
"""

import numpy as np
import pytest

from rba_backend.jacobians import linearize, observation_path
from rba_backend.lie import SE2Algebra
from rba_backend.models import RbaContractError
from rba_backend.sensors import CartesianSensor, EuclideanLandmark, RangeBearing2DSensor
from rba_backend.state import Capabilities, RbaProblemState


@pytest.fixture
def state():
    caps = Capabilities(SE2Algebra(), EuclideanLandmark(2), CartesianSensor(2))
    return RbaProblemState(caps, max_tree_depth=3)


def _chain(state, n):
    kfs = [state.alloc_keyframe() for _ in range(n)]
    for a, b in zip(kfs, kfs[1:]):
        state.create_k2k_edge(a, b)
    return kfs


class TestKeyframesAndEdges:

    def test_keyframe_ids_are_unique_and_increasing(self, state):
        ids = [state.alloc_keyframe() for _ in range(5)]
        assert ids == [0, 1, 2, 3, 4]
        assert state.num_keyframes == 5

    def test_edge_requires_existing_keyframes(self, state):
        state.alloc_keyframe()
        with pytest.raises(RbaContractError):
            state.create_k2k_edge(0, 1)

    def test_self_loop_rejected(self, state):
        state.alloc_keyframe()
        with pytest.raises(RbaContractError):
            state.create_k2k_edge(0, 0)

    def test_edge_pose_shape_checked(self, state):
        state.alloc_keyframe()
        state.alloc_keyframe()
        with pytest.raises(RbaContractError):
            state.create_k2k_edge(0, 1, np.eye(4))

    def test_adjacency_in_creation_order(self, state):
        _chain(state, 3)
        state.create_k2k_edge(0, 2)
        assert list(state.neighbors(0)) == [(0, 1), (2, 2)]
        assert list(state.neighbors(2)) == [(1, 1), (2, 0)]

    def test_capabilities_must_agree(self):
        with pytest.raises(ValueError):
            Capabilities(SE2Algebra(), EuclideanLandmark(2), CartesianSensor(3))


class TestObservations:

    def test_unknown_landmark_initialised_from_sensor(self, state):
        kf = state.alloc_keyframe()
        obs_id = state.add_observation(kf, 7, [1.0, 2.0])
        assert obs_id == 0
        lm = state.unknown_lms[7]
        assert lm.base_id == kf
        assert np.allclose(lm.position, [1.0, 2.0])

    def test_range_bearing_initialisation(self):
        caps = Capabilities(SE2Algebra(), EuclideanLandmark(2), RangeBearing2DSensor())
        st = RbaProblemState(caps)
        st.alloc_keyframe()
        st.add_observation(0, 1, [2.0, np.pi / 2])
        assert np.allclose(st.unknown_lms[1].position, [0.0, 2.0], atol=1e-12)

    def test_initial_position_overrides_sensor(self, state):
        state.alloc_keyframe()
        state.add_observation(0, 1, [1.0, 1.0], initial_position=[3.0, 4.0])
        assert np.allclose(state.unknown_lms[1].position, [3.0, 4.0])

    def test_known_landmark_goes_to_known_table(self, state):
        state.alloc_keyframe()
        state.add_observation(0, 5, [1.0, 1.0], known_position=[1.0, 1.0])
        assert 5 in state.known_lms
        assert 5 not in state.unknown_lms
        assert state.k2f_edges[0].known_position

    def test_both_positions_rejected(self, state):
        state.alloc_keyframe()
        with pytest.raises(RbaContractError):
            state.add_observation(0, 1, [1.0, 1.0], known_position=[1.0, 1.0], initial_position=[1.0, 1.0])

    def test_reinitialisation_rejected(self, state):
        _chain(state, 2)
        state.add_observation(0, 1, [1.0, 1.0])
        with pytest.raises(RbaContractError):
            state.add_observation(1, 1, [1.0, 1.0], initial_position=[0.0, 0.0])
        state.add_observation(0, 2, [1.0, 1.0], known_position=[1.0, 1.0])
        with pytest.raises(RbaContractError):
            state.add_observation(1, 2, [1.0, 1.0], known_position=[1.0, 1.0])

    def test_measurement_size_checked(self, state):
        state.alloc_keyframe()
        with pytest.raises(RbaContractError):
            state.add_observation(0, 1, [1.0, 2.0, 3.0])

    def test_unreachable_base_is_stored(self, state):
        state.alloc_keyframe()
        state.alloc_keyframe()
        state.add_observation(0, 1, [1.0, 1.0])
        obs_id = state.add_observation(1, 1, [1.0, 1.0])
        assert state.observers_of(1) == [0, 1]
        assert state.landmark(1).base_id == 0
        assert observation_path(state, obs_id) is None

    def test_base_beyond_tree_depth_is_stored(self, state):
        _chain(state, 5)
        state.add_observation(0, 1, [1.0, 1.0])
        near = state.add_observation(3, 1, [1.0, 1.0])
        far = state.add_observation(4, 1, [1.0, 1.0])
        assert state.observations_of(1) == [0, near, far]
        assert state.observations_by(4) == [far]
        assert observation_path(state, near) is not None
        assert observation_path(state, far) is None

    def test_linearize_outside_tree_raises(self, state):
        _chain(state, 5)
        state.add_observation(0, 1, [1.0, 1.0])
        far = state.add_observation(4, 1, [1.0, 1.0])
        with pytest.raises(KeyError):
            linearize(state, far, {0}, {1})

    def test_indices(self, state):
        _chain(state, 2)
        a = state.add_observation(0, 1, [1.0, 1.0])
        b = state.add_observation(1, 1, [1.0, 1.0])
        c = state.add_observation(1, 2, [1.0, 1.0])
        assert state.observations_of(1) == [a, b]
        assert state.observers_of(1) == [0, 1]
        assert state.observations_by(1) == [b, c]


class TestBatchValidation:

    def test_duplicate_first_sighting_rejected(self, state):
        state.alloc_keyframe()
        with pytest.raises(RbaContractError, match="earlier in this keyframe"):
            state.check_observations([(5, [1.0, 0.0], None, [1.0, 0.0]),
                                      (5, [1.0, 0.0], None, [1.0, 0.0])])
        assert 5 not in state.unknown_lms

    def test_repeat_without_position_accepted(self, state):
        state.alloc_keyframe()
        state.check_observations([(5, [1.0, 0.0], None, [1.0, 0.0]),
                                  (5, [1.0, 0.0], None, None)])

    def test_position_for_existing_landmark_rejected(self, state):
        state.alloc_keyframe()
        state.add_observation(0, 1, [1.0, 1.0])
        with pytest.raises(RbaContractError, match="unknown table"):
            state.check_observations([(1, [1.0, 1.0], [0.0, 0.0], None)])

    def test_discard_last_keyframe(self, state):
        _chain(state, 2)
        state.alloc_keyframe()
        state.discard_last_keyframe()
        assert state.num_keyframes == 2
        assert 2 not in state.spanning_tree.sym
        assert state.alloc_keyframe() == 2

    def test_discard_keyframe_with_edges_rejected(self, state):
        _chain(state, 2)
        with pytest.raises(RbaContractError):
            state.discard_last_keyframe()
        assert state.num_keyframes == 2


class TestFindPath:

    def test_same_keyframe_gives_empty_path(self, state):
        _chain(state, 2)
        assert state.find_path_bfs(1, 1) == []

    def test_shortest_path_ignores_direction(self, state):
        _chain(state, 4)
        state.create_k2k_edge(3, 0)
        assert state.find_path_bfs(0, 3) == [3]
        assert state.find_path_bfs(1, 3) in ([2, 3], [0, 3])
        assert state.find_path_bfs(3, 1) in ([2, 1], [0, 1])

    def test_disconnected_gives_none(self, state):
        _chain(state, 2)
        state.alloc_keyframe()
        assert state.find_path_bfs(0, 2) is None
