"""
Tests for the incrementally maintained spanning trees.
"""

import numpy as np
import pytest

from rba_backend.lie import SE2Algebra
from rba_backend.sensors import CartesianSensor, EuclideanLandmark
from rba_backend.state import Capabilities, RbaProblemState


def _state(depth=3):
    caps = Capabilities(SE2Algebra(), EuclideanLandmark(2), CartesianSensor(2))
    return RbaProblemState(caps, max_tree_depth=depth)


def _random_graph(seed, n=25, extra=15, depth=3):
    rng = np.random.default_rng(seed)
    st = _state(depth)
    algebra = st.algebra
    for k in range(n):
        st.alloc_keyframe()
        if k > 0:
            st.create_k2k_edge(int(rng.integers(0, k)), k, algebra.from_vector(rng.normal(size=3)))
    for _ in range(extra):
        a, b = rng.choice(n, size=2, replace=False)
        st.create_k2k_edge(int(a), int(b), algebra.from_vector(rng.normal(size=3)))
    return st


class TestSymbolicTrees:

    @pytest.mark.parametrize("seed", [0, 1, 2])
    def test_distance_matches_bfs(self, seed):
        st = _random_graph(seed)
        tree = st.spanning_tree
        for root in range(st.num_keyframes):
            for kf in range(st.num_keyframes):
                path = st.find_path_bfs(root, kf)
                d = tree.distance(root, kf)
                if path is not None and len(path) <= tree.max_depth:
                    assert d == len(path)
                else:
                    assert d is None

    def test_depth_bound(self):
        st = _state(depth=2)
        for k in range(5):
            st.alloc_keyframe()
            if k:
                st.create_k2k_edge(k - 1, k)
        tree = st.spanning_tree
        assert tree.distance(0, 2) == 2
        assert tree.distance(0, 3) is None
        assert tree.distance(4, 2) == 2

    def test_shortcut_edge_reparents(self):
        st = _state(depth=3)
        for k in range(4):
            st.alloc_keyframe()
            if k:
                st.create_k2k_edge(k - 1, k)
        assert st.spanning_tree.distance(0, 3) == 3
        e = st.create_k2k_edge(3, 0)
        assert st.spanning_tree.distance(0, 3) == 1
        assert st.spanning_tree.tree(0)[3].edge_id == e
        assert st.spanning_tree.path(0, 3) == [(e, False)]

    @pytest.mark.parametrize("seed", [4, 5])
    def test_rebuild_reproduces_incremental_distances(self, seed):
        st = _random_graph(seed)
        before = {r: {k: e.dist for k, e in st.spanning_tree.tree(r).items()}
                  for r in range(st.num_keyframes)}
        st.spanning_tree.rebuild()
        after = {r: {k: e.dist for k, e in st.spanning_tree.tree(r).items()}
                 for r in range(st.num_keyframes)}
        assert before == after


class TestNumericTrees:

    def test_pose_composes_along_path(self):
        st = _state()
        algebra = st.algebra
        for _ in range(3):
            st.alloc_keyframe()
        A = algebra.from_vector([1.0, 0.5, 0.2])
        B = algebra.from_vector([-0.3, 2.0, -0.4])
        st.create_k2k_edge(0, 1, A)
        st.create_k2k_edge(2, 1, B)
        tree = st.spanning_tree
        assert np.allclose(tree.get_pose(0, 2), A @ algebra.inverse(B))
        assert np.allclose(tree.get_pose(2, 0), B @ algebra.inverse(A))

    def test_poses_are_cached_until_invalidated(self):
        st = _state()
        algebra = st.algebra
        for k in range(3):
            st.alloc_keyframe()
            if k:
                st.create_k2k_edge(k - 1, k, algebra.from_vector([1.0, 0.0, 0.1]))
        tree = st.spanning_tree
        tree.get_pose(0, 2)
        n = tree.num_numeric_updates
        tree.get_pose(0, 2)
        assert tree.num_numeric_updates == n

        new_pose = algebra.from_vector([2.0, 0.0, 0.0])
        st.update_edge_pose(1, new_pose)
        assert tree.is_numeric_fresh(0, 1)
        assert not tree.is_numeric_fresh(0, 2)
        T = tree.get_pose(0, 2)
        assert tree.num_numeric_updates == n + 1
        assert np.allclose(T, st.k2k_edges[0].pose @ new_pose)

    def test_invalidation_drops_whole_subtree(self):
        st = _state()
        for k in range(4):
            st.alloc_keyframe()
            if k:
                st.create_k2k_edge(k - 1, k)
        tree = st.spanning_tree
        tree.get_pose(0, 3)
        st.update_edge_pose(0, st.algebra.from_vector([1.0, 1.0, 0.0]))
        assert not any(tree.is_numeric_fresh(0, k) for k in (1, 2, 3))


class TestCompleteSpanningTree:

    def test_reaches_beyond_cached_depth(self):
        st = _state(depth=1)
        algebra = st.algebra
        step = algebra.from_vector([1.0, 0.0, 0.0])
        for k in range(5):
            st.alloc_keyframe()
            if k:
                st.create_k2k_edge(k - 1, k, step)
        entries, poses = st.spanning_tree.create_complete_spanning_tree(0)
        assert sorted(poses) == [0, 1, 2, 3, 4]
        assert entries[4].dist == 4
        assert np.allclose(algebra.translation(poses[4]), [4.0, 0.0])

    def test_max_depth_and_scratch(self):
        st = _state()
        for k in range(5):
            st.alloc_keyframe()
            if k:
                st.create_k2k_edge(k - 1, k)
        scratch = [True]
        _, poses = st.spanning_tree.create_complete_spanning_tree(2, max_depth=1, scratch=scratch)
        assert sorted(poses) == [1, 2, 3]
        assert len(scratch) == 5
