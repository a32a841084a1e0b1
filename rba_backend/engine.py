"""RbaEngine: incremental relative bundle adjustment.

Typical use::

    engine = RbaEngine("se2", RangeBearing2DSensor())
    for observations in keyframes:
        info = engine.define_new_keyframe(observations)

Each new keyframe is connected to the graph by the edge-creation policy,
its observations are stored, and a local area around it is re-optimized.
"""
import logging
import time
from typing import Dict, Iterable, List, Optional, Sequence, Set, Union

import numpy as np

from .bfs import BFSVisitor, bfs_visitor
from .config import RbaParameters
from .jacobians import observation_path, predict_from
from .lie import PoseAlgebra, make_algebra
from .models import (
    K2KEdge,
    NewEdgeInfo,
    NewKeyframeInfo,
    NewObservation,
    OptimizeLocalAreaParams,
    OptimizeResults,
    RbaContractError,
    RelativeLandmark,
)
from .policies import EdgeCreationPolicy, LocalAreasFixedSizePolicy
from .sensors import CartesianSensor, EuclideanLandmark, SensorModel
from .solver import IterationObserver, SchurLevenbergMarquardt
from .state import Capabilities, RbaProblemState

logger = logging.getLogger("rba.engine")


class _LocalAreaSelector(BFSVisitor):
    """Collects the k2k edges and landmarks of a local area."""

    def __init__(self, state: RbaProblemState, params: OptimizeLocalAreaParams):
        self.state = state
        self.params = params
        self.edges: List[int] = []
        self.landmarks: List[int] = []
        self._seen: Dict[int, int] = {}
        self._min_seen = max(1, int(params.dont_optimize_landmarks_seen_less_than_n_times))

    def filter_kf(self, kf_id, dist):
        limit = self.params.max_visitable_kf_id
        return limit is None or kf_id <= limit

    def visit_k2k(self, from_kf, to_kf, edge_id, dist):
        if self.params.optimize_k2k_edges:
            self.edges.append(edge_id)

    def filter_k2f(self, kf_id, obs_id, dist):
        return self.params.optimize_landmarks

    def visit_k2f(self, kf_id, obs_id, dist):
        lm_id = self.state.k2f_edges[obs_id].landmark_id
        if lm_id not in self.state.unknown_lms:
            return
        n = self._seen.get(lm_id, 0) + 1
        self._seen[lm_id] = n
        if n == self._min_seen:
            self.landmarks.append(lm_id)


class RbaEngine:

    def __init__(self,
                 algebra: Union[str, PoseAlgebra] = "se3",
                 sensor: Optional[SensorModel] = None,
                 params: Optional[RbaParameters] = None,
                 policy: Optional[EdgeCreationPolicy] = None,
                 landmark: Optional[EuclideanLandmark] = None,
                 iteration_observer: Optional[IterationObserver] = None):
        algebra = make_algebra(algebra)
        caps = Capabilities(algebra=algebra,
                            landmark=landmark or EuclideanLandmark(algebra.point_dims),
                            sensor=sensor or CartesianSensor(algebra.point_dims))
        self.params = (params or RbaParameters()).validate()
        self.state = RbaProblemState(caps, self.params.max_tree_depth)
        self.policy = policy or LocalAreasFixedSizePolicy()
        self.iteration_observer = iteration_observer

    @property
    def num_keyframes(self) -> int:
        return self.state.num_keyframes

    def clear(self) -> None:
        self.state.clear()

    # ---- ingestion ----
    def create_k2k_edge(self, from_id: int, to_id: int, init_pose: Optional[np.ndarray] = None) -> int:
        return self.state.create_k2k_edge(from_id, to_id, init_pose)

    def add_observation(self, kf_id: int, obs: NewObservation) -> int:
        return self.state.add_observation(kf_id,
                                          obs.landmark_id,
                                          obs.z,
                                          known_position=obs.known_position,
                                          initial_position=obs.initial_position)

    def define_new_keyframe(self,
                            observations: Sequence[NewObservation],
                            run_local_optimization: bool = True) -> NewKeyframeInfo:
        """Insert a keyframe with its observations and optimize around it."""
        st = self.state
        # reject bad input before anything is committed
        st.check_observations((o.landmark_id, o.z, o.known_position, o.initial_position)
                              for o in observations)
        kf_id = st.alloc_keyframe()
        info = NewKeyframeInfo(kf_id=kf_id)

        specs = self.policy.determine_edges(self, kf_id, observations)
        for spec in specs:
            if kf_id not in (spec.from_id, spec.to_id) or not st.has_keyframe(spec.from_id) \
                    or not st.has_keyframe(spec.to_id) or spec.from_id == spec.to_id:
                st.discard_last_keyframe()
                raise RbaContractError(
                    f"Policy '{self.policy.name}' proposed edge {spec.from_id}->{spec.to_id} "
                    f"not joining new keyframe {kf_id} to an existing one")
        for spec in specs:
            edge_id = self.create_k2k_edge(spec.from_id, spec.to_id, spec.init_pose)
            info.created_edge_ids.append(NewEdgeInfo(edge_id=edge_id,
                                                     has_approx_init_val=spec.init_pose is not None))

        obs_ids = [self.add_observation(kf_id, obs) for obs in observations]
        logger.debug("Keyframe #%d: %d new k2k edges, %d observations",
                     kf_id, len(info.created_edge_ids), len(obs_ids))

        if not run_local_optimization or not info.created_edge_ids:
            return info

        new_edges = [e.edge_id for e in info.created_edge_ids]
        if self.params.optimize_new_edges_alone:
            info.optimize_results_stg1 = self.optimize_edges(
                new_edges, [], obs_ids, use_robust_kernel=self.params.use_robust_kernel_stage1)
        info.optimize_results = self.optimize_local_area(kf_id, self.params.max_optimize_depth)
        return info

    # ---- optimization ----
    def optimize_local_area(self,
                            root_id: int,
                            win_size: int,
                            params: Optional[OptimizeLocalAreaParams] = None,
                            observation_indices: Optional[Iterable[int]] = None) -> OptimizeResults:
        """Optimize every edge and landmark within `win_size` edges of `root_id`."""
        params = params or OptimizeLocalAreaParams()
        selector = _LocalAreaSelector(self.state, params)
        bfs_visitor(self.state, root_id, win_size,
                    kf_visitor=selector, k2k_visitor=selector, k2f_visitor=selector)
        return self.optimize_edges(selector.edges, selector.landmarks, observation_indices)

    def _select_observations(self,
                             edge_ids: Sequence[int],
                             landmark_ids: Sequence[int],
                             observation_indices: Optional[Iterable[int]]) -> List[int]:
        st = self.state
        candidates: Set[int] = set()
        for lm_id in landmark_ids:
            candidates.update(st.observations_of(lm_id))
        for edge_id in edge_ids:
            src = st.k2k_edges[edge_id].from_id
            for kf in [src, *st.spanning_tree.tree(src).keys()]:
                candidates.update(st.observations_by(kf))
        if observation_indices is not None:
            candidates.intersection_update(observation_indices)

        edge_set, lm_set = set(edge_ids), set(landmark_ids)
        out = []
        for obs_id in sorted(candidates):
            path = observation_path(st, obs_id)
            if path is None:
                continue
            if st.k2f_edges[obs_id].landmark_id in lm_set or any(e in edge_set for e, _ in path):
                out.append(obs_id)
        return out

    def optimize_edges(self,
                       k2k_edge_ids: Sequence[int],
                       landmark_ids: Sequence[int],
                       observation_indices: Optional[Iterable[int]] = None,
                       use_robust_kernel: Optional[bool] = None) -> OptimizeResults:
        """Optimize the given k2k edges and unknown landmarks."""
        st = self.state
        edge_ids: List[int] = []
        for edge_id in k2k_edge_ids:
            st.require_edge(edge_id)
            if edge_id not in edge_ids:
                edge_ids.append(edge_id)
        lm_ids: List[int] = []
        for lm_id in landmark_ids:
            if lm_id in st.known_lms:
                raise RbaContractError(f"Landmark {lm_id} has a known position and cannot be optimized")
            if lm_id not in st.unknown_lms:
                raise RbaContractError(f"Landmark {lm_id} does not exist")
            if lm_id not in lm_ids:
                lm_ids.append(lm_id)
        if use_robust_kernel is None:
            use_robust_kernel = self.params.use_robust_kernel

        obs_ids = self._select_observations(edge_ids, lm_ids, observation_indices)
        solver = SchurLevenbergMarquardt(st, self.params, self.iteration_observer)
        t0 = time.perf_counter()
        res = solver.run(edge_ids, lm_ids, obs_ids, use_robust_kernel=use_robust_kernel)
        logger.debug("optimize_edges: %d edges, %d landmarks, %d observations, %.3fs, %s",
                     len(edge_ids), len(lm_ids), len(obs_ids), time.perf_counter() - t0, res.stop_reason)
        return res

    # ---- diagnostics ----
    def eval_overall_squared_error(self, scratch: Optional[List[bool]] = None) -> float:
        """Sum of squared residuals over every observation in the graph.

        Poses are composed along complete spanning trees, so observations
        whose base lies beyond `max_tree_depth` are included and the
        cached trees are left untouched. Observations with a disconnected
        base are skipped.
        """
        st = self.state
        sensor = st.caps.sensor
        by_observer: Dict[int, List[int]] = {}
        for obs in st.k2f_edges:
            by_observer.setdefault(obs.observer_id, []).append(obs.id)

        visited = scratch if scratch is not None else []
        total = 0.0
        skipped = 0
        for observer, obs_ids in sorted(by_observer.items()):
            _, poses = st.spanning_tree.create_complete_spanning_tree(observer, scratch=visited)
            for obs_id in obs_ids:
                obs = st.k2f_edges[obs_id]
                T_o_b = poses.get(st.landmark(obs.landmark_id).base_id)
                if T_o_b is None:
                    skipped += 1
                    continue
                r = sensor.residual(obs.z, predict_from(st, obs_id, T_o_b))
                total += float(r @ r)
        if skipped:
            logger.warning("eval_overall_squared_error: %d observations with a disconnected base", skipped)
        return total

    def create_complete_spanning_tree(self, root_id: int, max_depth: Optional[int] = None, scratch=None):
        return self.state.spanning_tree.create_complete_spanning_tree(root_id, max_depth, scratch)

    def find_path_bfs(self, src_kf: int, trg_kf: int) -> Optional[List[int]]:
        return self.state.find_path_bfs(src_kf, trg_kf)

    def bfs_visitor(self, root_id: int, max_distance: int,
                    kf_visitor=None, lm_visitor=None, k2k_visitor=None, k2f_visitor=None) -> None:
        bfs_visitor(self.state, root_id, max_distance, kf_visitor, lm_visitor, k2k_visitor, k2f_visitor)

    # ---- read-only access ----
    def get_k2k_edges(self) -> List[K2KEdge]:
        return list(self.state.k2k_edges)

    def get_known_feats(self) -> Dict[int, RelativeLandmark]:
        return dict(self.state.known_lms)

    def get_unknown_feats(self) -> Dict[int, RelativeLandmark]:
        return dict(self.state.unknown_lms)

    def get_rba_state(self) -> RbaProblemState:
        return self.state
