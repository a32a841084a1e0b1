"""Edge-creation policies: which k2k edges a new keyframe gets.

A policy returns `NewEdgeSpec(from_id, to_id, init_pose)` entries where
`from_id` is an existing keyframe and `to_id` the new one. The engine
creates the edges in the returned order.
"""
import logging
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence

import numpy as np

from rba_common.metrics import umeyama

from .models import NewEdgeSpec, NewObservation

if TYPE_CHECKING:  # pragma: no cover
    from .engine import RbaEngine

logger = logging.getLogger("rba.policies")


def estimate_relative_pose(engine: "RbaEngine",
                           from_id: int,
                           observations: Sequence[NewObservation],
                           min_shared: int = 3) -> Optional[np.ndarray]:
    """Guess T_from_new by aligning landmarks seen from both keyframes.

    Landmark positions in the `from_id` frame are taken from its spanning
    tree; in the new keyframe frame they come from inverting the sensor
    model. Returns None with fewer than `min_shared` usable landmarks.
    """
    state = engine.state
    sensor = state.caps.sensor
    tree = state.spanning_tree
    pts_new, pts_from = [], []
    for obs in observations:
        if obs.landmark_id not in state.unknown_lms and obs.landmark_id not in state.known_lms:
            continue
        lm = state.landmark(obs.landmark_id)
        if tree.distance(from_id, lm.base_id) is None:
            continue
        p_new = sensor.inverse_observe(np.asarray(obs.z, dtype=float))
        if p_new is None:
            return None
        T_from_base = tree.get_pose(from_id, lm.base_id)
        pts_from.append(state.algebra.transform_point(T_from_base, state.caps.landmark.to_point(lm.position)))
        pts_new.append(p_new)
    if len(pts_new) < max(min_shared, state.algebra.point_dims):
        return None
    R, t, _ = umeyama(np.array(pts_new), np.array(pts_from))
    return state.algebra.from_rotation_translation(R, t)


class EdgeCreationPolicy:
    """Interface for edge-creation strategies."""

    name = "base"

    def determine_edges(self,
                        engine: "RbaEngine",
                        new_kf_id: int,
                        observations: Sequence[NewObservation]) -> List[NewEdgeSpec]:  # pragma: no cover
        raise NotImplementedError


class LinearGraphPolicy(EdgeCreationPolicy):
    """Chain every keyframe to its predecessor."""

    name = "linear"

    def determine_edges(self, engine, new_kf_id, observations):
        if new_kf_id == 0:
            return []
        prev = new_kf_id - 1
        return [NewEdgeSpec(prev, new_kf_id, estimate_relative_pose(engine, prev, observations))]


class LocalAreasFixedSizePolicy(EdgeCreationPolicy):
    """Fixed-size local areas with loop closures between area bases.

    Keyframe ``k`` belongs to the area whose base is ``k - k % submap_size``
    and connects to that base. The first keyframe of each area connects to
    the previous area's base. Further edges come from other area bases that
    share at least `min_obs_to_loop_closure` landmarks with the new keyframe
    and are not already within the spanning tree of the primary base.
    """

    name = "local-areas"

    def __init__(self, submap_size: int = 15, min_obs_to_loop_closure: int = 4):
        if submap_size < 1:
            raise ValueError(f"submap_size must be >= 1, got {submap_size}")
        self.submap_size = int(submap_size)
        self.min_obs_to_loop_closure = int(min_obs_to_loop_closure)

    def area_base(self, kf_id: int) -> int:
        return kf_id - kf_id % self.submap_size

    def determine_edges(self, engine, new_kf_id, observations):
        if new_kf_id == 0:
            return []
        base = self.area_base(new_kf_id)
        primary = base - self.submap_size if base == new_kf_id else base
        edges = [NewEdgeSpec(primary, new_kf_id, estimate_relative_pose(engine, primary, observations))]

        state = engine.state
        shared: Dict[int, int] = {}
        for obs in observations:
            areas = {self.area_base(o) for o in state.observers_of(obs.landmark_id)}
            for other in areas:
                if other != primary and other != new_kf_id:
                    shared[other] = shared.get(other, 0) + 1
        near = state.spanning_tree.tree(primary)
        for other, count in sorted(shared.items()):
            if count < self.min_obs_to_loop_closure or other in near:
                continue
            logger.info("Loop closure edge: area base %d -> keyframe %d (%d shared landmarks)",
                        other, new_kf_id, count)
            edges.append(NewEdgeSpec(other, new_kf_id, estimate_relative_pose(engine, other, observations)))
        return edges


def make_policy(name: str, submap_size: int = 15, min_obs_to_loop_closure: int = 4) -> EdgeCreationPolicy:
    key = str(name).lower()
    if key == "linear":
        return LinearGraphPolicy()
    if key in ("local-areas", "local_areas"):
        return LocalAreasFixedSizePolicy(submap_size, min_obs_to_loop_closure)
    raise ValueError(f"Unsupported edge creation policy: {name}")
