from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple
import logging

import numpy as np

from .lie import PoseAlgebra
from .models import K2FEdge, K2KEdge, RbaContractError, RelativeLandmark, as_vector
from .sensors import EuclideanLandmark, SensorModel
from .spanning_tree import SpanningTreeCache

logger = logging.getLogger("rba.state")


@dataclass
class Capabilities:
    """The three swappable capabilities the engine is generic over."""
    algebra: PoseAlgebra
    landmark: EuclideanLandmark
    sensor: SensorModel

    def __post_init__(self):
        if self.sensor.point_dims != self.algebra.point_dims:
            raise ValueError(
                f"Sensor '{self.sensor.name}' works on {self.sensor.point_dims}-D points "
                f"but pose type '{self.algebra.name}' on {self.algebra.point_dims}-D points")
        if self.landmark.point_dims != self.algebra.point_dims:
            raise ValueError("Landmark parameterization does not match the pose type")


class RbaProblemState:
    """Authoritative store of keyframes, k2k/k2f edges and landmarks.

    Edges live in arenas indexed by integer id. The keyframe -> edge ids
    adjacency, the observer -> observations list and the per-landmark
    observer index are derived indices grown incrementally.
    """

    def __init__(self, capabilities: Capabilities, max_tree_depth: int = 3):
        self.caps = capabilities
        self.k2k_edges: List[K2KEdge] = []
        self.k2f_edges: List[K2FEdge] = []
        self.known_lms: Dict[int, RelativeLandmark] = {}
        self.unknown_lms: Dict[int, RelativeLandmark] = {}

        self._num_kfs = 0
        self._kf_edges: List[List[int]] = []
        self._kf_observations: List[List[int]] = []
        self._lm_observations: Dict[int, Dict[int, List[int]]] = {}

        self.spanning_tree = SpanningTreeCache(self, max_tree_depth)

    @property
    def algebra(self) -> PoseAlgebra:
        return self.caps.algebra

    @property
    def num_keyframes(self) -> int:
        return self._num_kfs

    def clear(self) -> None:
        self.k2k_edges.clear()
        self.k2f_edges.clear()
        self.known_lms.clear()
        self.unknown_lms.clear()
        self._num_kfs = 0
        self._kf_edges.clear()
        self._kf_observations.clear()
        self._lm_observations.clear()
        self.spanning_tree.clear()

    # ---- keyframes & k2k edges ----
    def has_keyframe(self, kf_id: int) -> bool:
        return 0 <= kf_id < self._num_kfs

    def require_keyframe(self, kf_id: int) -> None:
        if not self.has_keyframe(kf_id):
            raise RbaContractError(f"Keyframe {kf_id} does not exist")

    def require_edge(self, edge_id: int) -> K2KEdge:
        if not 0 <= edge_id < len(self.k2k_edges):
            raise RbaContractError(f"k2k edge {edge_id} does not exist")
        return self.k2k_edges[edge_id]

    def alloc_keyframe(self) -> int:
        kf_id = self._num_kfs
        self._num_kfs += 1
        self._kf_edges.append([])
        self._kf_observations.append([])
        self.spanning_tree.add_keyframe(kf_id)
        return kf_id

    def alloc_k2k_edge(self, from_id: int, to_id: int, pose: Optional[np.ndarray] = None) -> int:
        """Append a new k2k edge to the arena and the adjacency index.

        The spanning trees are not touched; see `create_k2k_edge`.
        """
        self.require_keyframe(from_id)
        self.require_keyframe(to_id)
        if from_id == to_id:
            raise RbaContractError(f"k2k edge from keyframe {from_id} to itself")
        n = self.algebra.point_dims + 1
        if pose is None:
            pose = self.algebra.identity()
        pose = np.array(pose, dtype=float)
        if pose.shape != (n, n):
            raise RbaContractError(f"Edge pose must be a {n}x{n} homogeneous matrix, got {pose.shape}")
        edge_id = len(self.k2k_edges)
        self.k2k_edges.append(K2KEdge(id=edge_id, from_id=from_id, to_id=to_id, pose=pose))
        self._kf_edges[from_id].append(edge_id)
        self._kf_edges[to_id].append(edge_id)
        return edge_id

    def create_k2k_edge(self, from_id: int, to_id: int, pose: Optional[np.ndarray] = None) -> int:
        """Allocate a k2k edge and extend the spanning trees symbolically."""
        edge_id = self.alloc_k2k_edge(from_id, to_id, pose)
        self.spanning_tree.update_symbolic_new_edge(edge_id)
        logger.debug("Created k2k edge #%d: %d -> %d", edge_id, from_id, to_id)
        return edge_id

    def neighbors(self, kf_id: int) -> Iterator[Tuple[int, int]]:
        """Yield (edge_id, other keyframe) in edge creation order."""
        for edge_id in self._kf_edges[kf_id]:
            yield edge_id, self.k2k_edges[edge_id].other(kf_id)

    def edges_of(self, kf_id: int) -> List[int]:
        return list(self._kf_edges[kf_id])

    def update_edge_pose(self, edge_id: int, pose: np.ndarray) -> None:
        self.k2k_edges[edge_id].pose = pose
        self.spanning_tree.invalidate_edge(edge_id)

    # ---- landmarks & observations ----
    def landmark(self, lm_id: int) -> RelativeLandmark:
        lm = self.unknown_lms.get(lm_id)
        if lm is None:
            lm = self.known_lms.get(lm_id)
        if lm is None:
            raise RbaContractError(f"Landmark {lm_id} does not exist")
        return lm

    def update_landmark_position(self, lm_id: int, position: np.ndarray) -> None:
        self.unknown_lms[lm_id].position = position

    def observations_by(self, kf_id: int) -> List[int]:
        return self._kf_observations[kf_id]

    def observations_of(self, lm_id: int) -> List[int]:
        out: List[int] = []
        for obs_ids in self._lm_observations.get(lm_id, {}).values():
            out.extend(obs_ids)
        out.sort()
        return out

    def observers_of(self, lm_id: int) -> List[int]:
        return sorted(self._lm_observations.get(lm_id, {}))

    def _check_observation(self, landmark_id, z, known_position, initial_position, exists) -> np.ndarray:
        if known_position is not None and initial_position is not None:
            raise RbaContractError(
                f"Landmark {landmark_id}: a known and an initial position cannot be given at once")
        z = as_vector(z, self.caps.sensor.obs_dims, name=f"measurement of landmark {landmark_id}")
        lm_dims = self.caps.landmark.dims
        if exists:
            if known_position is not None or initial_position is not None:
                if landmark_id in self.known_lms:
                    where = "in the known table"
                elif landmark_id in self.unknown_lms:
                    where = "in the unknown table"
                else:
                    where = "earlier in this keyframe"
                raise RbaContractError(
                    f"Landmark {landmark_id} already exists {where}; "
                    "positions may only be given on its first observation")
        elif known_position is not None:
            as_vector(known_position, lm_dims, name=f"known position of landmark {landmark_id}")
        elif initial_position is not None:
            as_vector(initial_position, lm_dims, name=f"initial position of landmark {landmark_id}")
        return z

    def check_observations(self, observations) -> None:
        """Raise RbaContractError if any of `observations` would be rejected.

        `observations` are (landmark_id, z, known_position, initial_position)
        tuples meant for one new keyframe. Nothing is modified.
        """
        introduced = set()
        for landmark_id, z, known_position, initial_position in observations:
            exists = (landmark_id in self.known_lms or landmark_id in self.unknown_lms
                      or landmark_id in introduced)
            self._check_observation(landmark_id, z, known_position, initial_position, exists)
            introduced.add(landmark_id)

    def discard_last_keyframe(self) -> None:
        """Undo `alloc_keyframe` for a keyframe that has no edges or observations yet."""
        kf_id = self._num_kfs - 1
        if kf_id < 0 or self._kf_edges[kf_id] or self._kf_observations[kf_id]:
            raise RbaContractError(f"Keyframe {kf_id} cannot be discarded")
        self._num_kfs -= 1
        self._kf_edges.pop()
        self._kf_observations.pop()
        self.spanning_tree.remove_keyframe(kf_id)

    def add_observation(self,
                        observer_id: int,
                        landmark_id: int,
                        z,
                        known_position=None,
                        initial_position=None) -> int:
        """Add one k2f edge, creating the landmark on its first observation.

        Returns the 0-based index of the new observation.
        """
        self.require_keyframe(observer_id)
        sensor = self.caps.sensor
        lm_dims = self.caps.landmark.dims
        exists = landmark_id in self.known_lms or landmark_id in self.unknown_lms
        z = self._check_observation(landmark_id, z, known_position, initial_position, exists)

        if exists:
            is_known = landmark_id in self.known_lms
            base_id = (self.known_lms if is_known else self.unknown_lms)[landmark_id].base_id
            if self.spanning_tree.distance(observer_id, base_id) is None:
                # kept, but left out of local solves until the base enters the observer's tree
                logger.debug("Observation of landmark %d from keyframe %d: base %d is beyond %d edges",
                             landmark_id, observer_id, base_id, self.spanning_tree.max_depth)
        elif known_position is not None:
            is_known = True
            pos = as_vector(known_position, lm_dims, name=f"known position of landmark {landmark_id}")
            self.known_lms[landmark_id] = RelativeLandmark(landmark_id, observer_id, pos)
        else:
            is_known = False
            if initial_position is not None:
                pos = as_vector(initial_position, lm_dims, name=f"initial position of landmark {landmark_id}")
            else:
                p = sensor.inverse_observe(z)
                pos = self.caps.landmark.from_point(p) if p is not None else np.zeros(lm_dims)
            self.unknown_lms[landmark_id] = RelativeLandmark(landmark_id, observer_id, pos)

        obs_id = len(self.k2f_edges)
        self.k2f_edges.append(K2FEdge(id=obs_id,
                                      observer_id=observer_id,
                                      landmark_id=landmark_id,
                                      z=z,
                                      known_position=is_known))
        self._kf_observations[observer_id].append(obs_id)
        self._lm_observations.setdefault(landmark_id, {}).setdefault(observer_id, []).append(obs_id)
        return obs_id

    # ---- graph queries ----
    def find_path_bfs(self, src_kf: int, trg_kf: int) -> Optional[List[int]]:
        """Shortest path ignoring edge direction.

        Returns the keyframes visited after `src_kf`, ending in `trg_kf`
        ([] if both coincide), or None if they are not connected.
        """
        self.require_keyframe(src_kf)
        self.require_keyframe(trg_kf)
        if src_kf == trg_kf:
            return []
        prev: Dict[int, int] = {src_kf: src_kf}
        queue = deque([src_kf])
        while queue:
            cur = queue.popleft()
            for _, nxt in self.neighbors(cur):
                if nxt in prev:
                    continue
                prev[nxt] = cur
                if nxt == trg_kf:
                    path = [nxt]
                    while prev[path[-1]] != src_kf:
                        path.append(prev[path[-1]])
                    path.reverse()
                    return path
                queue.append(nxt)
        return None
