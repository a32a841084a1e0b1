from dataclasses import dataclass, field
from typing import List, Optional
import numpy as np


class RbaContractError(ValueError):
    """Raised when a caller violates a precondition of the engine API.

    Examples: supplying both a known and an initial landmark position,
    re-initialising an existing landmark, or referring to an edge id that
    does not exist. These are never coerced silently.
    """


@dataclass
class K2KEdge:
    """Keyframe-to-keyframe edge: the optimizable relative pose unknown.

    `pose` is the homogeneous matrix T_from_to, i.e. the pose of `to_id`
    expressed in the frame of `from_id`.
    """
    id: int
    from_id: int
    to_id: int
    pose: np.ndarray

    def other(self, kf_id: int) -> int:
        return self.to_id if kf_id == self.from_id else self.from_id


@dataclass
class K2FEdge:
    """Keyframe-to-feature edge (one landmark observation)."""
    id: int
    observer_id: int
    landmark_id: int
    z: np.ndarray
    known_position: bool


@dataclass
class RelativeLandmark:
    """Landmark position relative to its base keyframe."""
    id: int
    base_id: int
    position: np.ndarray
    covariance: Optional[np.ndarray] = None


@dataclass
class NewObservation:
    """One landmark observation gathered from a new keyframe.

    At most one of `known_position` / `initial_position` may be given, and
    only on the first observation of the landmark.
    """
    landmark_id: int
    z: np.ndarray
    known_position: Optional[np.ndarray] = None
    initial_position: Optional[np.ndarray] = None


@dataclass
class NewEdgeSpec:
    """An edge requested by an edge-creation policy."""
    from_id: int
    to_id: int
    init_pose: Optional[np.ndarray] = None


@dataclass
class NewEdgeInfo:
    edge_id: int
    has_approx_init_val: bool


@dataclass
class OptimizeLocalAreaParams:
    optimize_k2k_edges: bool = True
    optimize_landmarks: bool = True
    max_visitable_kf_id: Optional[int] = None  # None = no limit
    dont_optimize_landmarks_seen_less_than_n_times: int = 2


@dataclass
class OptimizeResults:
    """Everything reported by one least-squares optimization call."""
    num_observations: int = 0
    num_jacobians: int = 0
    num_kf2kf_edges_optimized: int = 0
    num_kf2lm_edges_optimized: int = 0
    num_total_scalar_optimized: int = 0
    num_kf_optimized: int = 0
    num_lm_optimized: int = 0
    num_span_tree_numeric_updates: int = 0
    obs_rmse: float = 0.0
    total_sqr_error_init: float = 0.0
    total_sqr_error_final: float = 0.0
    HAp_condition_number: float = 0.0

    # Sparsity stats, only filled when `compute_sparsity_stats` is enabled
    sparsity_dh_dAp_nnz: int = 0
    sparsity_dh_dAp_max_size: int = 0
    sparsity_dh_df_nnz: int = 0
    sparsity_dh_df_max_size: int = 0
    sparsity_HAp_nnz: int = 0
    sparsity_HAp_max_size: int = 0
    sparsity_Hf_nnz: int = 0
    sparsity_Hf_max_size: int = 0
    sparsity_HApf_nnz: int = 0
    sparsity_HApf_max_size: int = 0

    optimized_k2k_edge_indices: List[int] = field(default_factory=list)
    optimized_landmark_indices: List[int] = field(default_factory=list)

    # Solver extras
    num_iters: int = 0
    num_accepted: int = 0
    num_rejected: int = 0
    num_solver_failures: int = 0
    final_lambda: float = 0.0
    converged: bool = False
    stop_reason: str = "not_run"

    def summary(self) -> dict:
        """Compact dict for logs and KPI events."""
        return {
            "num_observations": self.num_observations,
            "num_kf2kf_edges_optimized": self.num_kf2kf_edges_optimized,
            "num_lm_optimized": self.num_lm_optimized,
            "num_iters": self.num_iters,
            "total_sqr_error_init": self.total_sqr_error_init,
            "total_sqr_error_final": self.total_sqr_error_final,
            "obs_rmse": self.obs_rmse,
            "converged": self.converged,
            "stop_reason": self.stop_reason,
        }


@dataclass
class NewKeyframeInfo:
    """Returned by `RbaEngine.define_new_keyframe`."""
    kf_id: int
    created_edge_ids: List[NewEdgeInfo] = field(default_factory=list)
    optimize_results: OptimizeResults = field(default_factory=OptimizeResults)
    optimize_results_stg1: OptimizeResults = field(default_factory=OptimizeResults)


@dataclass
class RbaDataset:
    """Parsed keyframe dataset; entries are kept raw until iterated."""
    pose_type: str
    sensor: str
    keyframes: List[dict] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)


def as_vector(values, dims: Optional[int] = None, name: str = "vector") -> np.ndarray:
    """Convert a list/array into a flat float ndarray, optionally checking its size."""
    arr = np.asarray(values, dtype=float).reshape(-1)
    if dims is not None and arr.size != dims:
        raise RbaContractError(f"Expected {name} with {dims} elements, got {arr.size}")
    return arr
