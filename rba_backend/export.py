"""Read-only export of the relative map into a single global frame.

Global coordinates are a by-product for plotting and evaluation; the
engine itself never uses them.
"""
from typing import TYPE_CHECKING, Dict, Optional, Tuple
import logging

import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

if TYPE_CHECKING:  # pragma: no cover
    from .engine import RbaEngine

logger = logging.getLogger("rba.export")


def global_poses(engine: "RbaEngine", root_id: int = 0) -> Dict[int, np.ndarray]:
    """Pose of every keyframe connected to `root_id`, in the frame of `root_id`."""
    if engine.num_keyframes == 0:
        return {}
    _, poses = engine.create_complete_spanning_tree(root_id, scratch=[])
    return poses


def global_landmarks(engine: "RbaEngine",
                     poses: Optional[Dict[int, np.ndarray]] = None,
                     root_id: int = 0) -> Dict[int, np.ndarray]:
    """Landmark positions in the frame of `root_id`.

    Landmarks whose base keyframe is not connected to the root are skipped.
    """
    if poses is None:
        poses = global_poses(engine, root_id)
    st = engine.state
    out: Dict[int, np.ndarray] = {}
    for table in (st.known_lms, st.unknown_lms):
        for lm_id, lm in table.items():
            T = poses.get(lm.base_id)
            if T is None:
                continue
            out[lm_id] = st.algebra.transform_point(T, st.caps.landmark.to_point(lm.position))
    return out


def _to_gtsam_pose(algebra, T: np.ndarray):
    if algebra.name == "se2":
        x, y, theta = algebra.log(T)
        return gtsam.Pose2(float(x), float(y), float(theta))
    return gtsam.Pose3(np.asarray(T, dtype=float))


def _to_gtsam_point(p: np.ndarray):
    if p.shape[0] == 2:
        return gtsam.Point2(float(p[0]), float(p[1]))
    return gtsam.Point3(float(p[0]), float(p[1]), float(p[2]))


def get_global_graphslam_problem(engine: "RbaEngine",
                                 root_id: int = 0,
                                 edge_sigma: float = 0.1,
                                 prior_sigma: float = 1e-6) -> Tuple["gtsam.NonlinearFactorGraph", "gtsam.Values"]:
    """Build an equivalent global pose graph (GTSAM) from the relative map.

    Keyframes become ``x<i>`` keys initialised from `global_poses`, every k2k
    edge a between factor and the root a tight prior. Landmark estimates are
    inserted as ``l<id>`` values.
    """
    if gtsam is None:
        raise RuntimeError("gtsam Python bindings are required for get_global_graphslam_problem")
    st = engine.state
    algebra = st.algebra
    se2 = algebra.name == "se2"
    poses = global_poses(engine, root_id)

    graph = gtsam.NonlinearFactorGraph()
    values = gtsam.Values()
    for kf, T in sorted(poses.items()):
        values.insert(gtsam.symbol("x", kf), _to_gtsam_pose(algebra, T))

    between_noise = gtsam.noiseModel.Isotropic.Sigma(algebra.dims, edge_sigma)
    prior_noise = gtsam.noiseModel.Isotropic.Sigma(algebra.dims, prior_sigma)
    if poses:
        root_pose = _to_gtsam_pose(algebra, poses[root_id])
        prior_cls = gtsam.PriorFactorPose2 if se2 else gtsam.PriorFactorPose3
        graph.add(prior_cls(gtsam.symbol("x", root_id), root_pose, prior_noise))

    between_cls = gtsam.BetweenFactorPose2 if se2 else gtsam.BetweenFactorPose3
    skipped = 0
    for edge in st.k2k_edges:
        if edge.from_id not in poses or edge.to_id not in poses:
            skipped += 1
            continue
        graph.add(between_cls(gtsam.symbol("x", edge.from_id),
                              gtsam.symbol("x", edge.to_id),
                              _to_gtsam_pose(algebra, edge.pose),
                              between_noise))
    if skipped:
        logger.warning("Skipped %d k2k edges not connected to keyframe %d", skipped, root_id)

    for lm_id, p in sorted(global_landmarks(engine, poses).items()):
        values.insert(gtsam.symbol("l", lm_id), _to_gtsam_point(p))
    return graph, values
