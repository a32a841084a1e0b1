import json
from typing import Dict, Any, Optional, List, Tuple, Iterator
from dataclasses import dataclass
import logging
import numpy as np
from scipy.spatial.transform import Rotation

from .lie import PoseAlgebra, make_algebra
from .models import NewObservation, RbaDataset
from .sensors import SensorModel, make_sensor

logger = logging.getLogger("rba.loader")

@dataclass
class LoaderConfig:
    quaternion_order: str = "wxyz"   # ground-truth quaternions given as [w,x,y,z]
    validate_schema: bool = True
    max_keyframes: Optional[int] = None

def _q_from_list(q: List[float], order: str) -> Rotation:
    if order == "wxyz":
        if len(q) != 4: raise ValueError("Quaternion must be [w,x,y,z]")
        return Rotation.from_quat([q[1], q[2], q[3], q[0]])
    elif order == "xyzw":
        if len(q) != 4: raise ValueError("Quaternion must be [x,y,z,w]")
        return Rotation.from_quat(list(q))
    else:
        raise ValueError(f"Unsupported quaternion order: {order}")

def load_dataset(path: str, cfg: Optional[LoaderConfig] = None) -> RbaDataset:
    cfg = cfg or LoaderConfig()
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top-level JSON value must be an object")
    keyframes = data.get("keyframes", [])
    if not isinstance(keyframes, list):
        raise ValueError(f"{path}: 'keyframes' must be a list, got {type(keyframes).__name__}")
    doc = RbaDataset(
        pose_type=str(data.get("pose_type", "se3")).lower(),
        sensor=str(data.get("sensor", "cartesian")).lower(),
        keyframes=keyframes,
        metadata={k: v for k, v in data.items() if k not in ("pose_type", "sensor", "keyframes")},
    )
    if cfg.validate_schema:
        # fail early on unsupported pose/sensor combinations
        make_capabilities(doc)
        for idx, kf in enumerate(doc.keyframes):
            if not isinstance(kf, dict):
                logger.warning("keyframes[%d] is not an object; got %s", idx, type(kf).__name__)
    return doc


def make_capabilities(doc: RbaDataset) -> Tuple[PoseAlgebra, SensorModel]:
    algebra = make_algebra(doc.pose_type)
    return algebra, make_sensor(doc.sensor, algebra.point_dims)


def _parse_observation(item: Dict[str, Any], obs_dims: int, point_dims: int) -> NewObservation:
    lm = int(item["landmark"])
    z = np.asarray(item["z"], dtype=float).reshape(-1)
    if z.size != obs_dims:
        raise ValueError(f"z must have {obs_dims} elements, got {z.size}")
    known = item.get("known_position")
    init = item.get("initial_position")
    if known is not None:
        known = np.asarray(known, dtype=float).reshape(-1)
        if known.size != point_dims:
            raise ValueError(f"known_position must have {point_dims} elements")
    if init is not None:
        init = np.asarray(init, dtype=float).reshape(-1)
        if init.size != point_dims:
            raise ValueError(f"initial_position must have {point_dims} elements")
    return NewObservation(landmark_id=lm, z=z, known_position=known, initial_position=init)


def iter_keyframes(doc: RbaDataset, cfg: Optional[LoaderConfig] = None
                   ) -> Iterator[Tuple[int, Optional[float], List[NewObservation]]]:
    """Yield (keyframe index, stamp, observations) in file order.

    Malformed observations are skipped with a warning; the keyframe itself
    is still yielded so keyframe ids stay aligned with the file.
    """
    cfg = cfg or LoaderConfig()
    algebra, sensor = make_capabilities(doc)
    for idx, kf in enumerate(doc.keyframes):
        if cfg.max_keyframes is not None and idx >= cfg.max_keyframes:
            break
        if not isinstance(kf, dict):
            logger.warning("keyframes[%d] is not an object; ingesting it without observations", idx)
            yield idx, None, []
            continue
        stamp = kf.get("stamp")
        if stamp is not None:
            try:
                stamp = float(stamp)
            except (TypeError, ValueError):
                stamp = None
        obs: List[NewObservation] = []
        for j, item in enumerate(kf.get("observations", []) or []):
            try:
                obs.append(_parse_observation(item, sensor.obs_dims, algebra.point_dims))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping keyframes[%d].observations[%d]: %s", idx, j, e)
        yield idx, stamp, obs


def summarize_schema(doc: RbaDataset) -> Dict[str, Any]:
    """Small summary for debugging."""
    n_obs = 0
    landmarks = set()
    n_gt = 0
    for kf in doc.keyframes:
        if not isinstance(kf, dict):
            continue
        for item in kf.get("observations", []) or []:
            n_obs += 1
            if isinstance(item, dict) and "landmark" in item:
                landmarks.add(item["landmark"])
        if kf.get("ground_truth") is not None:
            n_gt += 1
    return {
        "pose_type": doc.pose_type,
        "sensor": doc.sensor,
        "keyframes": len(doc.keyframes),
        "observations": n_obs,
        "landmarks": len(landmarks),
        "ground_truth": n_gt,
    }

# ---- Ground truth parsing (vector or rotation/translation form) ----
def _parse_pose_like(d, algebra: PoseAlgebra, cfg: LoaderConfig) -> np.ndarray:
    """Accept a pose vector, {"rotation":[...], "translation":[...]}, or {"pose":{...}}."""
    if isinstance(d, dict):
        src = d.get("pose", d)
        trans = np.asarray(src["translation"], dtype=float).reshape(-1)
        if algebra.point_dims == 2:
            rot = src["rotation"]
            theta = float(rot[0] if isinstance(rot, (list, tuple)) else rot)
            return algebra.from_vector([trans[0], trans[1], theta])
        R = _q_from_list(src["rotation"], cfg.quaternion_order).as_matrix()
        return algebra.from_rotation_translation(R, trans)
    return algebra.from_vector(d)

def groundtruth_by_keyframe(doc: RbaDataset, cfg: Optional[LoaderConfig] = None) -> Dict[int, np.ndarray]:
    """Return dict: keyframe index -> homogeneous ground-truth pose."""
    cfg = cfg or LoaderConfig()
    algebra, _ = make_capabilities(doc)
    out: Dict[int, np.ndarray] = {}
    for idx, kf in enumerate(doc.keyframes):
        if not isinstance(kf, dict) or kf.get("ground_truth") is None:
            continue
        try:
            out[idx] = _parse_pose_like(kf["ground_truth"], algebra, cfg)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping groundtruth of keyframes[%d]: %s", idx, e)
    return out
# ----------------------------------------------------------
