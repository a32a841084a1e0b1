from typing import Dict, Mapping, Optional
import numpy as np

import matplotlib
matplotlib.use("Agg")  # for headless export
import matplotlib.pyplot as plt


def _xyz(poses: Mapping[int, np.ndarray]) -> np.ndarray:
    coords = []
    for k in sorted(poses):
        T = np.asarray(poses[k], dtype=float)
        n = T.shape[0] - 1
        t = T[:n, n]
        coords.append([t[0], t[1], t[2] if n > 2 else 0.0])
    return np.asarray(coords).reshape(-1, 3)


def _apply_alignment(xyz: np.ndarray, align_info: Optional[dict]) -> np.ndarray:
    if not isinstance(align_info, dict) or align_info.get("R") is None:
        return xyz
    R = np.asarray(align_info["R"], dtype=float)
    t = np.asarray(align_info.get("t"), dtype=float)
    s = float(align_info.get("s", 1.0) or 1.0)
    dims = R.shape[0]
    out = xyz.copy()
    out[:, :dims] = (xyz[:, :dims] @ R.T) * s + t
    return out


def plot_map_xy(poses: Mapping[int, np.ndarray],
                landmarks: Mapping[int, np.ndarray],
                path_png: str,
                known_ids=None):
    """Keyframe trajectory and landmarks, projected on the XY plane."""
    xyz = _xyz(poses)
    known_ids = set(known_ids or ())
    plt.figure(figsize=(8, 6))
    if len(xyz):
        plt.plot(xyz[:, 0], xyz[:, 1], "-o", markersize=2, label="keyframes")
    unknown = np.array([p[:2] for k, p in landmarks.items() if k not in known_ids]).reshape(-1, 2)
    known = np.array([p[:2] for k, p in landmarks.items() if k in known_ids]).reshape(-1, 2)
    if len(unknown):
        plt.scatter(unknown[:, 0], unknown[:, 1], s=6, marker=".", label="landmarks")
    if len(known):
        plt.scatter(known[:, 0], known[:, 1], s=18, marker="^", label="known landmarks")
    plt.axis('equal')
    plt.xlabel("x [m]"); plt.ylabel("y [m]")
    plt.legend()
    plt.title("Relative map (XY, frame of keyframe 0)")
    plt.tight_layout()
    plt.savefig(path_png, dpi=150)
    plt.close()


def plot_est_vs_gt_xy(estimate: Mapping[int, np.ndarray],
                      groundtruth: Mapping[int, np.ndarray],
                      out_path: str,
                      align_info: Optional[Dict[str, object]] = None):
    est = _apply_alignment(_xyz(estimate), align_info)
    gt = _xyz(groundtruth)
    plt.figure(figsize=(10, 7))
    if len(est):
        plt.plot(est[:, 0], est[:, 1], label="est (aligned)" if align_info else "est")
    if len(gt):
        plt.plot(gt[:, 0], gt[:, 1], linestyle="--", label="gt")
    plt.xlabel("x [m]"); plt.ylabel("y [m]"); plt.title("Trajectory (XY): est vs ground truth")
    plt.axis("equal"); plt.legend(); plt.tight_layout()
    plt.savefig(out_path, dpi=180); plt.close()
