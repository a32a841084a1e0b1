from typing import Dict, Mapping, Sequence, Tuple
import numpy as np
import math
from statistics import mean, pstdev


def umeyama(A: np.ndarray, B: np.ndarray, with_scale: bool = False) -> Tuple[np.ndarray, np.ndarray, float]:
    """Rigid (optionally similarity) alignment from A->B (NxD). Returns R(DxD), t(D), s."""
    A = np.asarray(A, dtype=float)
    B = np.asarray(B, dtype=float)
    if A.shape != B.shape or A.ndim != 2:
        raise ValueError(f"umeyama expects two NxD arrays of equal shape, got {A.shape} and {B.shape}")
    muA, muB = A.mean(0), B.mean(0)
    AA, BB = A - muA, B - muB
    C = AA.T @ BB / A.shape[0]
    U, S, Vt = np.linalg.svd(C)
    R = Vt.T @ U.T
    if np.linalg.det(R) < 0:
        Vt[-1, :] *= -1
        R = Vt.T @ U.T
    if with_scale:
        varA = (AA**2).sum() / A.shape[0]
        s = (S.sum() / varA) if varA > 0 else 1.0
    else:
        s = 1.0
    t = muB - s * (R @ muA)
    return R, t, s


def _translations(poses: Mapping[int, np.ndarray], keys: Sequence[int]) -> np.ndarray:
    out = []
    for k in keys:
        T = np.asarray(poses[k], dtype=float)
        n = T.shape[0] - 1
        out.append(T[:n, n])
    return np.array(out)


def align_and_ate(estimate: Mapping[int, np.ndarray],
                  groundtruth: Mapping[int, np.ndarray],
                  min_matches: int = 3) -> Dict[str, object]:
    """Rigidly align estimated keyframe positions to ground truth and report ATE.

    Both inputs map keyframe id -> homogeneous pose matrix.
    """
    common = sorted(k for k in estimate if k in groundtruth)
    if len(common) < min_matches:
        return {"matches": len(common), "rmse": None}
    X_est = _translations(estimate, common)
    X_gt = _translations(groundtruth, common)
    R, t, s = umeyama(X_est, X_gt, with_scale=False)
    X_aligned = (X_est @ R.T) + t  # s=1
    err = X_aligned - X_gt
    rmse = math.sqrt((err**2).sum(axis=1).mean())
    return {
        "matches": len(common),
        "rmse": rmse,
        "R": R.tolist(),
        "t": t.tolist(),
        "s": s,
    }


def compute_rpe(estimate: Mapping[int, np.ndarray],
                groundtruth: Mapping[int, np.ndarray],
                align_metrics: Mapping[str, object] = None,
                *,
                window_sizes: Sequence[int] = (1, 10, 50)) -> Dict[str, Dict[str, float]]:
    """Translational Relative Pose Error over keyframe windows of several sizes."""
    common = sorted(k for k in estimate if k in groundtruth)
    if len(common) < 2:
        return {}
    X_est = _translations(estimate, common)
    X_gt = _translations(groundtruth, common)
    dims = X_est.shape[1]
    align_metrics = align_metrics or {}
    R = np.asarray(align_metrics.get("R", np.eye(dims)), dtype=float)
    if R.shape != (dims, dims):
        R = np.eye(dims)
    t = np.asarray(align_metrics.get("t", np.zeros(dims)), dtype=float)
    if t.shape != (dims,):
        t = np.zeros(dims)
    est_arr = X_est @ R.T + t

    window_stats: Dict[str, Dict[str, float]] = {}
    for window in window_sizes:
        window = int(window)
        if window <= 0:
            continue
        errors = []
        for i in range(0, len(est_arr) - window):
            j = i + window
            diff = (est_arr[j] - est_arr[i]) - (X_gt[j] - X_gt[i])
            errors.append(float(np.linalg.norm(diff)))
        if not errors:
            continue
        rmse = math.sqrt(sum(e * e for e in errors) / len(errors))
        stats = {
            "count": len(errors),
            "rmse": rmse,
            "mean": mean(errors),
            "pstd": pstdev(errors) if len(errors) > 1 else 0.0,
        }
        window_stats[str(window)] = {k: float(v) for k, v in stats.items()}
    return window_stats
