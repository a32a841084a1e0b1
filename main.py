import time
import argparse, os, json, csv, logging
import random
import numpy as np
from typing import Dict, Mapping

from rba_backend.config import RbaParameters
from rba_backend.engine import RbaEngine
from rba_backend.export import global_landmarks, global_poses
from rba_backend.loader import (load_dataset, iter_keyframes, LoaderConfig, summarize_schema,
                                make_capabilities, groundtruth_by_keyframe)
from rba_backend.policies import make_policy
from rba_backend.runner import incremental_run
from rba_common.kpi_logging import KPILogger
from rba_common.metrics import align_and_ate, compute_rpe
from rba_common.viz import plot_map_xy, plot_est_vs_gt_xy


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Incremental Relative Bundle Adjustment over keyframe datasets.")
    ap.add_argument("--dataset", required=True, help="Path to keyframe dataset JSON")
    ap.add_argument("--export-path", required=True, help="Directory to write outputs")
    ap.add_argument("--policy", choices=["linear", "local-areas"], default="local-areas",
                    help="Edge creation policy")
    ap.add_argument("--submap-size", type=int, default=15, help="Keyframes per local area (policy=local-areas)")
    ap.add_argument("--min-obs-loop-closure", type=int, default=4,
                    help="Shared landmarks needed for a loop closure edge (policy=local-areas)")
    ap.add_argument("--max-tree-depth", type=int, default=None, help="Spanning tree depth")
    ap.add_argument("--max-optimize-depth", type=int, default=None, help="Local area radius optimized per keyframe")
    ap.add_argument("--max-iters", type=int, default=None, help="Max Levenberg-Marquardt iterations")
    ap.add_argument("--robust", action="store_true", help="Use the pseudo-Huber robust kernel")
    ap.add_argument("--kernel-param", type=float, default=None, help="Robust kernel width")
    ap.add_argument("--numeric-jacobians", action="store_true", help="Use numeric Jacobians (slow, for debugging)")
    ap.add_argument("--obs-noise-std", type=float, default=None, help="Isotropic observation noise std")
    ap.add_argument("--no-local-opt", action="store_true", help="Only ingest keyframes, do not optimize")
    ap.add_argument("--quat-order", choices=["wxyz", "xyzw"], default="wxyz",
                    help="Quaternion order of ground-truth rotations in file")
    ap.add_argument("--max-keyframes", type=int, default=None, help="Stop after this many keyframes")
    ap.add_argument("--eval-gt", action="store_true", help="Align to ground truth and report ATE/RPE")
    ap.add_argument("--no-plot", action="store_true", help="Skip PNG plots")
    ap.add_argument("--log", default="INFO", help="Logging level")
    return ap.parse_args(argv)

def ensure_dir(p):
    os.makedirs(p, exist_ok=True)

def build_params(args) -> RbaParameters:
    overrides = {
        "max_tree_depth": args.max_tree_depth,
        "max_optimize_depth": args.max_optimize_depth,
        "max_iters": args.max_iters,
        "kernel_param": args.kernel_param,
        "obs_noise_std": args.obs_noise_std,
    }
    values = {k: v for k, v in overrides.items() if v is not None}
    if args.robust:
        values["use_robust_kernel"] = True
    if args.numeric_jacobians:
        values["numeric_jacobians"] = True
    return RbaParameters.from_dict(values)


def export_trajectory_csv(poses: Mapping[int, np.ndarray], algebra, out_path: str) -> None:
    names = ["x", "y", "theta"] if algebra.name == "se2" else ["x", "y", "z", "rx", "ry", "rz"]
    with open(out_path, "w", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        w.writerow(["kf"] + names)
        for kf in sorted(poses):
            w.writerow([kf] + [float(v) for v in algebra.to_vector(poses[kf])])


def export_landmarks_csv(points: Mapping[int, np.ndarray], known_ids, out_path: str) -> None:
    dims = len(next(iter(points.values()))) if points else 2
    with open(out_path, "w", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        w.writerow(["landmark", "known"] + ["x", "y", "z"][:dims])
        for lm in sorted(points):
            w.writerow([lm, int(lm in known_ids)] + [float(v) for v in points[lm]])


def export_rpe_csv(rpe_stats: Dict[str, Dict[str, float]], out_path: str) -> None:
    """Write Relative Pose Error metrics to CSV for quick inspection."""
    headers = ["window", "count", "rmse", "mean", "pstd"]
    with open(out_path, "w", newline="", encoding="utf-8") as fh:
        writer = csv.writer(fh)
        writer.writerow(headers)
        for window, stats in sorted(rpe_stats.items(), key=lambda item: float(item[0])):
            writer.writerow([
                window,
                int(stats.get("count", 0)),
                float(stats.get("rmse", 0.0)),
                float(stats.get("mean", 0.0)),
                float(stats.get("pstd", 0.0)),
            ])


def run(args) -> Dict[str, object]:
    out_dir = os.path.abspath(args.export_path)
    ensure_dir(out_dir)

    cfg = LoaderConfig(quaternion_order=args.quat_order, validate_schema=True, max_keyframes=args.max_keyframes)
    doc = load_dataset(args.dataset, cfg)
    print("Schema peek:", json.dumps(summarize_schema(doc)))

    params = build_params(args)
    algebra, sensor = make_capabilities(doc)
    policy = make_policy(args.policy, args.submap_size, args.min_obs_loop_closure)
    engine = RbaEngine(algebra, sensor, params=params, policy=policy)

    kpi_dir = os.path.join(out_dir, "kpi_metrics")
    ensure_dir(kpi_dir)
    kpi = KPILogger(extra_fields={"policy": policy.name},
                    log_path=os.path.join(kpi_dir, "kpi_events.jsonl"),
                    emit_to_logger=False)
    try:
        t0 = time.perf_counter()
        stats = incremental_run(engine, iter_keyframes(doc, cfg), kpi=kpi,
                                run_local_optimization=not args.no_local_opt)
        wall = time.perf_counter() - t0

        poses = global_poses(engine)
        points = global_landmarks(engine, poses)
        known_ids = set(engine.get_known_feats())
        kpi.map_export(pose_count=len(poses), landmark_count=len(points))
    finally:
        kpi.close()

    total_err = engine.eval_overall_squared_error()
    summary = {
        "run": stats.as_dict(),
        "wall_time_s": wall,
        "total_sqr_error": total_err,
        "unknown_landmarks": len(engine.get_unknown_feats()),
        "known_landmarks": len(known_ids),
        "params": params.to_dict(),
    }
    print(f"Keyframes: {stats.keyframes}, k2k edges: {stats.k2k_edges}, observations: {stats.observations}")
    print(f"Optimizations: {stats.optimizations} (not converged: {stats.not_converged})")
    print(f"Final total squared error: {total_err:.6f}")

    export_trajectory_csv(poses, engine.state.algebra, os.path.join(out_dir, "trajectory.csv"))
    export_landmarks_csv(points, known_ids, os.path.join(out_dir, "landmarks.csv"))
    with open(os.path.join(out_dir, "rba_stats.json"), "w", encoding="utf-8") as f:
        json.dump(summary, f, indent=2)

    if args.eval_gt:
        gt = groundtruth_by_keyframe(doc, cfg)
        if 0 in gt:
            # express ground truth relative to keyframe 0, like the estimate
            gt0_inv = engine.state.algebra.inverse(gt[0])
            gt = {k: gt0_inv @ T for k, T in gt.items()}
        metrics = align_and_ate(poses, gt)
        print("=== ATE (aligned) ===")
        print(f"matches={metrics['matches']}, rmse={metrics['rmse']}")
        rpe_stats = compute_rpe(poses, gt, metrics)
        if rpe_stats:
            metrics["rpe"] = rpe_stats
            export_rpe_csv(rpe_stats, os.path.join(out_dir, "rpe_metrics.csv"))
        if not args.no_plot and gt:
            plot_est_vs_gt_xy(poses, gt, os.path.join(out_dir, "trajectory_xy_est_vs_gt.png"),
                              metrics if metrics.get("rmse") is not None else None)
        with open(os.path.join(out_dir, "gt_metrics.json"), "w", encoding="utf-8") as f:
            json.dump(metrics, f, indent=2)
        summary["gt_metrics"] = metrics

    if not args.no_plot:
        plot_map_xy(poses, points, os.path.join(out_dir, "map_xy.png"), known_ids=known_ids)

    print(f"Artifacts written to: {out_dir}")
    return summary


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=args.log.upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    seed_env = os.environ.get("RBA_RUN_SEED")
    if seed_env:
        seed_val = int(seed_env)
        random.seed(seed_val)
        np.random.seed(seed_val)

    run(args)


if __name__ == "__main__":
    main()
