from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TYPE_CHECKING
from dataclasses import dataclass, field
import logging
import time

import numpy as np

from .engine import RbaEngine
from .models import NewKeyframeInfo, NewObservation

if TYPE_CHECKING:
    from rba_common.kpi_logging import KPILogger

logger = logging.getLogger("rba.runner")


@dataclass
class RunStats:
    keyframes: int = 0
    observations: int = 0
    k2k_edges: int = 0
    optimizations: int = 0
    total_iters: int = 0
    not_converged: int = 0
    solver_failures: int = 0
    total_opt_time_s: float = 0.0
    max_edge_translation_delta: float = 0.0
    last_obs_rmse: Optional[float] = None
    stop_reasons: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return {
            "keyframes": self.keyframes,
            "observations": self.observations,
            "k2k_edges": self.k2k_edges,
            "optimizations": self.optimizations,
            "total_iters": self.total_iters,
            "not_converged": self.not_converged,
            "solver_failures": self.solver_failures,
            "total_opt_time_s": self.total_opt_time_s,
            "max_edge_translation_delta": self.max_edge_translation_delta,
            "last_obs_rmse": self.last_obs_rmse,
            "stop_reasons": dict(self.stop_reasons),
        }


def _edge_translations(engine: RbaEngine) -> Dict[int, np.ndarray]:
    algebra = engine.state.algebra
    return {e.id: algebra.translation(e.pose).copy() for e in engine.state.k2k_edges}


def _max_translation_delta(before: Dict[int, np.ndarray], engine: RbaEngine, edge_ids: Sequence[int]) -> float:
    """Largest change of an edge translation among the optimized edges."""
    algebra = engine.state.algebra
    max_delta = 0.0
    for e in edge_ids:
        prev = before.get(e)
        if prev is None:
            continue
        delta = float(np.linalg.norm(algebra.translation(engine.state.k2k_edges[e].pose) - prev))
        if delta > max_delta:
            max_delta = delta
    return max_delta


def incremental_run(engine: RbaEngine,
                    keyframes: Iterable[Tuple[int, Optional[float], List[NewObservation]]],
                    kpi: Optional["KPILogger"] = None,
                    run_local_optimization: bool = True,
                    on_keyframe: Optional[Callable[[NewKeyframeInfo], None]] = None) -> RunStats:
    """Feed keyframes into the engine one by one, recording KPI events."""
    stats = RunStats()
    for idx, stamp, observations in keyframes:
        before = _edge_translations(engine)
        t0 = time.perf_counter()
        if kpi:
            kpi.optimization_start(kf_id=engine.num_keyframes,
                                   num_edges=len(engine.state.k2k_edges),
                                   num_landmarks=len(engine.state.unknown_lms))
        info = engine.define_new_keyframe(observations, run_local_optimization=run_local_optimization)
        duration = time.perf_counter() - t0
        if info.kf_id != idx:
            logger.warning("Dataset keyframe %d was assigned engine id %d", idx, info.kf_id)

        stats.keyframes += 1
        stats.observations += len(observations)
        stats.k2k_edges += len(info.created_edge_ids)
        if kpi:
            kpi.keyframe_ingest(info.kf_id, stamp, len(observations),
                                new_edges=len(info.created_edge_ids))

        res = info.optimize_results
        if res.stop_reason != "not_run":
            stats.optimizations += 1
            stats.total_iters += res.num_iters + info.optimize_results_stg1.num_iters
            stats.solver_failures += res.num_solver_failures + info.optimize_results_stg1.num_solver_failures
            stats.total_opt_time_s += duration
            stats.last_obs_rmse = res.obs_rmse
            stats.stop_reasons[res.stop_reason] = stats.stop_reasons.get(res.stop_reason, 0) + 1
            if not res.converged:
                stats.not_converged += 1
            delta = _max_translation_delta(before, engine, res.optimized_k2k_edge_indices)
            stats.max_edge_translation_delta = max(stats.max_edge_translation_delta, delta)
            logger.debug("kf #%d: %d edges, %d lms, rmse %.4g -> %s in %.3fs",
                         info.kf_id, res.num_kf2kf_edges_optimized, res.num_lm_optimized,
                         res.obs_rmse, res.stop_reason, duration)
        if kpi:
            kpi.optimization_end(info.kf_id, duration, res.num_iters,
                                 obs_rmse=res.obs_rmse if res.stop_reason != "not_run" else None,
                                 converged=res.converged if res.stop_reason != "not_run" else None,
                                 stop_reason=res.stop_reason)
        if on_keyframe is not None:
            on_keyframe(info)

    logger.info("Ingested %d keyframes (%d observations, %d k2k edges); %d optimizations, %d not converged",
                stats.keyframes, stats.observations, stats.k2k_edges,
                stats.optimizations, stats.not_converged)
    return stats
