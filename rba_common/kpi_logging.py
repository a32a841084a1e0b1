"""KPI logging helpers for the RBA runner."""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional

logger = logging.getLogger("rba.kpi")


class KPILogger:
    """Emit structured KPI events for downstream analysis."""

    def __init__(
        self,
        enabled: bool = True,
        extra_fields: Optional[Dict[str, Any]] = None,
        log_path: Optional[str] = None,
        emit_to_logger: bool = True,
    ):
        self.enabled = enabled
        self._extra = extra_fields.copy() if extra_fields else {}
        self._emit_to_logger = emit_to_logger
        self._fh = None
        if log_path and enabled:
            self._fh = open(log_path, "w", encoding="utf-8")

    def _emit(self, event: str, **fields: Any) -> None:
        if not self.enabled:
            return
        payload = {"event": event, "ts": time.time()}
        payload.update(self._extra)
        payload.update({k: v for k, v in fields.items() if v is not None})
        if self._emit_to_logger:
            logger.info("KPI %s", json.dumps(payload, sort_keys=True))
        if self._fh:
            self._fh.write(json.dumps(payload, sort_keys=True) + "\n")
            self._fh.flush()

    def keyframe_ingest(self, kf_id: int, stamp: Optional[float], num_observations: int, **fields: Any) -> None:
        self._emit("keyframe_ingest", kf_id=kf_id, stamp=stamp, num_observations=num_observations, **fields)

    def optimization_start(self, kf_id: int, num_edges: int, num_landmarks: int) -> None:
        self._emit(
            "optimization_start",
            kf_id=kf_id,
            num_edges=num_edges,
            num_landmarks=num_landmarks,
        )

    def optimization_end(
        self,
        kf_id: int,
        duration_s: float,
        num_iters: Optional[int] = None,
        *,
        obs_rmse: Optional[float] = None,
        converged: Optional[bool] = None,
        stop_reason: Optional[str] = None,
    ) -> None:
        self._emit(
            "optimization_end",
            kf_id=kf_id,
            duration_s=duration_s,
            num_iters=num_iters,
            obs_rmse=obs_rmse,
            converged=converged,
            stop_reason=stop_reason,
        )

    def map_export(self, pose_count: int, landmark_count: Optional[int] = None, **fields: Any) -> None:
        self._emit("map_export", pose_count=pose_count, landmark_count=landmark_count, **fields)

    def close(self) -> None:
        if self._fh:
            try:
                self._fh.close()
            finally:
                self._fh = None
