"""Structured KPI events for distributed PGO runs."""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional

logger = logging.getLogger("dpgo.kpi")


class KPILogger:
    """Emit JSON events describing agent iterations and team progress.

    Events go to the ``dpgo.kpi`` logger and, when ``log_path`` is given, to a
    ``.jsonl`` file (one event per line). ``None``-valued fields are dropped.
    """

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
        self.event_count = 0
        if log_path:
            self._fh = open(log_path, "w", encoding="utf-8")

    def _emit(self, event: str, **fields: Any) -> None:
        if not self.enabled:
            return
        payload = {"event": event, "ts": time.time()}
        payload.update(self._extra)
        payload.update({k: v for k, v in fields.items() if v is not None})
        line = json.dumps(payload, sort_keys=True)
        self.event_count += 1
        if self._emit_to_logger:
            logger.info("KPI %s", line)
        if self._fh:
            self._fh.write(line + "\n")
            self._fh.flush()

    def iteration(self, robot_id: int, iteration: int, state: str, **fields: Any) -> None:
        self._emit("iteration", robot_id=robot_id, iteration=iteration, state=state, **fields)

    def optimization_start(self, robot_id: int, iteration: int, num_poses: int) -> None:
        self._emit("optimization_start", robot_id=robot_id, iteration=iteration, num_poses=num_poses)

    def optimization_end(
        self,
        robot_id: int,
        iteration: int,
        duration_s: float,
        *,
        f_init: Optional[float] = None,
        f_opt: Optional[float] = None,
        grad_norm_opt: Optional[float] = None,
        relative_change: Optional[float] = None,
        success: Optional[bool] = None,
    ) -> None:
        self._emit(
            "optimization_end",
            robot_id=robot_id,
            iteration=iteration,
            duration_s=duration_s,
            f_init=f_init,
            f_opt=f_opt,
            grad_norm_opt=grad_norm_opt,
            relative_change=relative_change,
            success=success,
        )

    def pose_broadcast(self, robot_id: int, pose_count: int, auxiliary: bool = False, **fields: Any) -> None:
        self._emit("pose_broadcast", robot_id=robot_id, pose_count=pose_count, auxiliary=auxiliary, **fields)

    def termination(self, rounds: int, converged: bool, **fields: Any) -> None:
        self._emit("termination", rounds=rounds, converged=converged, **fields)

    def close(self) -> None:
        if self._fh:
            try:
                self._fh.close()
            finally:
                self._fh = None
