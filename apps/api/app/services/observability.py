import datetime as dt
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class MatchRunSnapshot:
    runs_total: int
    success_total: int
    failure_total: int
    avg_duration_ms: float
    by_mode: Dict[str, int] = field(default_factory=dict)
    by_outcome: Dict[str, int] = field(default_factory=dict)
    candidates_scored_total: int = 0
    updated_at: Optional[str] = None


class _MatchRunMetricsStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reset_locked()

    def _reset_locked(self) -> None:
        self._runs_total = 0
        self._success_total = 0
        self._failure_total = 0
        self._duration_total_ms = 0.0
        self._by_mode: Dict[str, int] = {}
        self._by_outcome: Dict[str, int] = {}
        self._candidates_scored_total = 0
        self._updated_at: Optional[dt.datetime] = None

    def record(
        self,
        *,
        mode: str,
        outcome: str,
        success: bool,
        duration_ms: float,
        candidates_scored: int = 0,
    ) -> None:
        bounded_duration_ms = max(float(duration_ms), 0.0)
        with self._lock:
            self._runs_total += 1
            if success:
                self._success_total += 1
            else:
                self._failure_total += 1
            self._duration_total_ms += bounded_duration_ms
            self._by_mode[mode] = self._by_mode.get(mode, 0) + 1
            self._by_outcome[outcome] = self._by_outcome.get(outcome, 0) + 1
            self._candidates_scored_total += max(int(candidates_scored), 0)
            self._updated_at = dt.datetime.now(dt.UTC)

    def snapshot(self) -> MatchRunSnapshot:
        with self._lock:
            avg_duration_ms = (
                round(self._duration_total_ms / float(self._runs_total), 2)
                if self._runs_total
                else 0.0
            )
            updated_at = (
                self._updated_at.isoformat().replace("+00:00", "Z")
                if self._updated_at
                else None
            )
            return MatchRunSnapshot(
                runs_total=self._runs_total,
                success_total=self._success_total,
                failure_total=self._failure_total,
                avg_duration_ms=avg_duration_ms,
                by_mode=dict(self._by_mode),
                by_outcome=dict(self._by_outcome),
                candidates_scored_total=self._candidates_scored_total,
                updated_at=updated_at,
            )

    def reset(self) -> None:
        with self._lock:
            self._reset_locked()


_MATCH_RUN_METRICS = _MatchRunMetricsStore()


def record_match_run(
    *,
    mode: str,
    outcome: str,
    success: bool,
    duration_ms: float,
    candidates_scored: int = 0,
) -> None:
    _MATCH_RUN_METRICS.record(
        mode=mode,
        outcome=outcome,
        success=success,
        duration_ms=duration_ms,
        candidates_scored=candidates_scored,
    )


def get_ops_metrics() -> Dict[str, Any]:
    snapshot = _MATCH_RUN_METRICS.snapshot()
    return {
        "match_runs": {
            "runs_total": snapshot.runs_total,
            "success_total": snapshot.success_total,
            "failure_total": snapshot.failure_total,
            "avg_duration_ms": snapshot.avg_duration_ms,
            "by_mode": snapshot.by_mode,
            "by_outcome": snapshot.by_outcome,
            "candidates_scored_total": snapshot.candidates_scored_total,
        },
        "updated_at": snapshot.updated_at,
    }


def reset_ops_metrics() -> None:
    _MATCH_RUN_METRICS.reset()
