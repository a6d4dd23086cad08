# =============================================================================
# Metrics - In-Process Timing Averages
# =============================================================================
#
# Running totals for indexing, embedding and chat query durations, reported
# by the runners and exposed on GET /admin/queue. Reset on restart.
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class _Timing:
    total_runs: int = 0
    total_ms: float = 0.0

    def add(self, ms: float) -> None:
        self.total_runs += 1
        self.total_ms += max(ms, 0.0)

    def to_dict(self) -> dict:
        average = self.total_ms / self.total_runs if self.total_runs else 0.0
        return {"total_runs": self.total_runs, "average_ms": round(average, 2)}


class MetricsRecorder:
    def __init__(self) -> None:
        self._indexing = _Timing()
        self._embedding = _Timing()
        self._query = _Timing()

    def record_indexing(self, indexing_ms: float, embedding_ms: float) -> None:
        self._indexing.add(indexing_ms)
        self._embedding.add(embedding_ms)

    def record_query(self, query_ms: float) -> None:
        self._query.add(query_ms)

    def snapshot(self) -> dict:
        return {
            "indexing_time": self._indexing.to_dict(),
            "embedding_time": self._embedding.to_dict(),
            "query_time": self._query.to_dict(),
        }
