# =============================================================================
# caseflow_core/offline/metrics.py
# Performance metric recording
# =============================================================================
"""
MetricsRecorder - appends timing samples (sync batch duration, replay
latency) to the `performance_metrics` table and summarizes them with pandas.
"""

from __future__ import annotations
from typing import Any, Dict, Optional
import logging

import pandas as pd

from caseflow_core.offline.local_store import LocalStore
from caseflow_core.offline.models import PerformanceMetric, new_id, now_ms
from caseflow_core.offline.serialization import canonical_json

logger = logging.getLogger(__name__)

SYNC_BATCH_DURATION = "sync_batch_duration_ms"
REPLAY_LATENCY = "replay_latency_ms"


class MetricsRecorder:

    def __init__(self, store: LocalStore, clock=None):
        self.store = store
        self.clock = clock or store.clock or now_ms

    def record(
        self,
        metric_type: str,
        value: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PerformanceMetric:
        now = self.clock()
        metric = PerformanceMetric(
            id=new_id("metric", now),
            metric_type=metric_type,
            metric_value=float(value),
            metadata=metadata or {},
            timestamp=now,
        )
        self.store.execute(
            "INSERT INTO performance_metrics (id, metric_type, metric_value, metadata, timestamp) "
            "VALUES (?, ?, ?, ?, ?)",
            [metric.id, metric.metric_type, metric.metric_value, canonical_json(metric.metadata), now]
        )
        return metric

    def to_dataframe(self, metric_type: Optional[str] = None) -> pd.DataFrame:
        if metric_type is None:
            return self.store.to_dataframe("performance_metrics", order_by="timestamp")
        return self.store.to_dataframe(
            "performance_metrics", where="metric_type = ?", params=[metric_type], order_by="timestamp"
        )

    def summary(self, metric_type: Optional[str] = None) -> Dict[str, Dict[str, float]]:
        """
        Per-metric count/mean/p95/max.

        Returns:
            Dict keyed by metric_type; empty if nothing has been recorded
        """
        df = self.to_dataframe(metric_type)
        if df.empty:
            return {}

        grouped = df.groupby("metric_type")["metric_value"]
        summary = {}
        for name, values in grouped:
            summary[name] = {
                "count": int(values.count()),
                "mean": float(values.mean()),
                "p95": float(values.quantile(0.95)),
                "max": float(values.max()),
            }
        return summary

    def prune(self, older_than: int) -> int:
        """Delete samples recorded before `older_than` (epoch ms)."""
        removed = self.store.execute(
            "DELETE FROM performance_metrics WHERE timestamp < ?", [older_than]
        )
        logger.debug(f"Pruned {removed} performance metrics")
        return removed
