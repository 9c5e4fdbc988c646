import itertools
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping

from .ga4 import Number, Report

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

@dataclass(frozen=True)
class Snapshot:
    snapshot_id: str
    fetched_at: datetime
    report: Report
    metric_totals: Mapping[str, Number] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_report(cls, snapshot_id: str, report: Report, fetched_at: datetime | None = None) -> "Snapshot":
        """Build a snapshot; top-level totals are resolved here, once."""
        return cls(
            snapshot_id=snapshot_id,
            fetched_at=fetched_at or utcnow(),
            report=report,
            metric_totals=MappingProxyType(report.metric_totals()),
        )

    @property
    def ts_ms(self) -> int:
        return int(self.fetched_at.timestamp() * 1000)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = dict(self.metric_totals)
        body.update({
            "dimensionHeaders": list(self.report.dimension_headers),
            "metricHeaders": list(self.report.metric_headers),
            "rows": [row.to_dict() for row in self.report.rows],
            "rowCount": self.report.row_count,
            "snapshotId": self.snapshot_id,
            "fetchedAt": self.fetched_at.isoformat(),
        })
        for key, value in self.report.aggregates.items():
            body.setdefault(key, value)
        return body

@dataclass(frozen=True)
class TotalVisitors:
    value: int
    updated_at: datetime

@dataclass(frozen=True)
class StoreView:
    snapshot: Snapshot | None = None
    total: TotalVisitors | None = None

class SnapshotStore:
    """Latest realtime snapshot plus the latest total-visitors count.

    State lives in one immutable ``StoreView`` that writers replace wholesale,
    so ``read`` is a single attribute load and never waits. The lock only
    serializes writers against each other.
    """

    def __init__(self):
        self._write_lock = threading.Lock()
        self._view = StoreView()
        self._ids = itertools.count(1)

    def next_snapshot_id(self) -> str:
        return str(next(self._ids))

    def publish(self, snap: Snapshot) -> None:
        with self._write_lock:
            self._view = replace(self._view, snapshot=snap)

    def publish_total(self, value: int, updated_at: datetime | None = None) -> None:
        total = TotalVisitors(value=int(value), updated_at=updated_at or utcnow())
        with self._write_lock:
            self._view = replace(self._view, total=total)

    def read(self) -> StoreView:
        return self._view

    def age_ms(self) -> int | None:
        s = self._view.snapshot
        if not s:
            return None
        return int(time.time() * 1000) - s.ts_ms
