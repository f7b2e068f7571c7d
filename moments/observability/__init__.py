"""
Observability & Audit Layer

RESPONSIBILITY: Audit logging and metrics for every layer
ALLOWED INPUTS: Audit records and metric points from any layer
OUTPUTS: AuditLogEntry streams, metric aggregates, audit reports

WHAT THIS LAYER MUST NOT DO:
============================
- Modify system behavior
- Filter or interpret events (only record them)
- Block other layers (recording is append-only and in-memory)

BOUNDARY ENFORCEMENT:
=====================
- Entries are frozen once recorded
- Provides read-only copies of logs and metrics
- Safe to call from the health-monitor thread and from worker threads
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple
import hashlib
import itertools
import threading

from ..contracts.base import utc_now


# =============================================================================
# RECORD TYPES
# =============================================================================

class AuditEventType(Enum):
    """Explicit audit event types."""
    CATALOG = "catalog"
    ANALYSIS = "analysis"
    PROVIDER = "provider"
    STORAGE = "storage"
    MONITORING = "monitoring"
    ERROR = "error"
    SYSTEM = "system"


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable audit log entry."""
    entry_id: str
    event_type: AuditEventType
    timestamp: datetime
    layer: str
    action: str
    entity_id: Optional[str] = None
    metadata: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    @property
    def outcome(self) -> str:
        return dict(self.metadata).get("outcome", "")

    def to_dict(self) -> Dict[str, object]:
        return {
            "entry_id": self.entry_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "layer": self.layer,
            "action": self.action,
            "entity_id": self.entity_id,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class MetricPoint:
    """Immutable metric data point."""
    metric_name: str
    value: float
    timestamp: datetime
    labels: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)


LAYERS: Tuple[str, ...] = ("catalog", "analysis", "adapter", "storage", "monitoring", "api", "engine")


# =============================================================================
# LOG COLLECTOR (One per layer)
# =============================================================================

class LogCollector:
    """
    Append-only audit collector for a single layer.

    Entries older than the retention window are dropped on collect.
    """

    def __init__(self, layer_name: str, retention: Optional[timedelta] = None):
        self._layer_name = layer_name
        self._retention = retention
        self._entries: List[AuditLogEntry] = []
        self._lock = threading.Lock()

    def collect(self, entry: AuditLogEntry):
        with self._lock:
            self._entries.append(entry)
            if self._retention is not None:
                cutoff = utc_now() - self._retention
                if self._entries[0].timestamp < cutoff:
                    self._entries = [e for e in self._entries if e.timestamp >= cutoff]

    def get_entries(
        self,
        since: Optional[datetime] = None,
        event_type: Optional[AuditEventType] = None
    ) -> List[AuditLogEntry]:
        with self._lock:
            entries = list(self._entries)
        if since:
            entries = [e for e in entries if e.timestamp >= since]
        if event_type:
            entries = [e for e in entries if e.event_type == event_type]
        return entries

    @property
    def layer_name(self) -> str:
        return self._layer_name

    @property
    def entry_count(self) -> int:
        return len(self._entries)


# =============================================================================
# METRICS COLLECTOR
# =============================================================================

class MetricsCollector:
    """
    Append-only time series of metric points.

    Names in use:
    - analysis_duration_ms, moments_extracted_total, content_changed_total
    - provider_latency_ms{provider}, provider_requests_total{provider,outcome}
    - correlations_found_total, storage_write_total
    - provider_cost_usd{provider}

    Points older than the retention window are dropped when their series grows.
    """

    def __init__(
        self,
        retention: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self._retention = retention
        self._clock = clock
        self._metrics: Dict[str, List[MetricPoint]] = {}
        self._lock = threading.Lock()

    @property
    def retention(self) -> Optional[timedelta]:
        return self._retention

    def record(
        self,
        metric_name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None
    ):
        point = MetricPoint(
            metric_name=metric_name,
            value=float(value),
            timestamp=self._clock(),
            labels=tuple(sorted(labels.items())) if labels else ()
        )
        with self._lock:
            series = self._metrics.setdefault(metric_name, [])
            series.append(point)
            if self._retention is not None:
                cutoff = point.timestamp - self._retention
                if series[0].timestamp < cutoff:
                    self._metrics[metric_name] = [p for p in series if p.timestamp >= cutoff]

    def get_metric(
        self,
        metric_name: str,
        labels: Optional[Dict[str, str]] = None
    ) -> List[MetricPoint]:
        with self._lock:
            points = list(self._metrics.get(metric_name, []))
        if labels:
            wanted = set(labels.items())
            points = [p for p in points if wanted.issubset(set(p.labels))]
        return points

    def get_latest(self, metric_name: str) -> Optional[MetricPoint]:
        points = self.get_metric(metric_name)
        return points[-1] if points else None

    def metric_names(self) -> List[str]:
        with self._lock:
            return sorted(self._metrics.keys())

    def compute_aggregates(
        self,
        metric_name: str,
        labels: Optional[Dict[str, str]] = None
    ) -> Dict[str, float]:
        """Compute aggregate statistics for a metric."""
        points = self.get_metric(metric_name, labels)

        if not points:
            return {}

        values = [p.value for p in points]

        return {
            'count': len(values),
            'sum': sum(values),
            'min': min(values),
            'max': max(values),
            'avg': sum(values) / len(values),
        }


# =============================================================================
# OBSERVABILITY ENGINE
# =============================================================================

@dataclass
class ObservabilityConfig:
    """Configuration for observability engine."""
    enable_metrics: bool = True
    log_retention_hours: int = 168


class ObservabilityEngine:
    """
    Central audit + metrics sink.

    BOUNDARY ENFORCEMENT:
    - ONLY observes, never modifies
    - Unknown layers get a collector on first use
    """

    def __init__(self, config: Optional[ObservabilityConfig] = None):
        self._config = config or ObservabilityConfig()
        self._retention = timedelta(hours=self._config.log_retention_hours)
        self._collectors: Dict[str, LogCollector] = {
            name: LogCollector(name, self._retention) for name in LAYERS
        }
        self._metrics = MetricsCollector(self._retention) if self._config.enable_metrics else None
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    def _collector(self, layer: str) -> LogCollector:
        with self._lock:
            if layer not in self._collectors:
                self._collectors[layer] = LogCollector(layer, self._retention)
            return self._collectors[layer]

    def collect_audit(self, entry: AuditLogEntry):
        self._collector(entry.layer).collect(entry)

    def log_audit(
        self,
        action: str,
        entity_id: Optional[str] = None,
        outcome: str = "success",
        details: str = "",
        layer: str = "engine",
        event_type: AuditEventType = AuditEventType.SYSTEM
    ) -> AuditLogEntry:
        """Helper to log audit entry directly."""
        now = utc_now()
        entry_id = hashlib.sha256(
            f"{layer}_{action}|{now.timestamp()}|{next(self._sequence)}".encode()
        ).hexdigest()[:16]

        if outcome == "failure" and event_type is AuditEventType.SYSTEM:
            event_type = AuditEventType.ERROR

        entry = AuditLogEntry(
            entry_id=f"audit_{entry_id}",
            event_type=event_type,
            timestamp=now,
            layer=layer,
            action=action,
            entity_id=entity_id,
            metadata=(
                ("outcome", outcome),
                ("details", details)
            )
        )
        self.collect_audit(entry)
        return entry

    def collect_metric(
        self,
        metric_name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None
    ):
        if self._metrics:
            self._metrics.record(metric_name, value, labels)

    def get_unified_log(
        self,
        since: Optional[datetime] = None,
        layers: Optional[List[str]] = None
    ) -> List[AuditLogEntry]:
        """Get unified log from all or specified layers, oldest first."""
        with self._lock:
            collectors = dict(self._collectors)
        target_layers = layers or list(collectors.keys())

        all_entries = []
        for layer_name in target_layers:
            collector = collectors.get(layer_name)
            if collector:
                all_entries.extend(collector.get_entries(since=since))

        all_entries.sort(key=lambda e: e.timestamp)
        return all_entries

    def get_layer_log(self, layer_name: str) -> List[AuditLogEntry]:
        collector = self._collectors.get(layer_name)
        if not collector:
            return []
        return collector.get_entries()

    def get_metrics(self) -> Optional[MetricsCollector]:
        """Get metrics collector (read-only access)."""
        return self._metrics

    def generate_audit_report(self, since: Optional[datetime] = None) -> Dict:
        """Generate comprehensive audit report."""
        entries = self.get_unified_log(since=since)

        by_layer: Dict[str, int] = {}
        by_type: Dict[str, int] = {}
        failures = 0

        for entry in entries:
            by_layer[entry.layer] = by_layer.get(entry.layer, 0) + 1
            by_type[entry.event_type.value] = by_type.get(entry.event_type.value, 0) + 1
            if entry.outcome == "failure":
                failures += 1

        return {
            'total_entries': len(entries),
            'failures': failures,
            'by_layer': by_layer,
            'by_event_type': by_type,
            'time_range': {
                'start': entries[0].timestamp.isoformat() if entries else None,
                'end': entries[-1].timestamp.isoformat() if entries else None,
            },
            'generated_at': utc_now().isoformat()
        }


# Process-wide default, replaced by tests or the engine as needed
_default_engine: Optional[ObservabilityEngine] = None


def get_observability() -> ObservabilityEngine:
    global _default_engine
    if _default_engine is None:
        _default_engine = ObservabilityEngine()
    return _default_engine


def set_observability(engine: Optional[ObservabilityEngine]):
    global _default_engine
    _default_engine = engine


__all__ = [
    'AuditEventType',
    'AuditLogEntry',
    'MetricPoint',
    'LogCollector',
    'MetricsCollector',
    'ObservabilityConfig',
    'ObservabilityEngine',
    'get_observability',
    'set_observability',
]
