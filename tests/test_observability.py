"""
Observability Tests
===================

INVARIANTS TESTED:
1. Audit entries land in their layer's collector
2. Failures are counted in the audit report
3. Metric aggregates respect label filters
4. Metric points older than the retention window are dropped
"""

from datetime import timedelta

from moments.observability import (
    AuditEventType,
    MetricsCollector,
    ObservabilityConfig,
    ObservabilityEngine,
    get_observability,
    set_observability,
)

from tests.fixtures import FixedClock


class TestAuditLog:

    def test_entries_per_layer(self):
        engine = ObservabilityEngine()
        engine.log_audit("load_catalog", layer="catalog", event_type=AuditEventType.CATALOG)
        engine.log_audit("save_moments", layer="storage", event_type=AuditEventType.STORAGE)

        assert [e.action for e in engine.get_layer_log("catalog")] == ["load_catalog"]
        assert engine.get_layer_log("unknown") == []
        assert len(engine.get_unified_log()) == 2
        assert [e.action for e in engine.get_unified_log(layers=["storage"])] == ["save_moments"]

    def test_failure_outcome_becomes_error_event(self):
        entry = ObservabilityEngine().log_audit("extract", outcome="failure", details="timeout")
        assert entry.event_type is AuditEventType.ERROR
        assert entry.outcome == "failure"
        assert entry.to_dict()["metadata"]["details"] == "timeout"

    def test_entry_ids_unique(self):
        engine = ObservabilityEngine()
        ids = {engine.log_audit("tick").entry_id for _ in range(50)}
        assert len(ids) == 50

    def test_audit_report(self):
        engine = ObservabilityEngine()
        engine.log_audit("a", layer="analysis", event_type=AuditEventType.ANALYSIS)
        engine.log_audit("b", layer="analysis", outcome="failure", event_type=AuditEventType.ANALYSIS)

        report = engine.generate_audit_report()

        assert report["total_entries"] == 2
        assert report["failures"] == 1
        assert report["by_layer"] == {"analysis": 2}
        assert report["time_range"]["start"] is not None


class TestMetrics:

    def test_aggregates_with_labels(self):
        engine = ObservabilityEngine()
        engine.collect_metric("provider_latency_ms", 100, {"provider": "anthropic"})
        engine.collect_metric("provider_latency_ms", 300, {"provider": "anthropic"})
        engine.collect_metric("provider_latency_ms", 50, {"provider": "bedrock"})

        metrics = engine.get_metrics()

        assert metrics.compute_aggregates("provider_latency_ms")["count"] == 3
        anthropic = metrics.compute_aggregates("provider_latency_ms", {"provider": "anthropic"})
        assert anthropic == {"count": 2, "sum": 400.0, "min": 100.0, "max": 300.0, "avg": 200.0}
        assert metrics.get_latest("provider_latency_ms").value == 50.0
        assert metrics.compute_aggregates("missing") == {}

    def test_metrics_disabled(self):
        engine = ObservabilityEngine(ObservabilityConfig(enable_metrics=False))
        engine.collect_metric("ignored", 1)
        assert engine.get_metrics() is None

    def test_retention_drops_old_points(self):
        clock = FixedClock()
        metrics = MetricsCollector(timedelta(hours=2), clock)
        metrics.record("provider_latency_ms", 100)
        clock.advance(hours=1)
        metrics.record("provider_latency_ms", 200)
        metrics.record("storage_write_total", 1)
        clock.advance(hours=2)

        metrics.record("provider_latency_ms", 300)

        assert [p.value for p in metrics.get_metric("provider_latency_ms")] == [200.0, 300.0]
        assert len(metrics.get_metric("storage_write_total")) == 1

    def test_engine_applies_log_retention_to_metrics(self):
        engine = ObservabilityEngine(ObservabilityConfig(log_retention_hours=1))
        assert engine.get_metrics().retention == timedelta(hours=1)


class TestDefaultEngine:

    def test_replaceable(self):
        custom = ObservabilityEngine()
        set_observability(custom)
        try:
            assert get_observability() is custom
        finally:
            set_observability(None)
        assert get_observability() is not custom
