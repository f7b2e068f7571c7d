"""
Provider Health Monitor
=======================

Periodic health checks of the configured model providers, rolling
statistics and threshold alerts.

ALERTS:
=======
- consecutive_failures: N failed checks in a row
- error_rate:           failed share of checks in the last 24h above threshold
- latency:              average latency in the last 24h above threshold

Each (provider, alert type) pair has its own cooldown. Alerts are
delivered to registered listeners and, when configured, POSTed to a
webhook.

GUARANTEES:
- A provider that cannot even be constructed counts as an unhealthy check
- Webhook failures are recorded in the audit log, never raised
- Metrics older than the retention period are pruned after each round
"""

from __future__ import annotations
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional

import httpx

from adapter.providers.base import ModelProviderError, ProviderHealthCheck
from adapter.providers.factory import ProviderFactory

from ..config import AlertConfig, ConfigurationError, MonitoringConfig
from ..contracts import format_timestamp, utc_now
from ..observability import AuditEventType, ObservabilityEngine, get_observability


SUCCESS_RATE_WINDOW = 100
STATISTICS_WINDOW = timedelta(hours=24)


class AlertType(Enum):
    CONSECUTIVE_FAILURES = "consecutive_failures"
    ERROR_RATE = "error_rate"
    LATENCY = "latency"
    MANUAL = "manual"


@dataclass(frozen=True)
class HealthMetrics:
    """One health check observation."""
    provider: str
    timestamp: datetime
    is_healthy: bool
    latency_ms: float
    error: Optional[str] = None
    checks_run: int = 0
    success_rate: float = 0.0

    def to_dict(self) -> Dict[str, object]:
        return {
            "provider": self.provider,
            "timestamp": format_timestamp(self.timestamp),
            "isHealthy": self.is_healthy,
            "latency": self.latency_ms,
            "error": self.error,
            "checksRun": self.checks_run,
            "successRate": self.success_rate,
        }


@dataclass
class ProviderStatus:
    """
    Rolling status of one provider.

    error_rate and uptime are percentages over the statistics window.
    """
    provider: str
    current_health: ProviderHealthCheck
    error_rate: float = 0.0
    average_latency_ms: float = 0.0
    uptime: float = 0.0
    consecutive_failures: int = 0
    total_checks: int = 0
    successful_checks: int = 0
    last_alert: Optional[datetime] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "provider": self.provider,
            "currentHealth": self.current_health.to_dict(),
            "errorRate": self.error_rate,
            "averageLatency": self.average_latency_ms,
            "uptime": self.uptime,
            "consecutiveFailures": self.consecutive_failures,
            "totalChecks": self.total_checks,
            "successfulChecks": self.successful_checks,
            "lastAlert": format_timestamp(self.last_alert),
        }


@dataclass(frozen=True)
class HealthStatistics:
    uptime: float
    average_latency_ms: float
    error_rate: float
    total_checks: int
    availability: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "uptime": self.uptime,
            "averageLatency": self.average_latency_ms,
            "errorRate": self.error_rate,
            "totalChecks": self.total_checks,
            "availability": self.availability,
        }


@dataclass(frozen=True)
class HealthAlert:
    provider: str
    alert_type: AlertType
    message: str
    timestamp: datetime
    status: Dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "provider": self.provider,
            "type": self.alert_type.value,
            "message": self.message,
            "timestamp": format_timestamp(self.timestamp),
            "status": self.status,
        }


AlertListener = Callable[[HealthAlert], None]


class ProviderHealthMonitor:

    def __init__(
        self,
        factory: ProviderFactory,
        config: Optional[MonitoringConfig] = None,
        observability: Optional[ObservabilityEngine] = None,
        clock: Callable[[], datetime] = utc_now,
        transport: Optional[httpx.BaseTransport] = None,
        webhook_timeout: float = 10.0
    ):
        self._factory = factory
        self._config = config or MonitoringConfig()
        self._observability = observability or get_observability()
        self._clock = clock
        self._transport = transport
        self._webhook_timeout = webhook_timeout

        self._metrics: Dict[str, List[HealthMetrics]] = {}
        self._status: Dict[str, ProviderStatus] = {}
        self._cooldowns: Dict[tuple, datetime] = {}
        self._listeners: List[AlertListener] = []
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        for provider in self._config.providers:
            self._ensure_provider(provider)

    @property
    def config(self) -> MonitoringConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _ensure_provider(self, provider: str):
        with self._lock:
            self._metrics.setdefault(provider, [])
            if provider not in self._status:
                self._status[provider] = ProviderStatus(
                    provider=provider,
                    current_health=ProviderHealthCheck(
                        is_healthy=False,
                        provider=provider,
                        latency_ms=0.0,
                        last_checked=self._clock(),
                    ),
                )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> bool:
        """Start the polling thread. Returns False if already running."""
        if self.is_running:
            return False
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name="provider-health-monitor", daemon=True
        )
        self._thread.start()
        self._observability.log_audit(
            action="health_monitor_start",
            details=f"interval={self._config.check_interval_seconds}s",
            layer="monitoring",
            event_type=AuditEventType.MONITORING,
        )
        return True

    def stop(self, timeout: Optional[float] = None):
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout)
        self._thread = None
        self._observability.log_audit(
            action="health_monitor_stop",
            layer="monitoring",
            event_type=AuditEventType.MONITORING,
        )

    def _run_loop(self):
        while not self._stop_event.is_set():
            try:
                self.run_health_checks()
            except Exception as e:
                self._observability.log_audit(
                    action="health_check_cycle",
                    outcome="failure",
                    details=f"{type(e).__name__}: {e}",
                    layer="monitoring",
                    event_type=AuditEventType.MONITORING,
                )
            self._stop_event.wait(self._config.check_interval_seconds)

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    def run_health_checks(self) -> Dict[str, HealthMetrics]:
        results = {name: self.check_provider_health(name) for name in self._config.providers}
        self.cleanup_old_metrics()
        return results

    def check_provider_health(self, provider: str) -> HealthMetrics:
        self._ensure_provider(provider)
        started = self._clock()
        try:
            check = self._factory.get_provider(provider).health_check()
        except (ModelProviderError, ConfigurationError) as e:
            check = ProviderHealthCheck(
                is_healthy=False,
                provider=provider,
                latency_ms=(self._clock() - started).total_seconds() * 1000,
                last_checked=self._clock(),
                error=str(e),
            )

        metrics = self._record_metrics(provider, HealthMetrics(
            provider=provider,
            timestamp=started,
            is_healthy=check.is_healthy,
            latency_ms=check.latency_ms or 0.0,
            error=check.error,
        ))
        self._update_status(provider, check)
        self._observability.collect_metric(
            "provider_health_latency_ms", metrics.latency_ms, {"provider": provider}
        )
        self.check_alerts(provider)
        return metrics

    def _record_metrics(self, provider: str, metrics: HealthMetrics) -> HealthMetrics:
        with self._lock:
            history = self._metrics.setdefault(provider, [])
            recent = history[-(SUCCESS_RATE_WINDOW - 1):] + [metrics]
            metrics = replace(
                metrics,
                checks_run=len(recent),
                success_rate=sum(1 for m in recent if m.is_healthy) / len(recent),
            )
            history.append(metrics)
            return metrics

    def _update_status(self, provider: str, check: ProviderHealthCheck):
        stats = self.get_health_statistics(provider)
        with self._lock:
            status = self._status[provider]
            status.current_health = check
            status.total_checks += 1
            if check.is_healthy:
                status.successful_checks += 1
                status.consecutive_failures = 0
            else:
                status.consecutive_failures += 1
            status.error_rate = stats.error_rate
            status.average_latency_ms = stats.average_latency_ms
            status.uptime = stats.uptime

    def cleanup_old_metrics(self):
        cutoff = self._clock() - timedelta(days=self._config.retention_days)
        with self._lock:
            for provider, history in self._metrics.items():
                self._metrics[provider] = [m for m in history if m.timestamp > cutoff]

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_provider_status(self, provider: str) -> Optional[ProviderStatus]:
        with self._lock:
            status = self._status.get(provider)
            return replace(status) if status else None

    def get_provider_statuses(self) -> Dict[str, ProviderStatus]:
        with self._lock:
            return {name: replace(status) for name, status in self._status.items()}

    def get_health_metrics(
        self,
        provider: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[HealthMetrics]:
        with self._lock:
            metrics = list(self._metrics.get(provider, []))
        if start is not None:
            metrics = [m for m in metrics if m.timestamp >= start]
        if end is not None:
            metrics = [m for m in metrics if m.timestamp <= end]
        return metrics

    def get_health_statistics(
        self,
        provider: str,
        window: timedelta = STATISTICS_WINDOW
    ) -> HealthStatistics:
        now = self._clock()
        metrics = self.get_health_metrics(provider, now - window, now)
        if not metrics:
            return HealthStatistics(0.0, 0.0, 0.0, 0, 0.0)
        healthy = sum(1 for m in metrics if m.is_healthy)
        total = len(metrics)
        uptime = healthy / total * 100
        return HealthStatistics(
            uptime=uptime,
            average_latency_ms=sum(m.latency_ms for m in metrics) / total,
            error_rate=(total - healthy) / total * 100,
            total_checks=total,
            availability=uptime,
        )

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    def add_alert_listener(self, listener: AlertListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def remove():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return remove

    def update_alert_config(self, **changes) -> AlertConfig:
        self._config.alerts = replace(self._config.alerts, **changes)
        return self._config.alerts

    def check_alerts(self, provider: str) -> List[HealthAlert]:
        alerts_config = self._config.alerts
        if not alerts_config.enabled:
            return []
        status = self.get_provider_status(provider)
        if status is None:
            return []

        candidates = []
        if status.consecutive_failures >= alerts_config.consecutive_failures:
            candidates.append((
                AlertType.CONSECUTIVE_FAILURES,
                f"Provider {provider} has failed {status.consecutive_failures} consecutive health checks",
            ))
        if status.error_rate > alerts_config.error_rate_threshold * 100:
            candidates.append((
                AlertType.ERROR_RATE,
                f"Provider {provider} error rate ({status.error_rate:.1f}%) exceeds threshold",
            ))
        if status.average_latency_ms > alerts_config.latency_threshold_ms:
            candidates.append((
                AlertType.LATENCY,
                f"Provider {provider} latency ({status.average_latency_ms:.0f}ms) exceeds threshold",
            ))

        now = self._clock()
        cooldown = timedelta(minutes=alerts_config.cooldown_minutes)
        fired = []
        for alert_type, message in candidates:
            last = self._cooldowns.get((provider, alert_type))
            if last is not None and now - last < cooldown:
                continue
            self._cooldowns[(provider, alert_type)] = now
            fired.append(self.trigger_alert(provider, message, alert_type))
        return fired

    def test_alert(self, provider: str) -> HealthAlert:
        return self.trigger_alert(provider, "Manual alert test", AlertType.MANUAL)

    def trigger_alert(self, provider: str, message: str, alert_type: AlertType) -> HealthAlert:
        now = self._clock()
        with self._lock:
            status = self._status.get(provider)
            if status is not None:
                status.last_alert = now
            listeners = list(self._listeners)

        alert = HealthAlert(
            provider=provider,
            alert_type=alert_type,
            message=message,
            timestamp=now,
            status=status.current_health.to_dict() if status else {},
        )
        self._observability.log_audit(
            action="health_alert",
            entity_id=provider,
            outcome="failure",
            details=f"{alert_type.value}: {message}",
            layer="monitoring",
            event_type=AuditEventType.MONITORING,
        )

        for listener in listeners:
            try:
                listener(alert)
            except Exception as e:
                # A broken listener must not stop delivery or polling
                self._observability.log_audit(
                    action="alert_listener",
                    entity_id=provider,
                    outcome="failure",
                    details=f"{type(e).__name__}: {e}",
                    layer="monitoring",
                    event_type=AuditEventType.MONITORING,
                )
        if self._config.alerts.webhook_url:
            self._post_webhook(alert)
        return alert

    def _post_webhook(self, alert: HealthAlert) -> bool:
        url = self._config.alerts.webhook_url
        try:
            with httpx.Client(timeout=self._webhook_timeout, transport=self._transport) as client:
                response = client.post(url, json=alert.to_dict())
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            self._observability.log_audit(
                action="webhook_alert",
                entity_id=alert.provider,
                outcome="failure",
                details=f"{url}: {e}",
                layer="monitoring",
                event_type=AuditEventType.MONITORING,
            )
            return False

    # -------------------------------------------------------------------------
    # Export
    # -------------------------------------------------------------------------

    def export_health_data(self) -> Dict[str, object]:
        with self._lock:
            metrics = {name: [m.to_dict() for m in history] for name, history in self._metrics.items()}
            status = {name: s.to_dict() for name, s in self._status.items()}
        alerts = self._config.alerts
        return {
            "config": {
                "checkInterval": self._config.check_interval_seconds,
                "retentionDays": self._config.retention_days,
                "providers": list(self._config.providers),
                "alerts": {
                    "enabled": alerts.enabled,
                    "errorRateThreshold": alerts.error_rate_threshold,
                    "latencyThreshold": alerts.latency_threshold_ms,
                    "consecutiveFailures": alerts.consecutive_failures,
                    "cooldownMinutes": alerts.cooldown_minutes,
                    "webhookUrl": alerts.webhook_url,
                },
            },
            "metrics": metrics,
            "status": status,
            "exportedAt": format_timestamp(self._clock()),
        }
