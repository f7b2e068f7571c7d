"""
Usage and Cost Tracking
=======================

Records every provider request with its token usage and estimated cost,
and summarises them per provider, model and operation.

OPERATIONS:
===========
Request task types fold into five operations:
    moment_extraction, content_analysis -> analysis
    classification                      -> classification
    correlation                         -> correlation
    report                              -> generation
    anything else                       -> other

BUDGETS:
========
Optional USD limits per period (daily / weekly / monthly, UTC; weeks
start on Sunday). A period at >= 80% of its limit yields a BudgetAlert,
at >= 100% the alert is triggered and audited once per period.

GUARANTEES:
- At most max_records records are kept, oldest dropped first
- Tracking never raises on a cost estimation failure
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
import csv
import io
import itertools
import json
import threading

from moments.config import UsageConfig
from moments.contracts import format_timestamp, utc_now
from moments.observability import AuditEventType, ObservabilityEngine, get_observability

from .prompts import TaskType
from .providers.base import ModelProvider, ModelRequest, ModelResponse, TokenUsage


OPERATIONS = ("analysis", "classification", "correlation", "generation", "other")

_TASK_OPERATIONS = {
    TaskType.EXTRACTION: "analysis",
    TaskType.CONTENT_ANALYSIS: "analysis",
    TaskType.CLASSIFICATION: "classification",
    TaskType.CORRELATION: "correlation",
    TaskType.REPORT: "generation",
}

BUDGET_WARNING_PERCENT = 80.0

_CSV_HEADERS = (
    "timestamp", "provider", "model", "operation", "inputTokens",
    "outputTokens", "totalTokens", "cost", "latency", "success", "error",
)


def operation_for(request: Optional[ModelRequest]) -> str:
    if request is None:
        return "other"
    task = dict(request.metadata).get("task")
    return _TASK_OPERATIONS.get(task, "other")


@dataclass(frozen=True)
class UsageRecord:
    record_id: str
    timestamp: datetime
    provider: str
    model: str
    operation: str
    usage: TokenUsage
    cost: float
    latency_ms: float
    success: bool
    error: Optional[str] = None
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.record_id,
            "timestamp": format_timestamp(self.timestamp),
            "provider": self.provider,
            "model": self.model,
            "operation": self.operation,
            "usage": {
                "inputTokens": self.usage.input_tokens,
                "outputTokens": self.usage.output_tokens,
                "totalTokens": self.usage.total_tokens,
            },
            "cost": self.cost,
            "latency": self.latency_ms,
            "success": self.success,
            "error": self.error,
            "cached": self.cached,
        }


@dataclass(frozen=True)
class UsageStats:
    total_requests: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    average_latency_ms: float = 0.0
    success_rate: float = 0.0
    requests_per_hour: float = 0.0
    cost_per_request: float = 0.0
    tokens_per_request: float = 0.0

    @staticmethod
    def from_records(records: List[UsageRecord]) -> UsageStats:
        if not records:
            return UsageStats()
        total = len(records)
        tokens = sum(r.usage.total_tokens for r in records)
        cost = sum(r.cost for r in records)
        span_hours = (
            max(r.timestamp for r in records) - min(r.timestamp for r in records)
        ).total_seconds() / 3600.0
        return UsageStats(
            total_requests=total,
            total_tokens=tokens,
            total_cost=cost,
            average_latency_ms=sum(r.latency_ms for r in records) / total,
            success_rate=sum(1 for r in records if r.success) / total,
            requests_per_hour=total / span_hours if span_hours > 0 else 0.0,
            cost_per_request=cost / total,
            tokens_per_request=tokens / total,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalRequests": self.total_requests,
            "totalTokens": self.total_tokens,
            "totalCost": round(self.total_cost, 6),
            "averageLatency": round(self.average_latency_ms, 2),
            "successRate": self.success_rate,
            "requestsPerHour": self.requests_per_hour,
            "costPerRequest": self.cost_per_request,
            "tokensPerRequest": self.tokens_per_request,
        }


@dataclass(frozen=True)
class ProviderUsageSummary:
    provider: str
    stats: UsageStats
    model_breakdown: Dict[str, UsageStats] = field(default_factory=dict)
    operation_breakdown: Dict[str, UsageStats] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "stats": self.stats.to_dict(),
            "modelBreakdown": {k: v.to_dict() for k, v in self.model_breakdown.items()},
            "operationBreakdown": {k: v.to_dict() for k, v in self.operation_breakdown.items()},
        }


@dataclass(frozen=True)
class BudgetAlert:
    period: str
    threshold: float
    current_usage: float
    percentage: float
    triggered: bool
    message: str
    recommendations: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.period,
            "threshold": self.threshold,
            "currentUsage": round(self.current_usage, 6),
            "percentage": round(self.percentage, 1),
            "triggered": self.triggered,
            "message": self.message,
            "recommendations": list(self.recommendations),
        }


def _budget_recommendations(percentage: float) -> Tuple[str, ...]:
    if percentage >= 100:
        return (
            "Consider upgrading your budget limit",
            "Review recent high-cost operations",
            "Route classification work to a cheaper model",
        )
    return (
        "Monitor usage more closely",
        "Consider using more cost-effective models",
        "Enable request batching to reduce overhead",
    )


def _group(records: Iterable[UsageRecord], key: Callable[[UsageRecord], str]) -> Dict[str, List[UsageRecord]]:
    groups: Dict[str, List[UsageRecord]] = {}
    for record in records:
        groups.setdefault(key(record), []).append(record)
    return groups


class UsageTracker:
    """Thread-safe in-memory ledger of provider requests."""

    def __init__(
        self,
        config: Optional[UsageConfig] = None,
        observability: Optional[ObservabilityEngine] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self._config = config or UsageConfig()
        self._observability = observability or get_observability()
        self._clock = clock
        self._records: List[UsageRecord] = []
        self._budgets: Dict[str, float] = self._config.budgets()
        self._reported: Dict[str, datetime] = {}
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def track_usage(
        self,
        provider: str,
        model: str,
        operation: str,
        usage: TokenUsage,
        cost: float,
        latency_ms: float = 0.0,
        success: bool = True,
        error: Optional[str] = None,
        cached: bool = False
    ) -> UsageRecord:
        now = self._clock()
        with self._lock:
            record = UsageRecord(
                record_id=f"usage-{int(now.timestamp() * 1000)}-{next(self._sequence)}",
                timestamp=now,
                provider=provider,
                model=model,
                operation=operation if operation in OPERATIONS else "other",
                usage=usage,
                cost=max(0.0, cost),
                latency_ms=latency_ms,
                success=success,
                error=error,
                cached=cached,
            )
            self._records.append(record)
            overflow = len(self._records) - self._config.max_records
            if overflow > 0:
                del self._records[:overflow]
        self._observability.collect_metric("provider_cost_usd", record.cost, {"provider": provider})
        self._check_budgets()
        return record

    def record_response(
        self,
        response: ModelResponse,
        request: Optional[ModelRequest] = None,
        provider: Optional[ModelProvider] = None
    ) -> UsageRecord:
        """Record one provider response; cached responses cost nothing."""
        model = response.model or (request.model if request is not None else "unknown")
        cost = 0.0
        if provider is not None and not response.cached and response.usage.total_tokens:
            try:
                cost = provider.estimate_cost(response.usage, request.model if request else model) or 0.0
            except (KeyError, ValueError, TypeError):
                cost = 0.0
        return self.track_usage(
            provider=response.provider,
            model=model,
            operation=operation_for(request),
            usage=response.usage,
            cost=cost,
            latency_ms=response.latency_ms,
            success=response.success,
            error=response.error_message if not response.success else None,
            cached=response.cached,
        )

    # -------------------------------------------------------------------------
    # Summaries
    # -------------------------------------------------------------------------

    def get_records(
        self,
        provider: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[UsageRecord]:
        with self._lock:
            records = list(self._records)
        return [
            r for r in records
            if (provider is None or r.provider == provider)
            and (start is None or r.timestamp >= start)
            and (end is None or r.timestamp <= end)
        ]

    def get_overall_stats(self) -> UsageStats:
        return UsageStats.from_records(self.get_records())

    def get_provider_usage(
        self,
        provider: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> ProviderUsageSummary:
        records = self.get_records(provider, start, end)
        return ProviderUsageSummary(
            provider=provider,
            stats=UsageStats.from_records(records),
            model_breakdown={
                model: UsageStats.from_records(group)
                for model, group in _group(records, lambda r: r.model).items()
            },
            operation_breakdown={
                operation: UsageStats.from_records(group)
                for operation, group in _group(records, lambda r: r.operation).items()
            },
        )

    def compare_providers(
        self,
        providers: Iterable[str] = ("anthropic", "bedrock"),
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> Dict[str, ProviderUsageSummary]:
        return {name: self.get_provider_usage(name, start, end) for name in providers}

    # -------------------------------------------------------------------------
    # Budgets
    # -------------------------------------------------------------------------

    def set_budget_limit(self, period: str, amount: float):
        if period not in ("daily", "weekly", "monthly"):
            raise ValueError(f"Unknown budget period: {period}")
        if amount <= 0:
            raise ValueError("Budget amount must be > 0")
        with self._lock:
            self._budgets[period] = amount

    def _period_starts(self, now: datetime) -> Dict[str, datetime]:
        day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return {
            "daily": day,
            "weekly": day - timedelta(days=(day.weekday() + 1) % 7),
            "monthly": day.replace(day=1),
        }

    def get_current_spend(self) -> Dict[str, float]:
        now = self._clock()
        with self._lock:
            records = list(self._records)
        return {
            period: sum(r.cost for r in records if start <= r.timestamp <= now)
            for period, start in self._period_starts(now).items()
        }

    def get_budget_alerts(self) -> List[BudgetAlert]:
        spend = self.get_current_spend()
        with self._lock:
            budgets = dict(self._budgets)
        alerts = []
        for period, limit in budgets.items():
            used = spend.get(period, 0.0)
            percentage = used / limit * 100.0
            if percentage < BUDGET_WARNING_PERCENT:
                continue
            triggered = percentage >= 100.0
            if triggered:
                message = f"{period} budget exceeded! Used ${used:.2f} of ${limit:.2f}"
            else:
                message = f"{period} budget at {percentage:.1f}% - ${used:.2f} of ${limit:.2f}"
            alerts.append(BudgetAlert(
                period=period,
                threshold=limit,
                current_usage=used,
                percentage=percentage,
                triggered=triggered,
                message=message,
                recommendations=_budget_recommendations(percentage),
            ))
        return alerts

    def get_budget_status(self) -> Dict[str, Any]:
        with self._lock:
            budgets = dict(self._budgets)
        return {
            "alerts": [a.to_dict() for a in self.get_budget_alerts()],
            "currentSpend": {k: round(v, 6) for k, v in self.get_current_spend().items()},
            "budgetLimits": budgets,
        }

    def _check_budgets(self):
        if not self._budgets:
            return
        starts = self._period_starts(self._clock())
        for alert in self.get_budget_alerts():
            if not alert.triggered:
                continue
            period_start = starts[alert.period]
            with self._lock:
                if self._reported.get(alert.period) == period_start:
                    continue
                self._reported[alert.period] = period_start
            self._observability.log_audit(
                action="budget_exceeded",
                entity_id=alert.period,
                outcome="failure",
                details=alert.message,
                layer="adapter",
                event_type=AuditEventType.PROVIDER,
            )

    # -------------------------------------------------------------------------
    # Export / maintenance
    # -------------------------------------------------------------------------

    def summary(self) -> Dict[str, Any]:
        records = self.get_records()
        providers = sorted({r.provider for r in records})
        return {
            "overall": UsageStats.from_records(records).to_dict(),
            "providers": {name: self.get_provider_usage(name).to_dict() for name in providers},
            "budget": self.get_budget_status(),
        }

    def export_usage_data(self, format: str = "json") -> str:
        records = self.get_records()
        if format == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, lineterminator="\n")
            writer.writerow(_CSV_HEADERS)
            for r in records:
                writer.writerow([
                    format_timestamp(r.timestamp), r.provider, r.model, r.operation,
                    r.usage.input_tokens, r.usage.output_tokens, r.usage.total_tokens,
                    r.cost, r.latency_ms, r.success, r.error or "",
                ])
            return buffer.getvalue()
        if format != "json":
            raise ValueError(f"Unsupported export format: {format}")
        with self._lock:
            budgets = dict(self._budgets)
        return json.dumps({
            "records": [r.to_dict() for r in records],
            "budgetLimits": budgets,
            "summary": UsageStats.from_records(records).to_dict(),
            "exportedAt": format_timestamp(self._clock()),
        }, indent=2)

    def clear_usage_data(self, older_than: Optional[datetime] = None) -> int:
        """Drop records (all, or those at or before older_than); returns the count removed."""
        with self._lock:
            before = len(self._records)
            if older_than is None:
                self._records = []
            else:
                self._records = [r for r in self._records if r.timestamp > older_than]
            return before - len(self._records)
