"""
Failover Manager
================

Routes a model request across the primary and fallback providers with
per-provider backoff, circuit breakers and automatic recovery.

ORDERING:
=========
The primary provider always comes first; remaining providers are
ordered by health score (highest first):

    uptime * 0.5 + max(0, 100 - latency_ms / 100) * 0.3 + max(0, 100 - error_rate) * 0.2

STATE MACHINE (per provider):
=============================
- failure:  consecutive_failures += 1, backoff = min(1s * mult^(n-1), max)
            inactive once consecutive_failures >= max_failures
            circuit opens once consecutive_failures >= failure_threshold
- success:  consecutive_successes += 1; an inactive provider recovers
            after recovery_threshold successes in a row
- an open circuit closes again after reset_timeout

GUARANTEES:
- A response with success=False counts as a failure, same as a raised error
- ModelProviderError is raised only when every candidate provider failed
- At most the last 100 failover events are kept
"""

from __future__ import annotations
import threading
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Sequence

from adapter.providers.base import (
    ModelProviderError,
    ModelRequest,
    ModelResponse,
    ProviderErrorCode,
)
from adapter.providers.factory import ProviderFactory

from ..config import ConfigurationError, FailoverConfig
from ..contracts import format_timestamp, utc_now
from ..observability import AuditEventType, ObservabilityEngine, get_observability
from .health import ProviderHealthMonitor


EVENT_BUFFER_SIZE = 100
BASE_BACKOFF_MS = 1000.0


class FailoverEventType(Enum):
    FAILOVER = "failover"
    RECOVERY = "recovery"
    CIRCUIT_BREAKER_OPEN = "circuit_breaker_open"
    CIRCUIT_BREAKER_CLOSED = "circuit_breaker_closed"


@dataclass
class ProviderState:
    provider: str
    is_active: bool
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    total_requests: int = 0
    successful_requests: int = 0
    last_failure_time: Optional[datetime] = None
    backoff_until: Optional[datetime] = None
    circuit_breaker_open: bool = False
    last_circuit_breaker_reset: Optional[datetime] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "provider": self.provider,
            "isActive": self.is_active,
            "consecutiveFailures": self.consecutive_failures,
            "consecutiveSuccesses": self.consecutive_successes,
            "totalRequests": self.total_requests,
            "successfulRequests": self.successful_requests,
            "lastFailureTime": format_timestamp(self.last_failure_time),
            "backoffUntil": format_timestamp(self.backoff_until),
            "circuitBreakerOpen": self.circuit_breaker_open,
            "lastCircuitBreakerReset": format_timestamp(self.last_circuit_breaker_reset),
        }


@dataclass(frozen=True)
class FailoverEvent:
    timestamp: datetime
    event_type: FailoverEventType
    reason: str
    from_provider: Optional[str] = None
    to_provider: Optional[str] = None
    health_score: Optional[float] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "type": self.event_type.value,
            "reason": self.reason,
            "fromProvider": self.from_provider,
            "toProvider": self.to_provider,
            "healthScore": self.health_score,
        }


@dataclass(frozen=True)
class FailoverResult:
    response: ModelResponse
    provider: str
    failover_occurred: bool
    attempts: int


@dataclass(frozen=True)
class FailoverStatistics:
    total_failovers: int
    recoveries: int
    circuit_breaker_trips: int
    current_provider_uptime: float
    mean_time_to_failover_ms: float
    mean_time_to_recovery_ms: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "totalFailovers": self.total_failovers,
            "recoveries": self.recoveries,
            "circuitBreakerTrips": self.circuit_breaker_trips,
            "currentProviderUptime": self.current_provider_uptime,
            "meanTimeToFailover": self.mean_time_to_failover_ms,
            "meanTimeToRecovery": self.mean_time_to_recovery_ms,
        }


class FailoverManager:

    def __init__(
        self,
        factory: ProviderFactory,
        monitor: Optional[ProviderHealthMonitor] = None,
        config: Optional[FailoverConfig] = None,
        primary: Optional[str] = None,
        fallbacks: Optional[Sequence[str]] = None,
        observability: Optional[ObservabilityEngine] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self._factory = factory
        self._monitor = monitor
        self._config = config or FailoverConfig()
        self._observability = observability or get_observability()
        self._clock = clock

        self._primary = primary or factory.primary_type or factory.config.type
        if fallbacks is None:
            fallback = factory.fallback_type or factory.config.fallback
            fallbacks = [fallback] if fallback else []
        self._fallbacks = [name for name in fallbacks if name != self._primary]
        self._current = self._primary

        self._states: Dict[str, ProviderState] = {}
        self._events: Deque[FailoverEvent] = deque(maxlen=EVENT_BUFFER_SIZE)
        self._lock = threading.RLock()
        self._initialize_states()

    @property
    def config(self) -> FailoverConfig:
        return self._config

    @property
    def providers(self) -> List[str]:
        return [self._primary] + list(self._fallbacks)

    def _initialize_states(self):
        now = self._clock()
        for name in self.providers:
            if name not in self._states:
                self._states[name] = ProviderState(
                    provider=name,
                    is_active=name == self._primary,
                    last_circuit_breaker_reset=now,
                )

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def execute_with_failover(self, request: ModelRequest) -> FailoverResult:
        candidates = self._available_providers()
        if not candidates:
            raise ModelProviderError(
                "No providers available: all are backing off or have an open circuit",
                provider=self._primary,
                code=ProviderErrorCode.CIRCUIT_OPEN,
                retryable=True,
            )

        attempts = 0
        failover_occurred = False
        last_error: Optional[ModelProviderError] = None

        for name in candidates:
            attempts += 1
            with self._lock:
                self._states[name].total_requests += 1
            try:
                response = self._factory.get_provider(name).send_request(request)
                if not response.success:
                    raise response.to_error()
            except (ModelProviderError, ConfigurationError) as e:
                last_error = e if isinstance(e, ModelProviderError) else ModelProviderError(
                    str(e), provider=name, code=ProviderErrorCode.NOT_CONFIGURED, retryable=False
                )
                self._record_failure(name, last_error)
                if name == self._current and len(candidates) > 1:
                    failover_occurred = True
                continue

            self._record_success(name)
            if name != self._current:
                failover_occurred = True
                self._handle_failover(self._current, name, "successful_fallback")
            return FailoverResult(response, name, failover_occurred, attempts)

        raise ModelProviderError(
            f"All providers failed. Last error: {last_error}",
            provider=last_error.provider if last_error else self._primary,
            code=last_error.code if last_error else ProviderErrorCode.API_ERROR,
            retryable=last_error.retryable if last_error else True,
        )

    def _available_providers(self) -> List[str]:
        now = self._clock()
        reset_timeout = timedelta(seconds=self._config.circuit_breaker.reset_timeout_seconds)
        available = []
        with self._lock:
            for name in self.providers:
                state = self._states[name]
                if state.circuit_breaker_open:
                    if now - state.last_circuit_breaker_reset <= reset_timeout:
                        continue
                    state.circuit_breaker_open = False
                    state.last_circuit_breaker_reset = now
                    self._record_event(FailoverEventType.CIRCUIT_BREAKER_CLOSED, "timeout_reset",
                                       to_provider=name)
                if state.backoff_until is None or now >= state.backoff_until:
                    available.append(name)

        primary = [n for n in available if n == self._primary]
        others = sorted((n for n in available if n != self._primary),
                        key=self.get_provider_health_score, reverse=True)
        return primary + others

    def _record_success(self, name: str):
        with self._lock:
            state = self._states[name]
            state.successful_requests += 1
            state.consecutive_successes += 1
            state.consecutive_failures = 0
            recovered = (not state.is_active
                         and state.consecutive_successes >= self._config.recovery_threshold)
        if recovered:
            self._handle_recovery(name)

    def _record_failure(self, name: str, error: ModelProviderError):
        now = self._clock()
        with self._lock:
            state = self._states[name]
            state.consecutive_failures += 1
            state.consecutive_successes = 0
            state.last_failure_time = now
            backoff_ms = min(
                BASE_BACKOFF_MS * self._config.backoff_multiplier ** (state.consecutive_failures - 1),
                self._config.max_backoff_ms,
            )
            state.backoff_until = now + timedelta(milliseconds=backoff_ms)
            if state.consecutive_failures >= self._config.max_failures:
                state.is_active = False
            if state.consecutive_failures >= self._config.circuit_breaker.failure_threshold:
                state.circuit_breaker_open = True
                state.last_circuit_breaker_reset = now
                self._record_event(
                    FailoverEventType.CIRCUIT_BREAKER_OPEN,
                    f"Consecutive failures: {state.consecutive_failures}",
                    from_provider=name,
                )

        self._observability.log_audit(
            action="provider_request",
            entity_id=name,
            outcome="failure",
            details=f"{error.code.value}: {error}",
            layer="monitoring",
            event_type=AuditEventType.PROVIDER,
        )
        self._observability.collect_metric("provider_failures_total", 1, {"provider": name})

    def _handle_failover(self, from_provider: str, to_provider: str, reason: str):
        with self._lock:
            self._current = to_provider
            if from_provider in self._states:
                self._states[from_provider].is_active = False
            if to_provider in self._states:
                self._states[to_provider].is_active = True
        self._record_event(
            FailoverEventType.FAILOVER, reason,
            from_provider=from_provider,
            to_provider=to_provider,
            health_score=self.get_provider_health_score(to_provider),
        )
        self._observability.log_audit(
            action="failover",
            entity_id=to_provider,
            details=f"{from_provider} -> {to_provider} ({reason})",
            layer="monitoring",
            event_type=AuditEventType.MONITORING,
        )

    def _handle_recovery(self, name: str):
        with self._lock:
            state = self._states[name]
            state.is_active = True
            state.consecutive_failures = 0
            state.backoff_until = None
            switch_back = name == self._primary and self._current != name
            previous = self._current
            if switch_back:
                self._current = name
        if switch_back:
            self._record_event(
                FailoverEventType.RECOVERY, "primary_recovery",
                from_provider=previous,
                to_provider=name,
                health_score=self.get_provider_health_score(name),
            )
            self._observability.log_audit(
                action="recovery",
                entity_id=name,
                details=f"{previous} -> {name} (primary provider recovered)",
                layer="monitoring",
                event_type=AuditEventType.MONITORING,
            )

    def _record_event(self, event_type: FailoverEventType, reason: str, **fields):
        with self._lock:
            self._events.append(FailoverEvent(self._clock(), event_type, reason, **fields))

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    def get_provider_health_score(self, name: str) -> float:
        if self._monitor is None:
            return 0.0
        status = self._monitor.get_provider_status(name)
        if status is None:
            return 0.0
        latency_score = max(0.0, 100 - status.average_latency_ms / 100)
        error_score = max(0.0, 100 - status.error_rate)
        return status.uptime * 0.5 + latency_score * 0.3 + error_score * 0.2

    def check_recovery_opportunities(self) -> bool:
        """Check an inactive primary; returns True if it recovered."""
        with self._lock:
            state = self._states.get(self._primary)
            if state is None or state.is_active:
                return False
        if self.get_provider_health_score(self._primary) < self._config.health_threshold:
            return False
        try:
            healthy = self._factory.get_provider(self._primary).health_check().is_healthy
        except (ModelProviderError, ConfigurationError) as e:
            self._observability.log_audit(
                action="recovery_attempt",
                entity_id=self._primary,
                outcome="failure",
                details=str(e),
                layer="monitoring",
                event_type=AuditEventType.MONITORING,
            )
            return False
        if healthy:
            self._handle_recovery(self._primary)
        return healthy

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def get_current_provider(self) -> str:
        return self._current

    def get_provider_state(self, name: str) -> Optional[ProviderState]:
        with self._lock:
            state = self._states.get(name)
            return replace(state) if state else None

    def get_provider_states(self) -> Dict[str, ProviderState]:
        with self._lock:
            return {name: replace(state) for name, state in self._states.items()}

    def is_provider_available(self, name: str) -> bool:
        with self._lock:
            state = self._states.get(name)
            if state is None or state.circuit_breaker_open:
                return False
            return state.backoff_until is None or self._clock() >= state.backoff_until

    def manual_failover(self, target: str) -> bool:
        if not self.is_provider_available(target):
            self._observability.log_audit(
                action="manual_failover",
                entity_id=target,
                outcome="failure",
                details="provider not available",
                layer="monitoring",
                event_type=AuditEventType.MONITORING,
            )
            return False
        with self._lock:
            previous = self._current
            self._current = target
        self._record_event(FailoverEventType.FAILOVER, "manual_failover",
                           from_provider=previous, to_provider=target)
        return True

    def reset_circuit_breakers(self):
        now = self._clock()
        with self._lock:
            for name, state in self._states.items():
                state.circuit_breaker_open = False
                state.last_circuit_breaker_reset = now
                self._record_event(FailoverEventType.CIRCUIT_BREAKER_CLOSED, "manual_reset",
                                   to_provider=name)

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def get_failover_events(self) -> List[FailoverEvent]:
        with self._lock:
            return sorted(self._events, key=lambda e: e.timestamp)

    def get_failover_statistics(self) -> FailoverStatistics:
        events = self.get_failover_events()
        failovers = [e for e in events if e.event_type is FailoverEventType.FAILOVER]
        recoveries = [e for e in events if e.event_type is FailoverEventType.RECOVERY]
        trips = [e for e in events if e.event_type is FailoverEventType.CIRCUIT_BREAKER_OPEN]

        failover_ms = 0.0
        recovery_ms = 0.0
        for previous, current in zip(events, events[1:]):
            gap_ms = (current.timestamp - previous.timestamp).total_seconds() * 1000
            if current.event_type is FailoverEventType.FAILOVER:
                failover_ms += gap_ms
            elif current.event_type is FailoverEventType.RECOVERY:
                recovery_ms += gap_ms

        state = self.get_provider_state(self._current)
        uptime = state.successful_requests / max(state.total_requests, 1) * 100 if state else 0.0

        return FailoverStatistics(
            total_failovers=len(failovers),
            recoveries=len(recoveries),
            circuit_breaker_trips=len(trips),
            current_provider_uptime=uptime,
            mean_time_to_failover_ms=failover_ms / len(failovers) if failovers else 0.0,
            mean_time_to_recovery_ms=recovery_ms / len(recoveries) if recoveries else 0.0,
        )

    def export_failover_data(self) -> Dict[str, object]:
        cb = self._config.circuit_breaker
        return {
            "config": {
                "primaryProvider": self._primary,
                "fallbackProviders": list(self._fallbacks),
                "healthThreshold": self._config.health_threshold,
                "maxFailures": self._config.max_failures,
                "backoffMultiplier": self._config.backoff_multiplier,
                "maxBackoffTime": self._config.max_backoff_ms,
                "recoveryThreshold": self._config.recovery_threshold,
                "circuitBreaker": {
                    "failureThreshold": cb.failure_threshold,
                    "resetTimeout": cb.reset_timeout_seconds * 1000,
                },
            },
            "currentProvider": self._current,
            "states": {name: s.to_dict() for name, s in self.get_provider_states().items()},
            "events": [e.to_dict() for e in self.get_failover_events()],
            "statistics": self.get_failover_statistics().to_dict(),
            "exportedAt": format_timestamp(self._clock()),
        }
