"""
Monitoring Layer

RESPONSIBILITY: Track provider health, raise alerts, route around failing providers
INPUTS: ProviderFactory, MonitoringConfig, FailoverConfig
OUTPUTS: ProviderStatus, HealthAlert, FailoverResult
"""

from .health import (
    AlertType,
    HealthAlert,
    HealthMetrics,
    HealthStatistics,
    ProviderHealthMonitor,
    ProviderStatus,
)
from .failover import (
    FailoverEvent,
    FailoverEventType,
    FailoverManager,
    FailoverResult,
    FailoverStatistics,
    ProviderState,
)

__all__ = [
    'AlertType',
    'HealthAlert',
    'HealthMetrics',
    'HealthStatistics',
    'ProviderHealthMonitor',
    'ProviderStatus',
    'FailoverEvent',
    'FailoverEventType',
    'FailoverManager',
    'FailoverResult',
    'FailoverStatistics',
    'ProviderState',
]
