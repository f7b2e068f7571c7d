"""
Engine Orchestration Module

Single entry point wiring the catalog, provider, analysis, storage and
monitoring layers together.

LAYER FLOW:
===========
1. Catalog:     filesystem -> Company / Technology
2. Analysis:    changed content -> extraction -> correlation
3. Adapter:     ModelRequest -> provider (primary / fallback / failover)
4. Storage:     moments + content hashes
5. Monitoring:  provider health, alerts, failover state
6. Observability: records all layer activity

Layers never reach around the engine into each other's state.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from adapter.agents import SubAgentManager
from adapter.extractor import MomentExtractor
from adapter.providers.base import ModelProviderError, ModelRequest, ModelResponse
from adapter.providers.factory import ProviderFactory
from adapter.usage import UsageTracker

from .analysis import (
    CatalogGaps,
    ContentHashStore,
    CorrelationReport,
    EntityCorrelationAnalyzer,
    IncrementalMomentManager,
    IncrementalOptions,
    IncrementalStats,
)
from .catalog import CatalogLoadResult, CatalogLoader
from .config import ConfigurationError, MomentsConfig
from .contracts import AnalysisScope, MomentAnalysisResult, PivotalMoment, SourceType, utc_now
from .monitoring import FailoverManager, ProviderHealthMonitor
from .observability import AuditEventType, ObservabilityEngine
from .storage import HashFileStore, MomentFileStore, StoreStatus


@dataclass(frozen=True)
class CatalogSnapshot:
    companies: CatalogLoadResult
    technologies: CatalogLoadResult

    @property
    def errors(self) -> List[str]:
        return list(self.companies.errors) + list(self.technologies.errors)

    def gaps(self, scope: AnalysisScope = AnalysisScope.ALL) -> CatalogGaps:
        """What this snapshot failed to read, limited to the scope's source types."""
        source_types = set()
        paths: List[str] = []
        errors: List[str] = []
        for source_type, result in (
            (SourceType.COMPANY, self.companies),
            (SourceType.TECHNOLOGY, self.technologies),
        ):
            if not scope.includes(source_type):
                continue
            if not result.complete:
                source_types.add(source_type)
            paths.extend(result.unreadable)
            errors.extend(result.errors)
        return CatalogGaps(frozenset(source_types), frozenset(paths), tuple(errors))


class MomentsEngine:
    """
    Facade over every layer.

    Extraction requests go through SubAgentManager's primary/fallback
    policy by default, or through the FailoverManager when
    `use_failover` is set.
    """

    def __init__(
        self,
        config: Optional[MomentsConfig] = None,
        root: Optional[Path] = None,
        data_dir: Optional[Path] = None,
        factory: Optional[ProviderFactory] = None,
        observability: Optional[ObservabilityEngine] = None,
        use_failover: bool = False,
        clock: Callable[[], datetime] = utc_now
    ):
        self._config = config or MomentsConfig()
        self._observability = observability or ObservabilityEngine()
        self._clock = clock
        self._use_failover = use_failover

        storage = self._config.storage
        data_dir = Path(data_dir) if data_dir is not None else Path(storage.data_dir)
        self._catalog = CatalogLoader(self._config.catalog, root)
        self._moment_store = MomentFileStore(data_dir / storage.moments_folder)
        self._hash_store = ContentHashStore(HashFileStore(data_dir / storage.hash_file))

        self._factory = factory or ProviderFactory(self._config.provider)
        if self._factory.primary_type is None:
            self._factory.initialize()

        self._usage = UsageTracker(self._config.usage, self._observability, clock)
        self._agents = SubAgentManager(
            self._factory,
            self._config.agents,
            max_parallel_requests=self._config.analysis.max_parallel_requests,
            observability=self._observability,
            usage_tracker=self._usage,
        )
        self._monitor = ProviderHealthMonitor(
            self._factory, self._config.monitoring, self._observability, clock
        )
        self._failover = FailoverManager(
            self._factory, self._monitor, self._config.failover,
            observability=self._observability, clock=clock,
        )

        analysis = self._config.analysis
        self._extractor = MomentExtractor(
            self._send,
            model=analysis.model,
            temperature=analysis.temperature,
            max_tokens=analysis.max_tokens,
            clock=clock,
        )
        self._manager = IncrementalMomentManager(
            self._hash_store, self._moment_store, self._extractor,
            analysis, self._observability, clock,
        )

    # =========================================================================
    # COMPONENTS
    # =========================================================================

    @property
    def config(self) -> MomentsConfig:
        return self._config

    @property
    def observability(self) -> ObservabilityEngine:
        return self._observability

    @property
    def factory(self) -> ProviderFactory:
        return self._factory

    @property
    def agents(self) -> SubAgentManager:
        return self._agents

    @property
    def usage(self) -> UsageTracker:
        return self._usage

    @property
    def monitor(self) -> ProviderHealthMonitor:
        return self._monitor

    @property
    def failover(self) -> FailoverManager:
        return self._failover

    @property
    def moment_store(self) -> MomentFileStore:
        return self._moment_store

    def _send(self, request: ModelRequest) -> ModelResponse:
        if self._use_failover:
            result = self._failover.execute_with_failover(request)
            provider = self._factory.get_provider(result.provider)
            self._usage.record_response(result.response, request, provider)
            return result.response
        return self._agents.send_provider_request(request)

    # =========================================================================
    # CATALOG
    # =========================================================================

    def load_catalog(self) -> CatalogSnapshot:
        snapshot = CatalogSnapshot(
            companies=self._catalog.load_companies(),
            technologies=self._catalog.load_technologies(),
        )
        self._observability.log_audit(
            action="load_catalog",
            outcome="success" if not snapshot.errors else "partial",
            details=(
                f"companies={len(snapshot.companies.entities)} "
                f"technologies={len(snapshot.technologies.entities)} errors={len(snapshot.errors)}"
            ),
            layer="catalog",
            event_type=AuditEventType.CATALOG,
        )
        return snapshot

    def catalog_status(self) -> Dict[str, Any]:
        return self._catalog.catalog_status()

    # =========================================================================
    # ANALYSIS
    # =========================================================================

    async def analyze(
        self,
        scope: AnalysisScope = AnalysisScope.ALL,
        options: Optional[IncrementalOptions] = None
    ) -> MomentAnalysisResult:
        """Load the catalog and run an incremental analysis over it."""
        snapshot = self.load_catalog()
        return await self._manager.analyze_incrementally(
            snapshot.companies.entities,
            snapshot.technologies.entities,
            scope,
            options,
            snapshot.gaps(scope),
        )

    def clear_content_hashes(self):
        self._manager.clear_content_hashes()

    def incremental_stats(self) -> IncrementalStats:
        return self._manager.get_incremental_stats()

    def entity_report(
        self,
        max_entities: int = 20,
        min_cluster_size: int = 3
    ) -> CorrelationReport:
        analyzer = EntityCorrelationAnalyzer(clock=self._clock)
        moments = self.list_moments()
        correlations = analyzer.discover(moments, max_entities=max_entities)
        clusters = analyzer.cluster(correlations, min_cluster_size=min_cluster_size)
        return analyzer.generate_report(correlations, clusters)

    # =========================================================================
    # MOMENTS
    # =========================================================================

    def list_moments(self) -> List[PivotalMoment]:
        return list(self._moment_store.load_all().moments)

    def get_moment(self, moment_id: str) -> Optional[PivotalMoment]:
        return self._moment_store.get(moment_id)

    def delete_moment(self, moment_id: str) -> bool:
        deleted = self._moment_store.delete(moment_id)
        self._observability.log_audit(
            action="delete_moment",
            entity_id=moment_id,
            outcome="success" if deleted else "failure",
            layer="storage",
            event_type=AuditEventType.STORAGE,
        )
        return deleted

    def moments_status(self) -> StoreStatus:
        return self._moment_store.status()

    # =========================================================================
    # PROVIDERS
    # =========================================================================

    def provider_status(self, check: bool = False) -> Dict[str, Any]:
        """Factory selection, monitor status and failover state per provider."""
        if check:
            self._monitor.run_health_checks()
        return {
            "primary": self._factory.primary_type,
            "fallback": self._factory.fallback_type,
            "available": self._factory.available_providers(),
            "health": {name: s.to_dict() for name, s in self._monitor.get_provider_statuses().items()},
            "failover": {
                "currentProvider": self._failover.get_current_provider(),
                "states": {name: s.to_dict() for name, s in self._failover.get_provider_states().items()},
                "statistics": self._failover.get_failover_statistics().to_dict(),
            },
            "cache": self._factory.cache.get_stats().to_dict() if self._factory.cache else None,
            "usage": self._usage.summary(),
        }

    def switch_provider(self, provider_type: str) -> bool:
        try:
            return self._agents.switch_provider(provider_type)
        except (ModelProviderError, ConfigurationError) as e:
            self._observability.log_audit(
                action="switch_provider",
                entity_id=provider_type,
                outcome="failure",
                details=str(e),
                layer="adapter",
                event_type=AuditEventType.PROVIDER,
            )
            return False

    def start_monitoring(self) -> bool:
        return self._monitor.start()

    def shutdown(self):
        self._monitor.stop()

    # =========================================================================
    # OBSERVABILITY
    # =========================================================================

    def get_audit_report(self, since: Optional[datetime] = None) -> Dict:
        return self._observability.generate_audit_report(since)
