"""
Incremental Moment Manager
==========================

Processes only new or changed catalog content, then refreshes the
correlations and impact scores of the temporal windows it touched.

PIPELINE:
=========
1. Flatten catalog entities into (item, source) work items      (10%)
2. Assess changes against the tracked content hashes
3. Extract moments per source group, bounded parallelism       (30-70%)
4. Replace affected moments, correlate impacted windows         (75%)
5. Commit hashes of successful items, persist moments           (100%)

GUARANTEES:
- Per-group and per-item failures are collected into result.errors,
  the run itself never raises on provider or parse failure
- Moments of items whose extraction failed are kept as they were and
  the item's hash is not committed, so it is retried next run
- Moments of removed content are dropped along with its hashes
- Content the catalog failed to read (CatalogGaps) keeps its moments
  and hashes; the load errors are reported in result.errors
"""

from __future__ import annotations
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from adapter.extractor import ExtractionOutcome, MomentExtractor

from ..config import AnalysisConfig
from ..contracts import (
    AgentActivity,
    AnalysisScope,
    AnalysisStep,
    CatalogEntity,
    ChangeSummary,
    Company,
    MomentAnalysisResult,
    MomentSource,
    PivotalMoment,
    StepStatus,
    Technology,
    utc_now,
)
from ..observability import AuditEventType, ObservabilityEngine, get_observability
from ..storage import MomentFileStore, StorageError
from .correlation import TemporalCorrelator, window_key
from .hashing import (
    CatalogGaps,
    ChangeAssessment,
    ContentHashStore,
    HashStats,
    WorkItem,
    make_hash_record,
)


ProgressCallback = Callable[[AnalysisStep], None]
ActivityCallback = Callable[[AgentActivity], None]


@dataclass
class IncrementalOptions:
    """Per-run overrides; None falls back to the manager's AnalysisConfig."""
    on_progress: Optional[ProgressCallback] = None
    on_agent_activity: Optional[ActivityCallback] = None
    temporal_window_days: Optional[int] = None
    correlation_threshold: Optional[float] = None
    force_full_analysis: bool = False


@dataclass(frozen=True)
class IncrementalStats:
    tracked_content: int
    last_update: Optional[datetime]
    temporal_window_days: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "trackedContent": self.tracked_content,
            "lastUpdate": self.last_update.isoformat() if self.last_update else None,
            "temporalWindowDays": self.temporal_window_days,
        }


def flatten_catalog(
    companies: Iterable[Company],
    technologies: Iterable[Technology],
    scope: AnalysisScope = AnalysisScope.ALL
) -> List[WorkItem]:
    """(item, source) pairs for every content item of the in-scope entities."""
    work: List[WorkItem] = []
    entities: List[CatalogEntity] = list(companies) + list(technologies)
    for entity in entities:
        if not scope.includes(entity.source_type):
            continue
        for item in entity.content:
            work.append((item, MomentSource(
                type=entity.source_type,
                id=entity.id,
                name=entity.name,
                content_id=item.id,
                file_path=item.path,
            )))
    return work


def group_by_source(work: Sequence[WorkItem]) -> "OrderedDict[str, List[WorkItem]]":
    groups: "OrderedDict[str, List[WorkItem]]" = OrderedDict()
    for item, source in work:
        groups.setdefault(source.key, []).append((item, source))
    return groups


class IncrementalMomentManager:

    def __init__(
        self,
        hash_store: ContentHashStore,
        moment_store: MomentFileStore,
        extractor: MomentExtractor,
        config: Optional[AnalysisConfig] = None,
        observability: Optional[ObservabilityEngine] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self._hashes = hash_store
        self._store = moment_store
        self._extractor = extractor
        self._config = config or AnalysisConfig()
        self._observability = observability or get_observability()
        self._clock = clock
        self._window_days = self._config.temporal_window_days

    @property
    def config(self) -> AnalysisConfig:
        return self._config

    async def analyze_incrementally(
        self,
        companies: Sequence[Company],
        technologies: Sequence[Technology],
        scope: AnalysisScope = AnalysisScope.ALL,
        options: Optional[IncrementalOptions] = None,
        gaps: Optional[CatalogGaps] = None
    ) -> MomentAnalysisResult:
        options = options or IncrementalOptions()
        gaps = gaps or CatalogGaps()
        started = time.monotonic()
        window_days = options.temporal_window_days or self._config.temporal_window_days
        threshold = options.correlation_threshold
        if threshold is None:
            threshold = self._config.correlation_threshold
        self._window_days = window_days

        def progress(step_id: str, name: str, status: StepStatus, percent: int, details: str = ""):
            if options.on_progress is not None:
                options.on_progress(AnalysisStep(step_id, name, status, percent, details))

        progress("incremental-assessment", "Assessing content changes", StepStatus.RUNNING, 10,
                 "Comparing current content with previous analysis")

        loaded = self._store.load_all()
        errors: List[str] = list(gaps.errors) + list(loaded.errors)
        existing = list(loaded.moments)

        work = flatten_catalog(companies, technologies, scope)
        assessment = self._hashes.assess(work, existing, window_days, scope, gaps)
        to_process = self._select_work(assessment, options.force_full_analysis)

        self._observability.log_audit(
            action="change_assessment",
            details=(
                f"new={len(assessment.new_items)} modified={len(assessment.modified_items)} "
                f"unchanged={len(assessment.unchanged_items)} removed={len(assessment.removed_ids)}"
            ),
            layer="analysis",
            event_type=AuditEventType.ANALYSIS,
        )
        self._observability.collect_metric("content_changed_total", len(assessment.changed_items))

        if not to_process and not assessment.removed_ids:
            progress("incremental-complete", "No changes detected", StepStatus.COMPLETED, 100,
                     "All content unchanged since last analysis")
            return MomentAnalysisResult(
                moments=tuple(existing),
                total_processed=len(assessment.unchanged_items),
                processing_time_ms=self._elapsed_ms(started),
                errors=tuple(errors),
                change_summary=self._summary(assessment, 0, ()),
            )

        # Extraction
        outcomes: List[ExtractionOutcome] = []
        if to_process:
            outcomes = await self._extract(to_process, assessment, options, progress, errors)

        # Merge and correlate
        succeeded = {o.content_id for o in outcomes if o.success}
        replaced_sources = succeeded | set(assessment.removed_ids)
        replaced = [m for m in existing if m.source.content_id in replaced_sources]
        kept = [m for m in existing if m.source.content_id not in replaced_sources]
        new_moments = [m for o in outcomes if o.success for m in o.moments]

        windows: Set[str] = {window_key(m.extracted_at, window_days) for m in replaced}
        windows |= {window_key(m.extracted_at, window_days) for m in new_moments}

        progress("correlation-update", "Updating correlations", StepStatus.RUNNING, 75,
                 f"Processing {len(windows)} temporal windows")

        correlator = TemporalCorrelator(window_days, threshold, self._clock)
        correlated = correlator.correlate_windows(kept + new_moments, windows)
        moments = list(correlated.moments)
        self._observability.collect_metric("correlations_found_total", len(correlated.correlations))

        # Persist
        self._commit(work, succeeded, assessment.removed_ids, errors)
        self._persist(moments, errors)

        processing_time_ms = self._elapsed_ms(started)
        self._observability.collect_metric("analysis_duration_ms", processing_time_ms)
        self._observability.collect_metric("moments_extracted_total", len(new_moments))
        self._observability.log_audit(
            action="incremental_analysis",
            outcome="success" if not errors else "partial",
            details=f"processed={len(to_process)} new_moments={len(new_moments)} errors={len(errors)}",
            layer="analysis",
            event_type=AuditEventType.ANALYSIS,
        )

        progress("incremental-complete", "Incremental analysis complete", StepStatus.COMPLETED, 100,
                 f"Processed {len(to_process)} items, found {len(new_moments)} new moments")

        return MomentAnalysisResult(
            moments=tuple(moments),
            total_processed=len(to_process),
            processing_time_ms=processing_time_ms,
            errors=tuple(errors),
            correlations=correlated.correlations,
            change_summary=self._summary(assessment, len(replaced), correlated.windows),
        )

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    @staticmethod
    def _select_work(assessment: ChangeAssessment, force: bool) -> List[WorkItem]:
        if force:
            return list(assessment.changed_items + assessment.unchanged_items)
        return list(assessment.changed_items)

    async def _extract(
        self,
        to_process: Sequence[WorkItem],
        assessment: ChangeAssessment,
        options: IncrementalOptions,
        progress: Callable[..., None],
        errors: List[str]
    ) -> List[ExtractionOutcome]:
        groups = group_by_source(to_process)
        progress("incremental-processing", f"Processing {len(to_process)} changed items",
                 StepStatus.RUNNING, 30,
                 f"{len(assessment.new_items)} new, {len(assessment.modified_items)} modified")

        def on_done(outcome: ExtractionOutcome):
            if options.on_agent_activity is None:
                return
            options.on_agent_activity(AgentActivity(
                agent_name="moment_extractor",
                action=f"Analyzed {outcome.content_id}",
                timestamp=self._clock(),
                status=StepStatus.COMPLETED if outcome.success else StepStatus.ERROR,
                details=outcome.error or f"{len(outcome.moments)} moments",
            ))

        outcomes: List[ExtractionOutcome] = []
        for done, (_, items) in enumerate(groups.items(), start=1):
            source_name = items[0][1].name
            try:
                group_outcomes = await self._extractor.extract_many(
                    items, self._config.max_parallel_requests, on_done
                )
            except Exception as e:
                # Per-group isolation: other groups still complete
                errors.append(f"Failed to process {source_name}: {e}")
                self._observability.log_audit(
                    action="extract_group",
                    entity_id=source_name,
                    outcome="failure",
                    details=str(e),
                    layer="analysis",
                    event_type=AuditEventType.ANALYSIS,
                )
                group_outcomes = []
            for outcome in group_outcomes:
                if outcome.error:
                    errors.append(outcome.error)
            outcomes.extend(group_outcomes)
            progress("incremental-processing", "Processing changed content", StepStatus.RUNNING,
                     30 + round(done / len(groups) * 40),
                     f"Completed {source_name} ({done}/{len(groups)})")
        return outcomes

    def _commit(
        self,
        work: Sequence[WorkItem],
        succeeded: Set[str],
        removed_ids: Sequence[str],
        errors: List[str]
    ):
        records = [make_hash_record(item, source) for item, source in work if item.id in succeeded]
        try:
            self._hashes.commit(records)
            self._hashes.forget(removed_ids)
        except StorageError as e:
            errors.append(f"Failed to save content hashes: {e}")

    def _persist(self, moments: Sequence[PivotalMoment], errors: List[str]):
        try:
            saved = self._store.save_all(moments)
        except StorageError as e:
            errors.append(f"Failed to save moments: {e}")
            self._observability.log_audit(
                action="save_moments", outcome="failure", details=str(e),
                layer="storage", event_type=AuditEventType.STORAGE,
            )
            return
        for moment_id in saved.failed:
            errors.append(f"Failed to save moment {moment_id}")
        self._observability.collect_metric("storage_write_total", len(saved.saved))

    def _summary(
        self,
        assessment: ChangeAssessment,
        affected_moments: int,
        windows: Tuple[str, ...]
    ) -> ChangeSummary:
        return ChangeSummary(
            new_items=len(assessment.new_items),
            modified_items=len(assessment.modified_items),
            unchanged_items=len(assessment.unchanged_items),
            removed_items=len(assessment.removed_ids),
            affected_moments=affected_moments,
            affected_windows=tuple(sorted(windows)),
        )

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.monotonic() - started) * 1000, 2)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def clear_content_hashes(self):
        """Forget every tracked hash so the next run re-analyses everything."""
        self._hashes.clear()
        self._observability.log_audit(
            action="clear_content_hashes",
            details="next analysis will be full",
            layer="analysis",
            event_type=AuditEventType.ANALYSIS,
        )

    def get_incremental_stats(self) -> IncrementalStats:
        stats: HashStats = self._hashes.stats()
        return IncrementalStats(
            tracked_content=stats.tracked_content,
            last_update=stats.last_update,
            temporal_window_days=self._window_days,
        )
