"""
Provider-Aware Sub-Agents
=========================

Four specialised agents running on top of the provider factory:

- content_analyzer:      key phrases, sentiment and importance per content item
- classification_agent:  enhanced factor classification + risk per moment
- correlation_engine:    moment-to-moment correlations and insights
- report_generator:      narrative report over moments and correlations

BATCHING:
=========
Large inputs are chunked into batches of `parallel_batch_size`. Batches
run concurrently with asyncio.gather, bounded by a semaphore of
`max_parallel_requests`. Token usage is summed across batches.

REQUEST POLICY (send_provider_request):
=======================================
1. Primary provider
2. On failure, the fallback provider once (first attempt only)
3. If the primary failure is retryable, back off 2^n * base seconds and
   go to 1, at most `max_retries` times

Every provider response is recorded in the UsageTracker with its
estimated cost.

GUARANTEES:
- Agent calls never raise on provider or parse failure
- Parse failures yield empty results (or the default report)
"""

from __future__ import annotations
import asyncio
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from moments.config import AgentSettings, AgentsConfig
from moments.contracts import (
    AgentActivity,
    ConfidenceLevel,
    ContentItem,
    CorrelationType,
    MACRO_FACTORS,
    MICRO_FACTORS,
    MomentClassification,
    MomentCorrelation,
    PivotalMoment,
    StepStatus,
    utc_now,
)
from moments.contracts.base import as_str_tuple
from moments.observability import AuditEventType, ObservabilityEngine, get_observability

from .parsing import parse_json_array, parse_json_object
from .prompts import PromptTemplates, RenderedPrompt
from .providers.base import ModelProvider, ModelRequest, ModelResponse, TokenUsage
from .providers.factory import ProviderFactory
from .usage import UsageTracker


T = TypeVar("T")


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class AgentResponse:
    success: bool
    data: Any = None
    error: Optional[str] = None
    processing_time_ms: float = 0.0
    usage: TokenUsage = TokenUsage()
    batches: int = 0
    failed_batches: int = 0


@dataclass(frozen=True)
class ContentSection:
    title: str
    content: str
    type: str = "analysis"


@dataclass(frozen=True)
class ContentAnalysis:
    content_id: str
    extracted_text: str
    key_phrases: Tuple[str, ...]
    sentiment: str
    importance: int
    sections: Tuple[ContentSection, ...] = ()


@dataclass(frozen=True)
class ClassificationResult:
    moment_id: str
    classification: MomentClassification
    risk_level: str = "low"
    risk_factors: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CorrelationInsight:
    type: str
    description: str
    moment_ids: Tuple[str, ...]
    confidence: float


@dataclass(frozen=True)
class CorrelationFindings:
    correlations: Tuple[MomentCorrelation, ...] = ()
    insights: Tuple[CorrelationInsight, ...] = ()


@dataclass(frozen=True)
class ReportSection:
    title: str
    content: str


@dataclass(frozen=True)
class AnalysisReport:
    title: str
    summary: str
    sections: Tuple[ReportSection, ...] = ()
    recommendations: Tuple[str, ...] = ()
    risk_factors: Tuple[str, ...] = ()
    opportunities: Tuple[str, ...] = ()

    @staticmethod
    def default() -> AnalysisReport:
        return AnalysisReport(
            title="Analysis Report",
            summary="Report generation encountered an error",
        )


SENTIMENTS = ("positive", "negative", "neutral")
RISK_LEVELS = ("low", "medium", "high", "critical")
INSIGHT_TYPES = ("trend", "pattern", "anomaly", "cluster")


def chunk(items: Sequence[T], size: int) -> List[List[T]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


# =============================================================================
# MANAGER
# =============================================================================

class SubAgentManager:
    """Runs the sub-agents against the factory's primary/fallback providers."""

    def __init__(
        self,
        factory: ProviderFactory,
        agents: Optional[AgentsConfig] = None,
        max_parallel_requests: int = 4,
        auto_fallback: bool = True,
        max_retries: int = 2,
        backoff_base_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        on_activity: Optional[Callable[[AgentActivity], None]] = None,
        observability: Optional[ObservabilityEngine] = None,
        usage_tracker: Optional[UsageTracker] = None
    ):
        self._factory = factory
        self._agents = agents or AgentsConfig()
        self._max_parallel = max(1, max_parallel_requests)
        self._auto_fallback = auto_fallback
        self._max_retries = max_retries
        self._backoff_base = backoff_base_seconds
        self._sleep = sleep
        self._on_activity = on_activity
        self._observability = observability or get_observability()
        self._usage = usage_tracker or UsageTracker(observability=self._observability)
        self._last_health: Dict[str, bool] = {}

    @property
    def agents(self) -> AgentsConfig:
        return self._agents

    @property
    def usage(self) -> UsageTracker:
        return self._usage

    def update_agents(self, **changes: AgentSettings):
        for name, settings in changes.items():
            if not hasattr(self._agents, name):
                raise ValueError(f"Unknown agent: {name}")
            setattr(self._agents, name, settings)

    # -------------------------------------------------------------------------
    # Request policy
    # -------------------------------------------------------------------------

    def send_provider_request(self, request: ModelRequest, retry_count: int = 0) -> ModelResponse:
        """Primary, then fallback once, then retry with exponential backoff."""
        primary = self._factory.get_primary()
        response = primary.send_request(request)
        self._record(primary, request, response)
        if response.success:
            return response

        if retry_count == 0 and self._auto_fallback:
            fallback = self._factory.get_fallback()
            if fallback is not None:
                fallback_response = fallback.send_request(request)
                self._record(fallback, request, fallback_response)
                if fallback_response.success:
                    return fallback_response

        if response.retryable and retry_count < self._max_retries:
            delay = response.retry_after or self._backoff_base * (2 ** retry_count)
            self._sleep(delay)
            return self.send_provider_request(request, retry_count + 1)

        return response

    def _record(self, provider: ModelProvider, request: ModelRequest, response: ModelResponse):
        self._usage.record_response(response, request, provider)
        outcome = "success" if response.success else "failure"
        self._observability.collect_metric(
            "provider_requests_total", 1,
            {"provider": response.provider, "outcome": outcome},
        )
        self._observability.collect_metric(
            "provider_latency_ms", response.latency_ms, {"provider": response.provider},
        )
        if not response.success:
            self._observability.log_audit(
                action="provider_request",
                entity_id=response.provider,
                outcome="failure",
                details=f"{response.error_code.value}: {response.error_message}",
                layer="adapter",
                event_type=AuditEventType.PROVIDER,
            )

    def _activity(self, agent: str, action: str, status: StepStatus = StepStatus.RUNNING, details: str = ""):
        if self._on_activity is not None:
            self._on_activity(AgentActivity(
                agent_name=agent,
                action=action,
                timestamp=utc_now(),
                status=status,
                details=details,
            ))

    async def _run_batches(
        self,
        agent: str,
        settings: AgentSettings,
        items: Sequence[T],
        render: Callable[[List[T]], RenderedPrompt],
        batch_size: Optional[int] = None,
        use_parallel_batches: bool = True
    ) -> Tuple[List[ModelResponse], int]:
        if not items:
            return [], 0
        size = batch_size or settings.parallel_batch_size
        parallel = use_parallel_batches and settings.enable_parallel_batches
        batches = chunk(items, size) if parallel and len(items) > size else [list(items)]
        semaphore = asyncio.Semaphore(self._max_parallel)

        async def run(index: int, batch: List[T]) -> ModelResponse:
            prompt = render(batch)
            request = ModelRequest.create(
                prompt.text,
                model=settings.model,
                max_tokens=settings.max_tokens,
                temperature=settings.temperature,
                task=prompt.task_type,
            )
            async with semaphore:
                self._activity(agent, f"batch {index + 1}/{len(batches)}", details=f"{len(batch)} items")
                return await asyncio.to_thread(self.send_provider_request, request)

        responses = await asyncio.gather(*(run(i, b) for i, b in enumerate(batches)))
        return list(responses), len(batches)

    @staticmethod
    def _summarize(responses: Sequence[ModelResponse]) -> Tuple[TokenUsage, List[str]]:
        usage = TokenUsage()
        errors = []
        for response in responses:
            usage = usage + response.usage
            if not response.success:
                errors.append(f"{response.provider}: {response.error_message or response.error_code.value}")
        return usage, errors

    def _finish(
        self,
        agent: str,
        started: float,
        data: Any,
        responses: Sequence[ModelResponse],
        batches: int
    ) -> AgentResponse:
        usage, errors = self._summarize(responses)
        success = not errors
        self._activity(
            agent, "completed" if success else "failed",
            StepStatus.COMPLETED if success else StepStatus.ERROR,
            "; ".join(errors),
        )
        self._observability.log_audit(
            action=f"agent_{agent}",
            outcome="success" if success else "failure",
            details=f"batches={batches} failed={len(errors)} tokens={usage.total_tokens}",
            layer="adapter",
            event_type=AuditEventType.ANALYSIS,
        )
        return AgentResponse(
            success=success,
            data=data,
            error="; ".join(errors) or None,
            processing_time_ms=(time.perf_counter() - started) * 1000.0,
            usage=usage,
            batches=batches,
            failed_batches=len(errors),
        )

    @staticmethod
    def _disabled(agent: str) -> AgentResponse:
        return AgentResponse(success=False, error=f"{agent} is disabled")

    # -------------------------------------------------------------------------
    # Agents
    # -------------------------------------------------------------------------

    async def analyze_content(self, items: Sequence[ContentItem]) -> AgentResponse:
        settings = self._agents.content_analyzer
        if not settings.enabled:
            return self._disabled("content_analyzer")
        started = time.perf_counter()
        analyzable = [item for item in items if item.is_analyzable]
        responses, batches = await self._run_batches(
            "content_analyzer", settings, analyzable, PromptTemplates.content_analysis,
        )
        results: List[ContentAnalysis] = []
        for response in responses:
            if response.success:
                results.extend(parse_content_analysis(response.content))
        return self._finish("content_analyzer", started, tuple(results), responses, batches)

    async def classify_moments(
        self,
        moments: Sequence[PivotalMoment],
        batch_size: Optional[int] = None,
        use_parallel_batches: bool = True
    ) -> AgentResponse:
        settings = self._agents.classification_agent
        if not settings.enabled:
            return self._disabled("classification_agent")
        started = time.perf_counter()
        responses, batches = await self._run_batches(
            "classification_agent", settings, list(moments), PromptTemplates.classification,
            batch_size, use_parallel_batches,
        )
        known = {m.id for m in moments}
        results: List[ClassificationResult] = []
        for response in responses:
            if response.success:
                results.extend(r for r in parse_classifications(response.content) if r.moment_id in known)
        return self._finish("classification_agent", started, tuple(results), responses, batches)

    async def find_correlations(
        self,
        moments: Sequence[PivotalMoment],
        batch_size: Optional[int] = None,
        use_parallel_batches: bool = True
    ) -> AgentResponse:
        settings = self._agents.correlation_engine
        if not settings.enabled:
            return self._disabled("correlation_engine")
        started = time.perf_counter()
        responses, batches = await self._run_batches(
            "correlation_engine", settings, list(moments), PromptTemplates.correlation,
            batch_size, use_parallel_batches,
        )
        known = {m.id for m in moments}
        correlations: List[MomentCorrelation] = []
        insights: List[CorrelationInsight] = []
        for response in responses:
            if response.success:
                findings = parse_correlations(response.content, known)
                correlations.extend(findings.correlations)
                insights.extend(findings.insights)
        data = CorrelationFindings(correlations=tuple(correlations), insights=tuple(insights))
        return self._finish("correlation_engine", started, data, responses, batches)

    async def generate_report(
        self,
        moments: Sequence[PivotalMoment],
        correlations: Sequence[MomentCorrelation],
        report_type: str = "executive_summary",
        timeframe: Optional[str] = None,
        focus_areas: Optional[Sequence[str]] = None
    ) -> AgentResponse:
        settings = self._agents.report_generator
        if not settings.enabled:
            return self._disabled("report_generator")
        started = time.perf_counter()
        prompt = PromptTemplates.report(moments, correlations, report_type, timeframe, focus_areas)
        responses, batches = await self._run_batches(
            "report_generator", settings, [prompt], lambda batch: batch[0], use_parallel_batches=False,
        )
        report = parse_report(responses[0].content) if responses[0].success else AnalysisReport.default()
        return self._finish("report_generator", started, report, responses, batches)

    # -------------------------------------------------------------------------
    # Provider management
    # -------------------------------------------------------------------------

    def check_provider_health(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {}
        primary = self._factory.get_primary()
        check = primary.health_check()
        self._last_health[primary.name] = check.is_healthy
        status["primary"] = check.to_dict()
        fallback = self._factory.get_fallback()
        if fallback is not None:
            check = fallback.health_check()
            self._last_health[fallback.name] = check.is_healthy
            status["fallback"] = check.to_dict()
        return status

    def switch_provider(self, provider_type: str) -> bool:
        """Make provider_type primary if it passes a health check."""
        candidate = self._factory.get_provider(provider_type)
        check = candidate.health_check()
        self._last_health[provider_type] = check.is_healthy
        if not check.is_healthy:
            return False
        previous = self._factory.primary_type
        fallback = self._factory.fallback_type
        if fallback == provider_type:
            fallback = previous
        self._factory.initialize(provider_type, fallback or "")
        self._observability.log_audit(
            action="switch_provider",
            entity_id=provider_type,
            details=f"previous={previous}",
            layer="adapter",
            event_type=AuditEventType.PROVIDER,
        )
        return True

    def get_provider_status(self) -> Dict[str, Any]:
        primary = self._factory.primary_type
        fallback = self._factory.fallback_type
        return {
            "primary": {"type": primary, "healthy": self._last_health.get(primary)},
            "fallback": {"type": fallback, "healthy": self._last_health.get(fallback)} if fallback else None,
            "auto_fallback": self._auto_fallback,
        }


# =============================================================================
# RESPONSE PARSERS (never raise)
# =============================================================================

def _bounded_float(value: Any, low: float, high: float, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return min(high, max(low, number))


def parse_content_analysis(text: Optional[str]) -> List[ContentAnalysis]:
    raw = parse_json_array(text) or []
    results = []
    for entry in raw:
        if not isinstance(entry, dict) or not entry.get("contentId"):
            continue
        sentiment = str(entry.get("sentiment", "neutral")).lower()
        sections = tuple(
            ContentSection(
                title=str(s.get("title", "")),
                content=str(s.get("content", "")),
                type=str(s.get("type", "analysis")),
            )
            for s in entry.get("sections") or [] if isinstance(s, dict)
        )
        results.append(ContentAnalysis(
            content_id=str(entry["contentId"]),
            extracted_text=str(entry.get("extractedText", "")),
            key_phrases=as_str_tuple(entry.get("keyPhrases")),
            sentiment=sentiment if sentiment in SENTIMENTS else "neutral",
            importance=int(_bounded_float(entry.get("importance"), 0, 100, 50)),
            sections=sections,
        ))
    return results


def parse_classifications(text: Optional[str]) -> List[ClassificationResult]:
    raw = parse_json_array(text) or []
    results = []
    for entry in raw:
        if not isinstance(entry, dict) or not entry.get("momentId"):
            continue
        enhanced = entry.get("enhancedClassification") or {}
        risk = entry.get("riskAssessment") or {}
        if not isinstance(enhanced, dict) or not isinstance(risk, dict):
            continue
        level = str(risk.get("level", "low")).lower()
        results.append(ClassificationResult(
            moment_id=str(entry["momentId"]),
            classification=MomentClassification(
                micro_factors=tuple(f for f in as_str_tuple(enhanced.get("microFactors")) if f in MICRO_FACTORS),
                macro_factors=tuple(f for f in as_str_tuple(enhanced.get("macroFactors")) if f in MACRO_FACTORS),
                confidence=ConfidenceLevel.parse(enhanced.get("confidence")),
                reasoning=str(enhanced.get("reasoning") or ""),
                keywords=as_str_tuple(enhanced.get("additionalKeywords")),
            ),
            risk_level=level if level in RISK_LEVELS else "low",
            risk_factors=as_str_tuple(risk.get("factors")),
        ))
    return results


def parse_correlations(text: Optional[str], known_ids: Optional[set] = None) -> CorrelationFindings:
    data = parse_json_object(text)
    if data is None:
        return CorrelationFindings()

    now = utc_now()
    correlations = []
    for entry in data.get("correlations") or []:
        if not isinstance(entry, dict):
            continue
        first, second = entry.get("moment1Id"), entry.get("moment2Id")
        if not first or not second or first == second:
            continue
        if known_ids is not None and (first not in known_ids or second not in known_ids):
            continue
        try:
            kind = CorrelationType(str(entry.get("correlationType", "thematic")).lower())
        except ValueError:
            kind = CorrelationType.THEMATIC
        correlations.append(MomentCorrelation(
            id=f"corr-{first}-{second}",
            moment1_id=str(first),
            moment2_id=str(second),
            correlation_type=kind,
            strength=_bounded_float(entry.get("strength"), 0.0, 1.0, 0.0),
            description=str(entry.get("description") or ""),
            common_factors=as_str_tuple(entry.get("commonFactors")),
            discovered_at=now,
        ))

    insights = []
    for entry in data.get("insights") or []:
        if not isinstance(entry, dict):
            continue
        kind = str(entry.get("type", "pattern")).lower()
        insights.append(CorrelationInsight(
            type=kind if kind in INSIGHT_TYPES else "pattern",
            description=str(entry.get("description") or ""),
            moment_ids=as_str_tuple(entry.get("momentIds")),
            confidence=_bounded_float(entry.get("confidence"), 0.0, 1.0, 0.5),
        ))

    return CorrelationFindings(correlations=tuple(correlations), insights=tuple(insights))


def parse_report(text: Optional[str]) -> AnalysisReport:
    data = parse_json_object(text)
    report = data.get("report") if data else None
    if not isinstance(report, dict):
        return AnalysisReport.default()
    return AnalysisReport(
        title=str(report.get("title") or "Analysis Report"),
        summary=str(report.get("summary") or ""),
        sections=tuple(
            ReportSection(title=str(s.get("title", "")), content=str(s.get("content", "")))
            for s in report.get("sections") or [] if isinstance(s, dict)
        ),
        recommendations=as_str_tuple(report.get("recommendations")),
        risk_factors=as_str_tuple(report.get("riskFactors")),
        opportunities=as_str_tuple(report.get("opportunities")),
    )


def apply_classifications(
    moments: Sequence[PivotalMoment],
    results: Sequence[ClassificationResult]
) -> List[PivotalMoment]:
    """Merge agent classifications into moments (union of factors and keywords)."""
    by_id = {r.moment_id: r.classification for r in results}
    merged = []
    for moment in moments:
        enhanced = by_id.get(moment.id)
        if enhanced is None:
            merged.append(moment)
            continue
        current = moment.classification
        merged.append(replace(moment, classification=MomentClassification(
            micro_factors=_union(current.micro_factors, enhanced.micro_factors),
            macro_factors=_union(current.macro_factors, enhanced.macro_factors),
            confidence=enhanced.confidence,
            reasoning=enhanced.reasoning or current.reasoning,
            keywords=_union(current.keywords, enhanced.keywords),
        )))
    return merged


def _union(first: Tuple[str, ...], second: Tuple[str, ...]) -> Tuple[str, ...]:
    return tuple(dict.fromkeys(first + second))
