"""
Moment Contracts
================

Immutable types for pivotal moments, their correlations and the
result envelope of an analysis run.

WHY FROZEN: Moments flow through extraction, correlation and storage.
Every change (e.g. an impact boost) produces a new value via
dataclasses.replace, so no layer can mutate another layer's view.

Serialized form uses camelCase keys so files written by earlier
dashboard versions load unchanged.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .base import (
    SourceType,
    as_str_tuple,
    format_timestamp,
    parse_timestamp,
    utc_now,
)


# =============================================================================
# FACTOR TAXONOMY
# =============================================================================

class MicroFactor(Enum):
    COMPANY = "company"
    COMPETITION = "competition"
    PARTNERS = "partners"
    CUSTOMERS = "customers"


class MacroFactor(Enum):
    ECONOMIC = "economic"
    GEO_POLITICAL = "geo_political"
    REGULATION = "regulation"
    TECHNOLOGY = "technology"
    ENVIRONMENT = "environment"
    SUPPLY_CHAIN = "supply_chain"


MICRO_FACTORS: Tuple[str, ...] = tuple(f.value for f in MicroFactor)
MACRO_FACTORS: Tuple[str, ...] = tuple(f.value for f in MacroFactor)


class ConfidenceLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @staticmethod
    def parse(value: Any, default: ConfidenceLevel = None) -> ConfidenceLevel:
        try:
            return ConfidenceLevel(str(value).lower())
        except ValueError:
            return default or ConfidenceLevel.MEDIUM


class CorrelationType(Enum):
    CAUSAL = "causal"
    TEMPORAL = "temporal"
    THEMATIC = "thematic"
    COMPETITIVE = "competitive"


# =============================================================================
# MOMENT PARTS
# =============================================================================

@dataclass(frozen=True)
class MomentSource:
    type: SourceType
    id: str
    name: str
    content_id: Optional[str] = None
    file_path: Optional[str] = None

    @property
    def key(self) -> str:
        """Grouping key used for per-source extraction batches."""
        return f"{self.type.value}:{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "id": self.id,
            "name": self.name,
            "contentId": self.content_id,
            "filePath": self.file_path,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> MomentSource:
        return MomentSource(
            type=SourceType(data.get("type", "company")),
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            content_id=data.get("contentId"),
            file_path=data.get("filePath"),
        )


@dataclass(frozen=True)
class MomentClassification:
    micro_factors: Tuple[str, ...] = ()
    macro_factors: Tuple[str, ...] = ()
    confidence: ConfidenceLevel = ConfidenceLevel.MEDIUM
    reasoning: str = ""
    keywords: Tuple[str, ...] = ()

    @property
    def all_factors(self) -> Tuple[str, ...]:
        return self.micro_factors + self.macro_factors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "microFactors": list(self.micro_factors),
            "macroFactors": list(self.macro_factors),
            "confidence": self.confidence.value,
            "reasoning": self.reasoning,
            "keywords": list(self.keywords),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> MomentClassification:
        return MomentClassification(
            micro_factors=tuple(f for f in as_str_tuple(data.get("microFactors")) if f in MICRO_FACTORS),
            macro_factors=tuple(f for f in as_str_tuple(data.get("macroFactors")) if f in MACRO_FACTORS),
            confidence=ConfidenceLevel.parse(data.get("confidence")),
            reasoning=str(data.get("reasoning") or ""),
            keywords=as_str_tuple(data.get("keywords")),
        )


@dataclass(frozen=True)
class MomentImpact:
    """
    Impact score in [0, 100].

    `base_score` is the score before temporal correlation boosts.
    `score` is always min(100, base_score + boost).
    """
    score: int
    reasoning: str = ""
    base_score: Optional[int] = None

    def __post_init__(self):
        if not 0 <= self.score <= 100:
            raise ValueError(f"Impact score out of range: {self.score}")

    @property
    def unboosted(self) -> int:
        return self.base_score if self.base_score is not None else self.score

    def with_boost(self, boost: int) -> MomentImpact:
        base = self.unboosted
        return replace(self, base_score=base, score=min(100, base + max(0, boost)))

    def to_dict(self) -> Dict[str, Any]:
        data = {"score": self.score, "reasoning": self.reasoning}
        if self.base_score is not None:
            data["baseScore"] = self.base_score
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> MomentImpact:
        score = data.get("score", 50)
        base = data.get("baseScore")
        return MomentImpact(
            score=max(0, min(100, int(score))),
            reasoning=str(data.get("reasoning") or ""),
            base_score=max(0, min(100, int(base))) if base is not None else None,
        )


@dataclass(frozen=True)
class MomentEntities:
    companies: Tuple[str, ...] = ()
    technologies: Tuple[str, ...] = ()
    people: Tuple[str, ...] = ()
    locations: Tuple[str, ...] = ()

    def all(self) -> Tuple[str, ...]:
        return self.companies + self.technologies + self.people + self.locations

    def to_dict(self) -> Dict[str, Any]:
        return {
            "companies": list(self.companies),
            "technologies": list(self.technologies),
            "people": list(self.people),
            "locations": list(self.locations),
        }

    @staticmethod
    def from_dict(data: Optional[Dict[str, Any]]) -> MomentEntities:
        data = data or {}
        return MomentEntities(
            companies=as_str_tuple(data.get("companies")),
            technologies=as_str_tuple(data.get("technologies")),
            people=as_str_tuple(data.get("people")),
            locations=as_str_tuple(data.get("locations")),
        )


@dataclass(frozen=True)
class MomentTimeline:
    estimated_date: Optional[datetime] = None
    timeframe: Optional[str] = None
    is_historical: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "estimatedDate": format_timestamp(self.estimated_date),
            "timeframe": self.timeframe,
            "isHistorical": self.is_historical,
        }

    @staticmethod
    def from_dict(data: Optional[Dict[str, Any]]) -> MomentTimeline:
        data = data or {}
        return MomentTimeline(
            estimated_date=parse_timestamp(data.get("estimatedDate")),
            timeframe=data.get("timeframe") or None,
            is_historical=bool(data.get("isHistorical", False)),
        )


# =============================================================================
# PIVOTAL MOMENT
# =============================================================================

@dataclass(frozen=True)
class PivotalMoment:
    """An LLM-extracted business event with its classification."""
    id: str
    title: str
    description: str
    content: str
    source: MomentSource
    classification: MomentClassification
    extracted_at: datetime
    impact: MomentImpact
    entities: MomentEntities = field(default_factory=MomentEntities)
    timeline: MomentTimeline = field(default_factory=MomentTimeline)

    def with_impact(self, impact: MomentImpact) -> PivotalMoment:
        return replace(self, impact=impact)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "content": self.content,
            "source": self.source.to_dict(),
            "classification": self.classification.to_dict(),
            "extractedAt": format_timestamp(self.extracted_at),
            "impact": self.impact.to_dict(),
            "entities": self.entities.to_dict(),
            "timeline": self.timeline.to_dict(),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> PivotalMoment:
        return PivotalMoment(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            description=str(data.get("description", "")),
            content=str(data.get("content", "")),
            source=MomentSource.from_dict(data.get("source") or {}),
            classification=MomentClassification.from_dict(data.get("classification") or {}),
            extracted_at=parse_timestamp(data.get("extractedAt")) or utc_now(),
            impact=MomentImpact.from_dict(data.get("impact") or {}),
            entities=MomentEntities.from_dict(data.get("entities")),
            timeline=MomentTimeline.from_dict(data.get("timeline")),
        )


@dataclass(frozen=True)
class MomentCorrelation:
    id: str
    moment1_id: str
    moment2_id: str
    correlation_type: CorrelationType
    strength: float
    description: str
    discovered_at: datetime
    common_factors: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "moment1Id": self.moment1_id,
            "moment2Id": self.moment2_id,
            "correlationType": self.correlation_type.value,
            "strength": self.strength,
            "description": self.description,
            "commonFactors": list(self.common_factors),
            "discoveredAt": format_timestamp(self.discovered_at),
        }


# =============================================================================
# PROGRESS AND RESULTS
# =============================================================================

class StepStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class AnalysisStep:
    """Progress notification emitted during an analysis run."""
    id: str
    name: str
    status: StepStatus
    progress: int
    details: str = ""


@dataclass(frozen=True)
class AgentActivity:
    """What a sub-agent is doing right now (for progress UIs)."""
    agent_name: str
    action: str
    timestamp: datetime
    status: StepStatus = StepStatus.RUNNING
    details: str = ""


@dataclass(frozen=True)
class ChangeSummary:
    new_items: int = 0
    modified_items: int = 0
    unchanged_items: int = 0
    removed_items: int = 0
    affected_moments: int = 0
    affected_windows: Tuple[str, ...] = ()


@dataclass(frozen=True)
class MomentAnalysisResult:
    moments: Tuple[PivotalMoment, ...]
    total_processed: int
    processing_time_ms: float
    errors: Tuple[str, ...] = ()
    correlations: Tuple[MomentCorrelation, ...] = ()
    change_summary: ChangeSummary = field(default_factory=ChangeSummary)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        summary = self.change_summary
        return {
            "moments": [m.to_dict() for m in self.moments],
            "totalProcessed": self.total_processed,
            "processingTime": self.processing_time_ms,
            "errors": list(self.errors),
            "correlations": [c.to_dict() for c in self.correlations],
            "changes": {
                "new": summary.new_items,
                "modified": summary.modified_items,
                "unchanged": summary.unchanged_items,
                "removed": summary.removed_items,
                "affectedMoments": summary.affected_moments,
                "affectedWindows": list(summary.affected_windows),
            },
        }

