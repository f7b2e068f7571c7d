"""
Entity Correlation Analysis
===========================

Statistical relationships between entities (companies, technologies,
people, locations, keywords) mentioned across moments.

METHODS:
========
- Pearson coefficient over impact scores of the moments mentioning
  each entity (0 where an entity is absent from a moment)
- Co-occurrence significance: chi-square (1 dof) when the expected
  count is >= 5, otherwise a hypergeometric z-test
- Temporal stability: 1 - variance of the per-window coefficient over
  windows overlapping by 50%
- Average-linkage agglomerative clustering of the resulting graph

Computation only. Nothing here is persisted.
"""

from __future__ import annotations
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Sequence, Tuple
import math

import numpy as np

from ..contracts import PivotalMoment, utc_now


STRENGTH_LEVELS: Tuple[Tuple[str, float], ...] = (
    ("very_strong", 0.8),
    ("strong", 0.6),
    ("moderate", 0.4),
    ("weak", 0.2),
    ("very_weak", 0.1),
)

SIGNIFICANCE_LEVELS: Tuple[Tuple[str, float], ...] = (
    ("very_high", 0.05),
    ("high", 0.10),
    ("medium", 0.20),
)

CLUSTER_STOP_LINKAGE = 0.2
SHARED_FACTOR_RATIO = 0.5


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class StabilityWindow:
    window_start: datetime
    window_end: datetime
    correlation: float
    moment_count: int
    significance: float


@dataclass(frozen=True)
class EntityCorrelation:
    entity1: str
    entity2: str
    entity1_type: str
    entity2_type: str
    coefficient: float
    p_value: float
    significance: str
    strength: str
    temporal_stability: float
    cooccurrence_count: int
    total_occurrences1: int
    total_occurrences2: int
    common_moments: Tuple[str, ...]
    shared_factors: Tuple[str, ...]
    impact_correlation: float
    windows: Tuple[StabilityWindow, ...] = ()

    def to_dict(self) -> Dict[str, object]:
        return {
            "entity1": self.entity1,
            "entity2": self.entity2,
            "entity1Type": self.entity1_type,
            "entity2Type": self.entity2_type,
            "correlationCoefficient": self.coefficient,
            "pValue": self.p_value,
            "significance": self.significance,
            "strength": self.strength,
            "temporalStability": self.temporal_stability,
            "cooccurrenceCount": self.cooccurrence_count,
            "commonMoments": list(self.common_moments),
            "sharedFactors": list(self.shared_factors),
            "impactCorrelation": self.impact_correlation,
        }


@dataclass(frozen=True)
class ClusterMember:
    entity: str
    type: str
    centrality: float


@dataclass(frozen=True)
class EntityCluster:
    cluster_id: str
    entities: Tuple[str, ...]
    average_correlation: float
    dominant_type: str
    description: str
    members: Tuple[ClusterMember, ...] = ()

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.cluster_id,
            "entities": list(self.entities),
            "averageCorrelation": self.average_correlation,
            "dominantType": self.dominant_type,
            "description": self.description,
            "members": [
                {"entity": m.entity, "type": m.type, "centrality": m.centrality} for m in self.members
            ],
        }


@dataclass(frozen=True)
class CorrelationReport:
    total_correlations: int
    significant_correlations: int
    average_strength: float
    temporal_stability: float
    top_correlations: Tuple[EntityCorrelation, ...] = ()
    strongest_clusters: Tuple[EntityCluster, ...] = ()
    insights: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, object]:
        return {
            "totalCorrelations": self.total_correlations,
            "significantCorrelations": self.significant_correlations,
            "averageStrength": self.average_strength,
            "temporalStability": self.temporal_stability,
            "topCorrelations": [c.to_dict() for c in self.top_correlations],
            "strongestClusters": [c.to_dict() for c in self.strongest_clusters],
            "insights": list(self.insights),
        }


# =============================================================================
# STATISTICS
# =============================================================================

def pearson(x: Sequence[float], y: Sequence[float]) -> float:
    """Pearson r; 0 for mismatched, empty or constant input."""
    if len(x) != len(y) or len(x) == 0:
        return 0.0
    a = np.asarray(x, dtype=float)
    b = np.asarray(y, dtype=float)
    da = a - a.mean()
    db = b - b.mean()
    denominator = math.sqrt(float(np.dot(da, da)) * float(np.dot(db, db)))
    if denominator == 0:
        return 0.0
    return float(np.dot(da, db) / denominator)


def normal_cdf(x: float) -> float:
    return 0.5 * (1 + math.erf(x / math.sqrt(2)))


def cooccurrence_p_value(observed: int, total1: int, total2: int, population: int) -> float:
    if population <= 0:
        return 1.0
    expected = total1 * total2 / population
    if expected >= 5:
        chi_square = (observed - expected) ** 2 / expected
        return math.erfc(math.sqrt(chi_square / 2))
    if population <= 1:
        return 1.0
    variance = expected * (1 - total2 / population) * (population - total1) / (population - 1)
    if variance <= 0:
        return 1.0
    z = (observed - expected) / math.sqrt(variance)
    return 2 * (1 - normal_cdf(abs(z)))


def classify_significance(p_value: float) -> str:
    for label, limit in SIGNIFICANCE_LEVELS:
        if p_value < limit:
            return label
    return "low"


def classify_strength(coefficient: float) -> str:
    magnitude = abs(coefficient)
    for label, limit in STRENGTH_LEVELS[:-1]:
        if magnitude >= limit:
            return label
    return "very_weak"


# =============================================================================
# ENGINE
# =============================================================================

class EntityCorrelationAnalyzer:

    def __init__(self, window_days: int = 30, clock: Callable[[], datetime] = utc_now):
        self._window_days = window_days
        self._clock = clock

    @staticmethod
    def mentions(entity: str, moment: PivotalMoment) -> bool:
        if entity in moment.entities.all() or entity in moment.classification.keywords:
            return True
        if moment.source.name == entity:
            return True
        needle = entity.lower()
        return needle in moment.title.lower() or needle in moment.content.lower()

    def moments_with(self, entity: str, moments: Sequence[PivotalMoment]) -> List[PivotalMoment]:
        return [m for m in moments if self.mentions(entity, m)]

    def entity_type(self, entity: str, moments: Sequence[PivotalMoment]) -> str:
        relevant = self.moments_with(entity, moments)
        for moment in relevant:
            if entity in moment.entities.companies:
                return "company"
            if entity in moment.entities.technologies:
                return "technology"
            if entity in moment.entities.people:
                return "person"
            if entity in moment.entities.locations:
                return "location"
        for moment in relevant:
            if moment.source.name == entity:
                return moment.source.type.value
        return "concept"

    @staticmethod
    def _impact_coefficient(
        first: Sequence[PivotalMoment],
        second: Sequence[PivotalMoment],
        common_count: int
    ) -> float:
        if common_count < 2:
            return 0.0
        scores1 = {m.id: m.impact.score for m in first}
        scores2 = {m.id: m.impact.score for m in second}
        ids = list(dict.fromkeys([m.id for m in first] + [m.id for m in second]))
        return pearson([scores1.get(i, 0) for i in ids], [scores2.get(i, 0) for i in ids])

    def calculate(self, entity1: str, entity2: str, moments: Sequence[PivotalMoment]) -> EntityCorrelation:
        first = self.moments_with(entity1, moments)
        second = self.moments_with(entity2, moments)
        second_ids = {m.id for m in second}
        common = [m for m in first if m.id in second_ids]

        coefficient = self._impact_coefficient(first, second, len(common))
        p_value = cooccurrence_p_value(len(common), len(first), len(second), len(moments))
        windows = self.stability_windows(entity1, entity2, moments)

        return EntityCorrelation(
            entity1=entity1,
            entity2=entity2,
            entity1_type=self.entity_type(entity1, moments),
            entity2_type=self.entity_type(entity2, moments),
            coefficient=coefficient,
            p_value=p_value,
            significance=classify_significance(p_value),
            strength=classify_strength(coefficient),
            temporal_stability=aggregate_stability(windows),
            cooccurrence_count=len(common),
            total_occurrences1=len(first),
            total_occurrences2=len(second),
            common_moments=tuple(m.id for m in common),
            shared_factors=shared_factors(common),
            impact_correlation=self._recency_correlation(common),
            windows=tuple(windows),
        )

    def stability_windows(
        self,
        entity1: str,
        entity2: str,
        moments: Sequence[PivotalMoment]
    ) -> List[StabilityWindow]:
        ordered = sorted(moments, key=lambda m: m.extracted_at)
        if not ordered:
            return []

        span = timedelta(days=self._window_days)
        step = timedelta(days=max(1, self._window_days // 2))
        current = ordered[0].extracted_at
        last = ordered[-1].extracted_at
        windows = []
        while current <= last:
            end = current + span
            members = [m for m in ordered if current <= m.extracted_at < end]
            if len(members) > 1:
                first = self.moments_with(entity1, members)
                second = self.moments_with(entity2, members)
                second_ids = {m.id for m in second}
                common = [m for m in first if m.id in second_ids]
                p_value = cooccurrence_p_value(len(common), len(first), len(second), len(members))
                windows.append(StabilityWindow(
                    window_start=current,
                    window_end=end,
                    correlation=self._impact_coefficient(first, second, len(common)),
                    moment_count=len(members),
                    significance=1 - p_value,
                ))
            current += step
        return windows

    def _recency_correlation(self, moments: Sequence[PivotalMoment]) -> float:
        if len(moments) < 2:
            return 0.0
        now = self._clock()
        impacts = [m.impact.score for m in moments]
        recency = [max(0, 100 - (now - m.extracted_at).days) for m in moments]
        return pearson(impacts, recency)

    def discover(
        self,
        moments: Sequence[PivotalMoment],
        max_entities: int = 20,
        min_cooccurrence: int = 1
    ) -> List[EntityCorrelation]:
        """Correlate every pair among the most frequently named entities."""
        counts = Counter(e for m in moments for e in dict.fromkeys(m.entities.all()))
        entities = [e for e, _ in counts.most_common(max_entities)]
        results = []
        for i in range(len(entities)):
            for j in range(i + 1, len(entities)):
                correlation = self.calculate(entities[i], entities[j], moments)
                if correlation.cooccurrence_count >= min_cooccurrence:
                    results.append(correlation)
        return results

    # -------------------------------------------------------------------------
    # Clustering
    # -------------------------------------------------------------------------

    def cluster(
        self,
        correlations: Sequence[EntityCorrelation],
        min_cluster_size: int = 3,
        max_clusters: int = 10
    ) -> List[EntityCluster]:
        entities = list(dict.fromkeys(e for c in correlations for e in (c.entity1, c.entity2)))
        index = {entity: i for i, entity in enumerate(entities)}
        adjacency = np.zeros((len(entities), len(entities)))
        types: Dict[str, str] = {}
        for c in correlations:
            a, b = index[c.entity1], index[c.entity2]
            adjacency[a, b] = adjacency[b, a] = abs(c.coefficient)
            types.setdefault(c.entity1, c.entity1_type)
            types.setdefault(c.entity2, c.entity2_type)

        groups: List[List[int]] = [[i] for i in range(len(entities))]
        while len(groups) > max_clusters:
            best, best_pair = 0.0, None
            for i in range(len(groups)):
                for j in range(i + 1, len(groups)):
                    linkage = float(adjacency[np.ix_(groups[i], groups[j])].mean())
                    if linkage > best:
                        best, best_pair = linkage, (i, j)
            if best_pair is None or best < CLUSTER_STOP_LINKAGE:
                break
            i, j = best_pair
            merged = groups[i] + groups[j]
            groups = [g for k, g in enumerate(groups) if k not in (i, j)]
            groups.append(merged)

        clusters = []
        for group in groups:
            if len(group) < min_cluster_size:
                continue
            names = tuple(entities[i] for i in group)
            inner = adjacency[np.ix_(group, group)]
            pairs = [abs(c.coefficient) for c in correlations
                     if c.entity1 in names and c.entity2 in names]
            average = float(np.mean(pairs)) if pairs else 0.0
            member_types = [types.get(n, "concept") for n in names]
            dominant = dominant_type(member_types)
            members = []
            for position, name in enumerate(names):
                row = [inner[position, k] for k in range(len(names)) if k != position and inner[position, k] > 0]
                members.append(ClusterMember(
                    entity=name,
                    type=member_types[position],
                    centrality=float(np.mean(row)) if row else 0.0,
                ))
            clusters.append(EntityCluster(
                cluster_id="",
                entities=names,
                average_correlation=average,
                dominant_type=dominant,
                description=f"{dominant} cluster with {len(names)} entities",
                members=tuple(members),
            ))

        clusters.sort(key=lambda c: -c.average_correlation)
        return [
            EntityCluster(
                cluster_id=f"cluster_{n + 1}",
                entities=c.entities,
                average_correlation=c.average_correlation,
                dominant_type=c.dominant_type,
                description=c.description,
                members=c.members,
            )
            for n, c in enumerate(clusters)
        ]

    # -------------------------------------------------------------------------
    # Report
    # -------------------------------------------------------------------------

    def generate_report(
        self,
        correlations: Sequence[EntityCorrelation],
        clusters: Sequence[EntityCluster]
    ) -> CorrelationReport:
        significant = [c for c in correlations if c.significance in ("very_high", "high")]
        average_strength = float(np.mean([abs(c.coefficient) for c in correlations])) if correlations else 0.0
        stability = float(np.mean([c.temporal_stability for c in correlations])) if correlations else 0.0
        top = sorted(correlations, key=lambda c: -abs(c.coefficient))[:10]
        strongest = sorted(clusters, key=lambda c: -c.average_correlation)[:5]

        return CorrelationReport(
            total_correlations=len(correlations),
            significant_correlations=len(significant),
            average_strength=average_strength,
            temporal_stability=stability,
            top_correlations=tuple(top),
            strongest_clusters=tuple(strongest),
            insights=tuple(generate_insights(correlations, clusters)),
        )


def aggregate_stability(windows: Sequence[StabilityWindow]) -> float:
    if not windows:
        return 0.0
    values = np.array([w.correlation for w in windows])
    return max(0.0, 1.0 - float(values.var()))


def shared_factors(moments: Sequence[PivotalMoment]) -> Tuple[str, ...]:
    """Factors present in at least half of the moments."""
    if not moments:
        return ()
    counts = Counter(f for m in moments for f in dict.fromkeys(m.classification.all_factors))
    threshold = math.ceil(len(moments) * SHARED_FACTOR_RATIO)
    return tuple(f for f, n in counts.items() if n >= threshold)


def dominant_type(types: Sequence[str]) -> str:
    if not types:
        return "mixed"
    label, count = Counter(types).most_common(1)[0]
    if count < len(types) * 0.6:
        return "mixed"
    return label


def generate_insights(
    correlations: Sequence[EntityCorrelation],
    clusters: Sequence[EntityCluster]
) -> List[str]:
    insights = []

    strong = [c for c in correlations if c.strength in ("very_strong", "strong")]
    if strong:
        insights.append(
            f"Identified {len(strong)} strong correlations indicating significant market relationships"
        )

    cross = sum(1 for c in correlations if c.entity1_type != c.entity2_type)
    if cross > len(correlations) - cross:
        insights.append("Cross-entity-type correlations dominate, suggesting diverse market interconnections")

    stable = sum(1 for c in correlations if c.temporal_stability > 0.7)
    if correlations and stable > len(correlations) * 0.3:
        insights.append("High temporal stability indicates persistent market relationships")

    large = [c for c in clusters if len(c.entities) > 5]
    if large:
        insights.append(f"Detected {len(large)} major entity clusters suggesting ecosystem formation")

    return insights
