"""
Temporal Correlation
====================

Moments are bucketed into fixed N-day windows. Inside a window every
pair is scored; strongly related pairs raise each other's impact.

WINDOWS:
========
Windows are aligned on 1970-01-01 UTC: window start = epoch +
floor(days_since_epoch / N) * N days. Each window is the half-open
interval [start, start + N days), so every instant belongs to exactly
one window regardless of month boundaries.

SCORING:
========
    entity Jaccard  > 0.2   ->  +0.4 * j
    factor Jaccard  > 0.1   ->  +0.3 * j
    keyword Jaccard > 0.15  ->  +0.2 * j
    same source name        ->  +0.1
    strength = min(1, sum); boost = round(strength * 10)

IDEMPOTENCE:
============
Boosts are applied on top of MomentImpact.base_score. Re-correlating a
window recomputes every boost in it from the base, so repeated runs do
not accumulate.
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import AbstractSet, Callable, Dict, Iterable, List, Sequence, Tuple

from ..contracts import (
    CorrelationType,
    MomentCorrelation,
    PivotalMoment,
    utc_now,
)


EPOCH = date(1970, 1, 1)

ENTITY_THRESHOLD = 0.2
FACTOR_THRESHOLD = 0.1
KEYWORD_THRESHOLD = 0.15

ENTITY_WEIGHT = 0.4
FACTOR_WEIGHT = 0.3
KEYWORD_WEIGHT = 0.2
SAME_SOURCE_BONUS = 0.1

DEFAULT_CORRELATION_THRESHOLD = 0.6


# =============================================================================
# WINDOWS
# =============================================================================

def window_start(ts: datetime, window_days: int) -> date:
    if window_days < 1:
        raise ValueError(f"window_days must be >= 1, got {window_days}")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    day = ts.astimezone(timezone.utc).date()
    offset = (day - EPOCH).days
    return EPOCH + timedelta(days=offset - offset % window_days)


def window_key(ts: datetime, window_days: int) -> str:
    """ISO date of the first day of the window containing ts."""
    return window_start(ts, window_days).isoformat()


def window_bounds(key: str, window_days: int) -> Tuple[datetime, datetime]:
    """Half-open [start, end) of the window named by key."""
    start = datetime.combine(date.fromisoformat(key), time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=window_days)


def group_by_window(
    moments: Iterable[PivotalMoment],
    window_days: int
) -> Dict[str, List[PivotalMoment]]:
    groups: Dict[str, List[PivotalMoment]] = defaultdict(list)
    for moment in moments:
        groups[window_key(moment.extracted_at, window_days)].append(moment)
    return dict(groups)


# =============================================================================
# PAIR SCORING
# =============================================================================

def jaccard(a: AbstractSet, b: AbstractSet) -> float:
    """|a & b| / |a | b|; two empty sets score 0."""
    union = len(a | b)
    if union == 0:
        return 0.0
    return len(a & b) / union


@dataclass(frozen=True)
class PairScore:
    strength: float
    reasons: Tuple[str, ...]
    common_factors: Tuple[str, ...]
    impact_boost: int
    entity_overlap: float = 0.0
    factor_overlap: float = 0.0
    keyword_overlap: float = 0.0

    @property
    def correlation_type(self) -> CorrelationType:
        if self.factor_overlap * FACTOR_WEIGHT > self.entity_overlap * ENTITY_WEIGHT:
            return CorrelationType.THEMATIC
        return CorrelationType.TEMPORAL


def score_pair(first: PivotalMoment, second: PivotalMoment) -> PairScore:
    reasons: List[str] = []
    strength = 0.0

    entity_overlap = jaccard(set(first.entities.all()), set(second.entities.all()))
    if entity_overlap > ENTITY_THRESHOLD:
        strength += entity_overlap * ENTITY_WEIGHT
        reasons.append(f"Entity overlap: {round(entity_overlap * 100)}%")
    else:
        entity_overlap = 0.0

    factors_a = set(first.classification.all_factors)
    factors_b = set(second.classification.all_factors)
    factor_overlap = jaccard(factors_a, factors_b)
    if factor_overlap > FACTOR_THRESHOLD:
        strength += factor_overlap * FACTOR_WEIGHT
        reasons.append(f"Factor alignment: {round(factor_overlap * 100)}%")
    else:
        factor_overlap = 0.0

    keyword_overlap = jaccard(set(first.classification.keywords), set(second.classification.keywords))
    if keyword_overlap > KEYWORD_THRESHOLD:
        strength += keyword_overlap * KEYWORD_WEIGHT
        reasons.append(f"Keyword similarity: {round(keyword_overlap * 100)}%")
    else:
        keyword_overlap = 0.0

    if first.source.name == second.source.name:
        strength += SAME_SOURCE_BONUS
        reasons.append("Same source entity")

    strength = min(1.0, strength)
    return PairScore(
        strength=strength,
        reasons=tuple(reasons),
        common_factors=tuple(sorted(factors_a & factors_b)),
        impact_boost=round(strength * 10),
        entity_overlap=entity_overlap,
        factor_overlap=factor_overlap,
        keyword_overlap=keyword_overlap,
    )


# =============================================================================
# WINDOW CORRELATION
# =============================================================================

@dataclass(frozen=True)
class CorrelationOutcome:
    moments: Tuple[PivotalMoment, ...]
    correlations: Tuple[MomentCorrelation, ...]
    windows: Tuple[str, ...]


class TemporalCorrelator:
    """Scores moment pairs inside windows and applies impact boosts."""

    def __init__(
        self,
        window_days: int = 14,
        threshold: float = DEFAULT_CORRELATION_THRESHOLD,
        clock: Callable[[], datetime] = utc_now
    ):
        if window_days < 1:
            raise ValueError(f"window_days must be >= 1, got {window_days}")
        self._window_days = window_days
        self._threshold = threshold
        self._clock = clock

    @property
    def window_days(self) -> int:
        return self._window_days

    @property
    def threshold(self) -> float:
        return self._threshold

    def correlate_windows(
        self,
        moments: Sequence[PivotalMoment],
        window_keys: Iterable[str]
    ) -> CorrelationOutcome:
        """
        Re-score every pair inside the given windows.

        Moments outside those windows are returned untouched. Order of
        the input sequence is preserved.
        """
        keys = sorted(set(window_keys))
        groups = group_by_window(moments, self._window_days)
        boosts: Dict[str, int] = {}
        correlations: List[MomentCorrelation] = []
        discovered_at = self._clock()

        for key in keys:
            members = groups.get(key, [])
            for moment in members:
                boosts.setdefault(moment.id, 0)
            for i in range(len(members)):
                for j in range(i + 1, len(members)):
                    first, second = members[i], members[j]
                    score = score_pair(first, second)
                    if score.strength < self._threshold:
                        continue
                    boosts[first.id] += score.impact_boost
                    boosts[second.id] += score.impact_boost
                    correlations.append(MomentCorrelation(
                        id=f"corr-{first.id}-{second.id}",
                        moment1_id=first.id,
                        moment2_id=second.id,
                        correlation_type=score.correlation_type,
                        strength=round(score.strength, 4),
                        description="; ".join(score.reasons),
                        discovered_at=discovered_at,
                        common_factors=score.common_factors,
                    ))

        updated = tuple(
            m.with_impact(m.impact.with_boost(boosts[m.id])) if m.id in boosts else m
            for m in moments
        )
        return CorrelationOutcome(
            moments=updated,
            correlations=tuple(correlations),
            windows=tuple(keys),
        )

    def correlate_all(self, moments: Sequence[PivotalMoment]) -> CorrelationOutcome:
        keys = group_by_window(moments, self._window_days).keys()
        return self.correlate_windows(moments, keys)
