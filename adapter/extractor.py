"""
Moment Extractor
================

Turns a markdown content item into PivotalMoment records via a model call.

GUARANTEES:
- Only markdown items with a non-blank body are sent to the model
- Malformed model output never raises; it becomes an explicit error outcome
- Moment ids are deterministic: {content_id}-moment-{n}, n starting at 1
- Unknown factors are dropped, impact outside [0, 100] becomes 50
"""

from __future__ import annotations
import asyncio
from dataclasses import dataclass
from datetime import datetime
from numbers import Real
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from moments.contracts import (
    ConfidenceLevel,
    ContentItem,
    MACRO_FACTORS,
    MICRO_FACTORS,
    MomentClassification,
    MomentEntities,
    MomentImpact,
    MomentSource,
    MomentTimeline,
    PivotalMoment,
    parse_timestamp,
    utc_now,
)
from moments.contracts.base import as_str_tuple

from .parsing import parse_json_array
from .prompts import PromptTemplates
from .providers.base import ModelProviderError, ModelRequest, ModelResponse, TokenUsage


RequestSender = Callable[[ModelRequest], ModelResponse]

DEFAULT_IMPACT_SCORE = 50


@dataclass(frozen=True)
class ExtractionOutcome:
    """Result of extracting one content item."""
    content_id: str
    source: MomentSource
    moments: Tuple[PivotalMoment, ...] = ()
    error: Optional[str] = None
    usage: TokenUsage = TokenUsage()
    skipped: bool = False

    @property
    def success(self) -> bool:
        return self.error is None


class MomentExtractor:
    """
    Extract pivotal moments from catalog content.

    `send` is any callable that turns a ModelRequest into a ModelResponse:
    a provider's send_request, SubAgentManager.send_provider_request or
    FailoverManager.execute_with_failover.
    """

    def __init__(
        self,
        send: RequestSender,
        model: str = "sonnet",
        temperature: float = 0.3,
        max_tokens: int = 4000,
        clock: Callable[[], datetime] = utc_now
    ):
        self._send = send
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._clock = clock

    def build_request(self, item: ContentItem, source: MomentSource) -> ModelRequest:
        prompt = PromptTemplates.extraction(item.content or "", source.type, source.name)
        return ModelRequest.create(
            prompt.text,
            model=self._model,
            max_tokens=self._max_tokens,
            temperature=self._temperature,
            task=prompt.task_type,
            content_id=item.id,
        )

    def extract(self, item: ContentItem, source: MomentSource) -> ExtractionOutcome:
        """Extract moments from a single item. Never raises on provider failure."""
        if not item.is_analyzable:
            return ExtractionOutcome(content_id=item.id, source=source, skipped=True)

        try:
            response = self._send(self.build_request(item, source))
        except ModelProviderError as e:
            return ExtractionOutcome(
                content_id=item.id,
                source=source,
                error=f"Failed to analyze {item.name}: {e}",
            )

        if not response.success:
            return ExtractionOutcome(
                content_id=item.id,
                source=source,
                error=f"Failed to analyze {item.name}: {response.error_message or response.error_code.value}",
            )

        moments = self.parse_moments(response.content, source)
        if moments is None:
            return ExtractionOutcome(
                content_id=item.id,
                source=source,
                error=f"Failed to analyze {item.name}: no JSON array in model response",
                usage=response.usage,
            )
        return ExtractionOutcome(
            content_id=item.id,
            source=source,
            moments=tuple(moments),
            usage=response.usage,
        )

    async def extract_many(
        self,
        work: Sequence[Tuple[ContentItem, MomentSource]],
        max_parallel: int = 4,
        on_done: Optional[Callable[[ExtractionOutcome], None]] = None
    ) -> List[ExtractionOutcome]:
        """Extract several items concurrently, at most max_parallel in flight."""
        semaphore = asyncio.Semaphore(max(1, max_parallel))

        async def run(item: ContentItem, source: MomentSource) -> ExtractionOutcome:
            async with semaphore:
                outcome = await asyncio.to_thread(self.extract, item, source)
            if on_done is not None:
                on_done(outcome)
            return outcome

        return list(await asyncio.gather(*(run(item, source) for item, source in work)))

    # -------------------------------------------------------------------------
    # Parsing
    # -------------------------------------------------------------------------

    def parse_moments(self, text: Optional[str], source: MomentSource) -> Optional[List[PivotalMoment]]:
        """
        Parse the model's JSON array into moments.

        Returns None when no array can be recovered, [] for an explicit
        empty array.
        """
        raw = parse_json_array(text)
        if raw is None:
            return None

        extracted_at = self._clock()
        moments = []
        for index, entry in enumerate(raw):
            if not isinstance(entry, dict):
                continue
            moments.append(self._to_moment(entry, index, source, extracted_at))
        return moments

    def _to_moment(
        self,
        entry: Dict[str, Any],
        index: int,
        source: MomentSource,
        extracted_at: datetime
    ) -> PivotalMoment:
        classification = MomentClassification(
            micro_factors=tuple(f for f in as_str_tuple(entry.get("microFactors")) if f in MICRO_FACTORS),
            macro_factors=tuple(f for f in as_str_tuple(entry.get("macroFactors")) if f in MACRO_FACTORS),
            confidence=ConfidenceLevel.parse(entry.get("confidence"), ConfidenceLevel.MEDIUM),
            reasoning=str(entry.get("reasoning") or ""),
            keywords=as_str_tuple(entry.get("keywords")),
        )
        timeline_data = entry.get("timeline") if isinstance(entry.get("timeline"), dict) else {}
        return PivotalMoment(
            id=f"{source.content_id}-moment-{index + 1}",
            title=str(entry.get("title") or "Untitled moment"),
            description=str(entry.get("description") or ""),
            content=str(entry.get("content") or ""),
            source=source,
            classification=classification,
            extracted_at=extracted_at,
            impact=MomentImpact(
                score=normalize_impact(entry.get("impactScore")),
                reasoning=str(entry.get("impactReasoning") or ""),
            ),
            entities=MomentEntities.from_dict(entry.get("entities") if isinstance(entry.get("entities"), dict) else None),
            timeline=MomentTimeline(
                estimated_date=parse_timestamp(timeline_data.get("estimatedDate")),
                timeframe=timeline_data.get("timeframe") or None,
                is_historical=bool(timeline_data.get("isHistorical", False)),
            ),
        )


def normalize_impact(value: Any) -> int:
    """Numeric impact in [0, 100], else the default."""
    if isinstance(value, bool) or not isinstance(value, Real):
        return DEFAULT_IMPACT_SCORE
    if not 0 <= value <= 100:
        return DEFAULT_IMPACT_SCORE
    return int(round(value))
