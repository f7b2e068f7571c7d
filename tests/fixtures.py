"""
Test Fixtures

Explicit builders for catalog items, moments and mock-backed factories.

RULES:
======
1. All timestamps are fixed, never utc_now()
2. Builders take keyword overrides for the one field a test cares about
"""

from __future__ import annotations
import json
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

from adapter.providers.factory import ProviderFactory
from adapter.providers.mock import MockProvider
from moments.config import ProviderConfig
from moments.contracts import (
    Company,
    ContentItem,
    ContentType,
    MomentClassification,
    MomentEntities,
    MomentImpact,
    MomentSource,
    PivotalMoment,
    SourceType,
    Technology,
)


BASE_TIME = datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


def make_item(
    item_id: str = "openai-overview",
    content: Optional[str] = "# OpenAI\n\nOpenAI released GPT-4 in partnership with Microsoft.",
    path: Optional[str] = None,
    updated_at: datetime = BASE_TIME,
    type: ContentType = ContentType.MARKDOWN
) -> ContentItem:
    return ContentItem(
        id=item_id,
        name=item_id.replace("-", " "),
        path=path or f"companies/{item_id.split('-')[0]}/{item_id}.md",
        type=type,
        content=content,
        created_at=updated_at,
        updated_at=updated_at,
    )


def make_company(slug: str = "openai", items: Sequence[ContentItem] = ()) -> Company:
    return Company(
        id=slug,
        name=slug.title(),
        slug=slug,
        path=f"companies/{slug}",
        category="startup",
        content=tuple(items),
    )


def make_technology(slug: str = "langchain", items: Sequence[ContentItem] = ()) -> Technology:
    return Technology(
        id=slug,
        name=slug.title(),
        slug=slug,
        path=f"technologies/{slug}",
        category="ai-tools",
        content=tuple(items),
    )


def make_source(
    name: str = "OpenAI",
    content_id: str = "openai-overview",
    type: SourceType = SourceType.COMPANY
) -> MomentSource:
    return MomentSource(type=type, id=name.lower(), name=name, content_id=content_id,
                        file_path=f"companies/{name.lower()}/{content_id}.md")


def make_moment(
    moment_id: str = "openai-overview-moment-1",
    source: Optional[MomentSource] = None,
    extracted_at: datetime = BASE_TIME,
    score: int = 60,
    companies: Sequence[str] = ("OpenAI", "Microsoft"),
    technologies: Sequence[str] = ("GPT-4",),
    micro: Sequence[str] = ("company", "partners"),
    macro: Sequence[str] = ("technology",),
    keywords: Sequence[str] = ("llm", "partnership"),
    base_score: Optional[int] = None
) -> PivotalMoment:
    return PivotalMoment(
        id=moment_id,
        title=f"Moment {moment_id}",
        description="A pivotal moment",
        content="Excerpt",
        source=source or make_source(),
        classification=MomentClassification(
            micro_factors=tuple(micro),
            macro_factors=tuple(macro),
            keywords=tuple(keywords),
        ),
        extracted_at=extracted_at,
        impact=MomentImpact(score=score, reasoning="test", base_score=base_score),
        entities=MomentEntities(companies=tuple(companies), technologies=tuple(technologies)),
    )


def moment_payload(count: int = 1, title: str = "GPT-4 launch", score: int = 80) -> str:
    """Model response text for an extraction request."""
    entries: List[Dict] = []
    for n in range(count):
        entries.append({
            "title": f"{title} {n + 1}" if count > 1 else title,
            "description": "OpenAI launches GPT-4",
            "content": "OpenAI released GPT-4",
            "microFactors": ["company", "partners"],
            "macroFactors": ["technology"],
            "confidence": "high",
            "reasoning": "Major product launch",
            "keywords": ["llm", "launch"],
            "impactScore": score,
            "impactReasoning": "Industry-wide effect",
            "entities": {"companies": ["OpenAI", "Microsoft"], "technologies": ["GPT-4"]},
            "timeline": {"timeframe": "2023", "isHistorical": True},
        })
    return "Here are the moments:\n```json\n" + json.dumps(entries) + "\n```"


def make_mock_factory(*providers: MockProvider, primary: str = "mock", fallback: Optional[str] = None) -> ProviderFactory:
    """Factory whose provider types resolve to the given mock instances, cache disabled."""
    by_name = {p.name: p for p in providers} or {"mock": MockProvider()}
    factory = ProviderFactory(
        ProviderConfig(type=primary, fallback=fallback, enable_cache=False),
        builders={name: (lambda p=p: p) for name, p in by_name.items()},
    )
    factory.initialize(primary, fallback or "")
    return factory
