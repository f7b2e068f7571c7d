"""
Factor Classifier
=================

Keyword-based classification of text against the ten business factors.
Used to validate and enrich model classifications and to derive a
heuristic impact score.

SCORING:
- +1 for every factor keyword found in the text
- +2 for every factor example phrase found in the text
- confidence: total >= 5 high, >= 2 medium, otherwise low
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Tuple

from ..contracts import (
    ConfidenceLevel,
    MomentClassification,
    PivotalMoment,
)


@dataclass(frozen=True)
class FactorDefinition:
    factor: str
    category: str  # "micro" | "macro"
    description: str
    examples: Tuple[str, ...]
    keywords: Tuple[str, ...]


FACTOR_DEFINITIONS: Tuple[FactorDefinition, ...] = (
    # Micro factors
    FactorDefinition(
        factor="company",
        category="micro",
        description="Internal company developments and strategic changes",
        examples=(
            "Leadership changes", "Key hires", "Product launches / features",
            "AI model releases", "Tech stack changes", "IP filings", "M&A activity",
            "Strategic pivots", "Funding rounds", "Geographic expansion",
        ),
        keywords=(
            "ceo", "cto", "founder", "hire", "join", "appointment", "leadership",
            "product", "launch", "release", "feature", "model", "api",
            "patent", "intellectual property", "acquisition", "merger",
            "pivot", "strategy", "funding", "series", "investment", "valuation",
            "expansion", "market", "office", "international",
        ),
    ),
    FactorDefinition(
        factor="competition",
        category="micro",
        description="Competitive dynamics and market positioning",
        examples=(
            "Competitor breakthroughs", "Competitive hires", "Market share changes",
            "Competitive product launches",
        ),
        keywords=(
            "competitor", "rival", "compete", "market share", "benchmark",
            "versus", "compared to", "outperform", "breakthrough", "advantage",
        ),
    ),
    FactorDefinition(
        factor="partners",
        category="micro",
        description="Partnership ecosystem and strategic alliances",
        examples=(
            "Partnerships", "Partner attrition", "Integration programs",
            "Ecosystem development",
        ),
        keywords=(
            "partnership", "alliance", "collaboration", "integration",
            "ecosystem", "partner", "joint", "co-development", "consortium",
        ),
    ),
    FactorDefinition(
        factor="customers",
        category="micro",
        description="Customer relationships and market adoption",
        examples=(
            "Major customer wins", "Customer losses", "Customer advocacy",
            "Customer disputes", "Usage growth", "Retention rates",
        ),
        keywords=(
            "customer", "client", "user", "adoption", "retention",
            "churn", "contract", "deal", "win", "loss", "testimonial",
            "case study", "deployment", "implementation",
        ),
    ),
    # Macro factors
    FactorDefinition(
        factor="economic",
        category="macro",
        description="Economic conditions and financial market impacts",
        examples=(
            "Interest rate changes", "Inflation impacts", "Funding climate shifts",
            "Economic recession/growth", "Currency fluctuations",
        ),
        keywords=(
            "interest rate", "inflation", "economic", "recession", "growth",
            "gdp", "market", "financial", "funding", "investment", "venture capital",
            "vc", "valuation", "bubble", "correction", "currency",
        ),
    ),
    FactorDefinition(
        factor="geo_political",
        category="macro",
        description="Geopolitical events and international relations",
        examples=(
            "Trade policy changes", "International sanctions", "Diplomatic relations",
            "Export restrictions", "Cross-border tensions",
        ),
        keywords=(
            "trade", "tariff", "sanctions", "export", "import", "geopolitical",
            "diplomatic", "international", "government", "policy", "restriction",
            "ban", "embargo", "treaty", "agreement",
        ),
    ),
    FactorDefinition(
        factor="regulation",
        category="macro",
        description="Regulatory changes and legal framework developments",
        examples=(
            "AI governance laws", "Privacy regulations", "Sector-specific rules",
            "Compliance requirements", "Legal precedents",
        ),
        keywords=(
            "regulation", "law", "legal", "compliance", "gdpr", "privacy",
            "ai act", "governance", "ethics", "transparency", "audit",
            "liability", "copyright", "data protection", "regulatory",
        ),
    ),
    FactorDefinition(
        factor="technology",
        category="macro",
        description="Technological breakthroughs and industry-wide innovations",
        examples=(
            "Foundation model breakthroughs", "Open source releases", "Compute advances",
            "Quantum computing progress", "Infrastructure improvements",
        ),
        keywords=(
            "breakthrough", "innovation", "technology", "advancement",
            "open source", "model", "algorithm", "compute", "gpu", "chip",
            "quantum", "infrastructure", "cloud", "edge", "performance",
            "efficiency", "scalability",
        ),
    ),
    FactorDefinition(
        factor="environment",
        category="macro",
        description="Environmental factors and sustainability concerns",
        examples=(
            "Climate change impacts", "Carbon regulations", "Energy efficiency requirements",
            "Sustainability initiatives", "Natural disasters",
        ),
        keywords=(
            "climate", "carbon", "environment", "sustainability", "energy",
            "green", "renewable", "emissions", "footprint", "disaster",
            "flood", "hurricane", "earthquake", "weather",
        ),
    ),
    FactorDefinition(
        factor="supply_chain",
        category="macro",
        description="Supply chain disruptions and logistics challenges",
        examples=(
            "Chip shortages", "Manufacturing delays", "Logistics disruptions",
            "Material costs", "Global supply issues",
        ),
        keywords=(
            "supply chain", "shortage", "manufacturing", "logistics",
            "delivery", "delay", "disruption", "materials", "components",
            "chips", "semiconductor", "production", "inventory",
        ),
    ),
)

_CONFIDENCE_SCORES = {
    ConfidenceLevel.LOW: 1,
    ConfidenceLevel.MEDIUM: 2,
    ConfidenceLevel.HIGH: 3,
}

_CONFIDENCE_MULTIPLIERS = {
    ConfidenceLevel.LOW: 0.8,
    ConfidenceLevel.MEDIUM: 1.0,
    ConfidenceLevel.HIGH: 1.2,
}

MICRO_FACTOR_WEIGHT = 15
MACRO_FACTOR_WEIGHT = 20
BASE_IMPACT = 50


@dataclass(frozen=True)
class FactorMatch:
    factor: str
    score: int
    matched: Tuple[str, ...]


class FactorClassifier:

    def __init__(self, definitions: Tuple[FactorDefinition, ...] = FACTOR_DEFINITIONS):
        self._definitions: Dict[str, FactorDefinition] = {d.factor: d for d in definitions}

    def get_definition(self, factor: str) -> FactorDefinition:
        return self._definitions[factor]

    def get_factors_by_category(self, category: str) -> List[FactorDefinition]:
        return [d for d in self._definitions.values() if d.category == category]

    def match_factors(self, text: str) -> List[FactorMatch]:
        """
        Factors with at least one hit, strongest first (stable on ties).

        Keywords and examples match as case-insensitive substrings.
        """
        lowered = text.lower()
        matches = []
        for definition in self._definitions.values():
            matched: List[str] = []
            score = 0
            for keyword in definition.keywords:
                if keyword.lower() in lowered:
                    matched.append(keyword)
                    score += 1
            for example in definition.examples:
                if example.lower() in lowered:
                    matched.append(example)
                    score += 2
            if score > 0:
                matches.append(FactorMatch(definition.factor, score, tuple(matched)))
        matches.sort(key=lambda m: -m.score)
        return matches

    def classify_content(self, text: str) -> MomentClassification:
        matches = self.match_factors(text)

        micro = tuple(m.factor for m in matches if self._definitions[m.factor].category == "micro")
        macro = tuple(m.factor for m in matches if self._definitions[m.factor].category == "macro")

        total = sum(m.score for m in matches)
        if total >= 5:
            confidence = ConfidenceLevel.HIGH
        elif total >= 2:
            confidence = ConfidenceLevel.MEDIUM
        else:
            confidence = ConfidenceLevel.LOW

        if matches:
            reasoning = "Classified based on detected factors: " + "; ".join(
                f"{m.factor} ({', '.join(m.matched[:3])})" for m in matches[:3]
            )
        else:
            reasoning = "No clear factor indicators found in content"

        keywords = _unique(k for m in matches for k in m.matched)
        return MomentClassification(
            micro_factors=micro,
            macro_factors=macro,
            confidence=confidence,
            reasoning=reasoning,
            keywords=keywords,
        )

    def validate_classification(self, moment: PivotalMoment) -> MomentClassification:
        """Merge the moment's own classification with a text-based one."""
        detected = self.classify_content(f"{moment.content} {moment.description}")
        existing = moment.classification

        reasoning = existing.reasoning
        if detected.reasoning != existing.reasoning:
            reasoning = f"{reasoning} Additional analysis: {detected.reasoning}".strip()

        return MomentClassification(
            micro_factors=_unique(existing.micro_factors + detected.micro_factors),
            macro_factors=_unique(existing.macro_factors + detected.macro_factors),
            confidence=combined_confidence(existing.confidence, detected.confidence),
            reasoning=reasoning,
            keywords=_unique(existing.keywords + detected.keywords),
        )

    def calculate_impact_score(self, moment: PivotalMoment) -> int:
        classification = moment.classification
        score = float(BASE_IMPACT)
        score += len(classification.micro_factors) * MICRO_FACTOR_WEIGHT
        score += len(classification.macro_factors) * MACRO_FACTOR_WEIGHT
        score *= _CONFIDENCE_MULTIPLIERS[classification.confidence]

        words = max(len(moment.content.split()), 1)
        score += len(classification.keywords) / words * 100
        score += len(moment.entities.all()) * 2

        return min(round(score), 100)


def combined_confidence(first: ConfidenceLevel, second: ConfidenceLevel) -> ConfidenceLevel:
    average = (_CONFIDENCE_SCORES[first] + _CONFIDENCE_SCORES[second]) / 2
    if average >= 2.5:
        return ConfidenceLevel.HIGH
    if average >= 1.5:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def _unique(values) -> Tuple[str, ...]:
    return tuple(dict.fromkeys(values))
