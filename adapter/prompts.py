"""
Prompt Generation
=================

Pure functions rendering prompts for every model task.

INVARIANT: Same inputs -> same prompt_hash.
Prompts depend only on their arguments, never on runtime state, so a
prompt hash identifies a cacheable request.
"""

from __future__ import annotations
from dataclasses import dataclass
import hashlib
import json
from typing import Optional, Sequence

from moments.contracts import (
    ContentItem,
    MomentCorrelation,
    PivotalMoment,
    SourceType,
)


class TaskType:
    EXTRACTION = "moment_extraction"
    CONTENT_ANALYSIS = "content_analysis"
    CLASSIFICATION = "classification"
    CORRELATION = "correlation"
    REPORT = "report"


REPORT_TYPES = ("executive_summary", "detailed_analysis", "trend_report", "risk_assessment")


@dataclass(frozen=True)
class RenderedPrompt:
    """
    Frozen prompt with hash for tracking.

    INVARIANT: Same task_type + inputs -> same prompt_hash
    """
    task_type: str
    text: str
    prompt_hash: str

    @staticmethod
    def create(task_type: str, text: str) -> 'RenderedPrompt':
        return RenderedPrompt(
            task_type=task_type,
            text=text,
            prompt_hash=hashlib.sha256(text.encode()).hexdigest(),
        )


FACTOR_FRAMEWORK = """**Micro Factors:**
- company: Leadership changes, key hires, product launches, AI model releases, tech stack changes, IP filings, M&A activity, strategic pivots, funding rounds, geographic expansion
- competition: Competitor breakthroughs, competitive hires
- partners: Partnerships, partner attrition
- customers: Major customer wins, customer losses, customer advocacy, customer disputes

**Macro Factors:**
- economic: Interest rates, inflation, funding climate
- geo_political: Trade policy, sanctions
- regulation: AI laws, privacy laws, sector rules
- technology: Breakthroughs, open source, compute, quantum
- environment: Climate impacts, carbon regulations
- supply_chain: Chips, logistics"""


EXTRACTION_FORMAT = """{
  "title": "Brief descriptive title",
  "description": "1-2 sentence summary",
  "content": "Extracted relevant text snippet",
  "microFactors": ["company"],
  "macroFactors": ["technology"],
  "confidence": "low|medium|high",
  "reasoning": "Why this is a pivotal moment and classification rationale",
  "keywords": ["key", "terms"],
  "impactScore": 75,
  "impactReasoning": "Why this impact score",
  "entities": {
    "companies": [], "technologies": [], "people": [], "locations": []
  },
  "timeline": {
    "estimatedDate": "2024-01-15T00:00:00Z",
    "timeframe": "Q1 2024",
    "isHistorical": true
  }
}"""


class PromptTemplates:
    """
    Prompt templates for each task type.

    All templates are pure functions of their arguments.
    """

    @staticmethod
    def extraction(text: str, source_type: SourceType, source_name: str) -> RenderedPrompt:
        body = f"""You are an AI business intelligence analyst specializing in identifying pivotal moments in the AI industry.

Analyze the following content and identify pivotal moments that could significantly impact AI startups or enterprises.

**Source Context:**
- Type: {source_type.value}
- Name: {source_name}

**Content to Analyze:**
{text}

**Moment Classification Framework:**

{FACTOR_FRAMEWORK}

**Instructions:**
1. Identify significant events, announcements, or developments that qualify as pivotal moments
2. Classify each moment using the framework above
3. Assess the potential impact on AI industry dynamics (impactScore 0-100)
4. Extract relevant entities (companies, technologies, people, locations)
5. Estimate timeline information if available

**Response Format:**
Return a JSON array of moments, each shaped like:
{EXTRACTION_FORMAT}

Return only the JSON array, no other text. If no pivotal moments are found, return an empty array []"""
        return RenderedPrompt.create(TaskType.EXTRACTION, body)

    @staticmethod
    def content_analysis(items: Sequence[ContentItem]) -> RenderedPrompt:
        listing = "\n".join(
            f"ID: {item.id}\nName: {item.name}\nContent: {(item.content or 'No content')[:2000]}\n---"
            for item in items
        )
        body = f"""You are a specialized content analysis agent for AI business intelligence.

**Content Items:**
{listing}

**Your Task:**
For each content item, extract:
1. Key phrases and entities relevant to AI business intelligence
2. Sentiment (positive/negative/neutral) regarding business developments
3. Importance score (0-100) based on potential business impact
4. Content sections by type (announcement, analysis, data, quote)

**Response Format:**
Return a JSON array:
[{{
  "contentId": "content_id",
  "extractedText": "clean, structured text",
  "keyPhrases": ["phrase1", "phrase2"],
  "sentiment": "positive|negative|neutral",
  "importance": 85,
  "sections": [{{"title": "section title", "content": "section content", "type": "announcement|analysis|data|quote"}}]
}}]"""
        return RenderedPrompt.create(TaskType.CONTENT_ANALYSIS, body)

    @staticmethod
    def classification(moments: Sequence[PivotalMoment]) -> RenderedPrompt:
        listing = "\n".join(
            f"ID: {m.id}\nTitle: {m.title}\nDescription: {m.description}\n"
            f"Content: {m.content[:1000]}\n"
            f"Current Classification: {json.dumps(m.classification.to_dict(), sort_keys=True)}\n---"
            for m in moments
        )
        body = f"""You are a specialized moment classification agent. Enhance and validate moment classifications for AI business intelligence.

**Moments to Classify:**
{listing}

**Classification Framework:**
Micro Factors: company, competition, partners, customers
Macro Factors: economic, geo_political, regulation, technology, environment, supply_chain

**Response Format:**
Return a JSON array:
[{{
  "momentId": "moment_id",
  "enhancedClassification": {{
    "microFactors": ["company"],
    "macroFactors": ["technology"],
    "confidence": "low|medium|high",
    "reasoning": "detailed reasoning",
    "additionalKeywords": ["keyword"]
  }},
  "riskAssessment": {{"level": "low|medium|high|critical", "factors": ["risk factor"]}}
}}]"""
        return RenderedPrompt.create(TaskType.CLASSIFICATION, body)

    @staticmethod
    def correlation(moments: Sequence[PivotalMoment]) -> RenderedPrompt:
        def when(m: PivotalMoment) -> str:
            if m.timeline.timeframe:
                return m.timeline.timeframe
            if m.timeline.estimated_date:
                return m.timeline.estimated_date.isoformat()
            return "Unknown"

        listing = "\n".join(
            f"ID: {m.id}\nTitle: {m.title}\n"
            f"Factors: Micro[{','.join(m.classification.micro_factors)}] "
            f"Macro[{','.join(m.classification.macro_factors)}]\n"
            f"Timeline: {when(m)}\nImpact: {m.impact.score}\n---"
            for m in moments
        )
        body = f"""You are a specialized correlation analysis agent. Identify relationships and patterns between pivotal moments.

**Moments to Correlate:**
{listing}

**Your Task:**
1. Identify correlations between moments (causal, temporal, thematic, competitive)
2. Discover patterns, trends, anomalies, and clusters

**Response Format:**
Return a JSON object:
{{
  "correlations": [{{
    "moment1Id": "id1", "moment2Id": "id2",
    "correlationType": "causal|temporal|thematic|competitive",
    "strength": 0.85,
    "description": "description of relationship",
    "commonFactors": ["shared factors"]
  }}],
  "insights": [{{
    "type": "trend|pattern|anomaly|cluster",
    "description": "insight description",
    "momentIds": ["id1", "id2"],
    "confidence": 0.8
  }}]
}}"""
        return RenderedPrompt.create(TaskType.CORRELATION, body)

    @staticmethod
    def report(
        moments: Sequence[PivotalMoment],
        correlations: Sequence[MomentCorrelation],
        report_type: str,
        timeframe: Optional[str] = None,
        focus_areas: Optional[Sequence[str]] = None
    ) -> RenderedPrompt:
        if report_type not in REPORT_TYPES:
            raise ValueError(f"Unknown report type: {report_type}")
        key_moments = "\n".join(f"- {m.title} (Impact: {m.impact.score})" for m in list(moments)[:10])
        key_correlations = "\n".join(
            f"- {c.correlation_type.value}: {c.description} (Strength: {c.strength:.2f})"
            for c in list(correlations)[:5]
        )
        body = f"""You are a specialized business intelligence report generator. Create a comprehensive {report_type} report.

**Data Summary:**
- Total Moments: {len(moments)}
- Total Correlations: {len(correlations)}
- Report Type: {report_type}
- Timeframe: {timeframe or 'All available data'}
- Focus Areas: {', '.join(focus_areas) if focus_areas else 'All factors'}

**Key Moments:**
{key_moments or '- none'}

**Key Correlations:**
{key_correlations or '- none'}

**Response Format:**
Return a JSON object:
{{
  "report": {{
    "title": "report title",
    "summary": "executive summary",
    "sections": [{{"title": "section title", "content": "section content"}}],
    "recommendations": ["recommendation"],
    "riskFactors": ["risk"],
    "opportunities": ["opportunity"]
  }}
}}"""
        return RenderedPrompt.create(TaskType.REPORT, body)
