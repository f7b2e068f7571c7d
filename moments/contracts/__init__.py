"""
Moments Contracts
=================

Frozen data types shared by every layer. Layers import from here,
never from each other's implementations.
"""

from .base import (
    SourceType,
    AnalysisScope,
    utc_now,
    parse_timestamp,
    format_timestamp,
)
from .catalog import (
    ContentType,
    CompanyCategory,
    ContentItem,
    CatalogEntity,
    Company,
    Technology,
    ContentHashRecord,
)
from .moments import (
    MicroFactor,
    MacroFactor,
    MICRO_FACTORS,
    MACRO_FACTORS,
    ConfidenceLevel,
    CorrelationType,
    MomentSource,
    MomentClassification,
    MomentImpact,
    MomentEntities,
    MomentTimeline,
    PivotalMoment,
    MomentCorrelation,
    StepStatus,
    AnalysisStep,
    AgentActivity,
    ChangeSummary,
    MomentAnalysisResult,
)

__all__ = [
    'SourceType',
    'AnalysisScope',
    'utc_now',
    'parse_timestamp',
    'format_timestamp',
    'ContentType',
    'CompanyCategory',
    'ContentItem',
    'CatalogEntity',
    'Company',
    'Technology',
    'ContentHashRecord',
    'MicroFactor',
    'MacroFactor',
    'MICRO_FACTORS',
    'MACRO_FACTORS',
    'ConfidenceLevel',
    'CorrelationType',
    'MomentSource',
    'MomentClassification',
    'MomentImpact',
    'MomentEntities',
    'MomentTimeline',
    'PivotalMoment',
    'MomentCorrelation',
    'StepStatus',
    'AnalysisStep',
    'AgentActivity',
    'ChangeSummary',
    'MomentAnalysisResult',
]
