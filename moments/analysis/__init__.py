"""
Analysis Layer

RESPONSIBILITY: Decide what to (re-)analyse, correlate and score moments
INPUTS: Catalog entities, stored moments, tracked content hashes
OUTPUTS: MomentAnalysisResult, correlations, entity statistics

MUST NOT: Talk to model providers except through adapter.extractor.
"""

from .hashing import (
    CatalogGaps,
    ChangeAssessment,
    ContentHashStore,
    HashStats,
    compute_content_hash,
    make_hash_record,
)
from .correlation import (
    CorrelationOutcome,
    PairScore,
    TemporalCorrelator,
    group_by_window,
    jaccard,
    score_pair,
    window_bounds,
    window_key,
)
from .factors import FACTOR_DEFINITIONS, FactorClassifier, FactorDefinition
from .entity_correlation import (
    CorrelationReport,
    EntityCluster,
    EntityCorrelation,
    EntityCorrelationAnalyzer,
)
from .incremental import (
    IncrementalMomentManager,
    IncrementalOptions,
    IncrementalStats,
    flatten_catalog,
)

__all__ = [
    'CatalogGaps',
    'ChangeAssessment',
    'ContentHashStore',
    'HashStats',
    'compute_content_hash',
    'make_hash_record',
    'CorrelationOutcome',
    'PairScore',
    'TemporalCorrelator',
    'group_by_window',
    'jaccard',
    'score_pair',
    'window_bounds',
    'window_key',
    'FACTOR_DEFINITIONS',
    'FactorClassifier',
    'FactorDefinition',
    'CorrelationReport',
    'EntityCluster',
    'EntityCorrelation',
    'EntityCorrelationAnalyzer',
    'IncrementalMomentManager',
    'IncrementalOptions',
    'IncrementalStats',
    'flatten_catalog',
]
