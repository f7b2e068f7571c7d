"""
Model Adapter Package

ARCHITECTURAL BOUNDARY:
=======================
This package is the ONLY interface between the moments engine and the
hosted language models. Every model call flows through a ModelProvider.

DIRECTION OF DEPENDENCY:
========================
moments.analysis -> adapter -> provider SDKs (anthropic, boto3)

NEVER:
- adapter importing from moments.analysis / moments.api / moments.engine
- Provider SDK types leaking out of adapter.providers

DESIGN PRINCIPLES:
==================
1. Failures are data: ModelResponse(success=False, error_code=...)
2. Model outputs are ADVISORY and parsed tolerantly, never trusted
3. Parse failures degrade to empty results, never exceptions
"""

from .providers import (
    ModelProvider,
    ModelProviderError,
    ModelProviderAuthError,
    ModelProviderRateLimitError,
    ModelRequest,
    ModelResponse,
    MockProvider,
    ProviderErrorCode,
    ProviderFactory,
    ProviderHealthCheck,
    TokenUsage,
)
from .cache import CachedProvider, ResponseCache
from .parsing import extract_json, parse_json_array, parse_json_object, strip_code_fences
from .prompts import PromptTemplates, RenderedPrompt
from .extractor import ExtractionOutcome, MomentExtractor
from .agents import AgentResponse, AnalysisReport, SubAgentManager
from .usage import BudgetAlert, UsageRecord, UsageStats, UsageTracker

__all__ = [
    # Providers
    'ModelProvider', 'ModelProviderError', 'ModelProviderAuthError',
    'ModelProviderRateLimitError', 'ModelRequest', 'ModelResponse',
    'MockProvider', 'ProviderErrorCode', 'ProviderFactory',
    'ProviderHealthCheck', 'TokenUsage',
    # Cache
    'CachedProvider', 'ResponseCache',
    # Parsing
    'extract_json', 'parse_json_array', 'parse_json_object', 'strip_code_fences',
    # Prompts
    'PromptTemplates', 'RenderedPrompt',
    # Extraction
    'ExtractionOutcome', 'MomentExtractor',
    # Agents
    'AgentResponse', 'AnalysisReport', 'SubAgentManager',
    # Usage
    'BudgetAlert', 'UsageRecord', 'UsageStats', 'UsageTracker',
]
