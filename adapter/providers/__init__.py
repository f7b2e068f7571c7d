"""
Model Providers Package
=======================

Provider implementations for model invocation.

Available providers:
- AnthropicProvider: Anthropic Messages API (anthropic SDK)
- BedrockProvider: Claude on AWS Bedrock (boto3)
- MockProvider: Deterministic scripted provider for testing
"""

from .base import (
    DEFAULT_MODEL_MAPPING,
    Message,
    ModelProvider,
    ModelProviderError,
    ModelProviderAuthError,
    ModelProviderRateLimitError,
    ModelRequest,
    ModelResponse,
    ProviderErrorCode,
    ProviderHealthCheck,
    RateLimits,
    TokenUsage,
)
from .mock import MockProvider
from .factory import ProviderFactory

__all__ = [
    'DEFAULT_MODEL_MAPPING',
    'Message',
    'ModelProvider',
    'ModelProviderError',
    'ModelProviderAuthError',
    'ModelProviderRateLimitError',
    'ModelRequest',
    'ModelResponse',
    'ProviderErrorCode',
    'ProviderHealthCheck',
    'RateLimits',
    'TokenUsage',
    'MockProvider',
    'ProviderFactory',
]

# SDK-backed providers imported separately so the SDKs load only when used
# Use: from adapter.providers.anthropic_provider import AnthropicProvider
#      from adapter.providers.bedrock_provider import BedrockProvider
