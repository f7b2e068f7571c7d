"""
Anthropic Provider
==================

Direct Anthropic Messages API access through the official SDK.

BOUNDARY ENFORCEMENT:
- SDK retries are disabled (max_retries=0); retry policy lives in the
  sub-agent manager and the failover manager
- Every SDK exception is mapped to a ProviderErrorCode
"""

from __future__ import annotations
import os
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional

import anthropic

from .base import (
    ModelProvider,
    ModelRequest,
    ModelResponse,
    ProviderErrorCode,
    RateLimits,
    TokenUsage,
)


# USD per million tokens (input, output)
ANTHROPIC_PRICING: Dict[str, Dict[str, float]] = {
    "claude-3-5-sonnet-20241022": {"input": 3.0, "output": 15.0},
    "claude-3-5-haiku-20241022": {"input": 0.8, "output": 4.0},
    "claude-3-opus-20240229": {"input": 15.0, "output": 75.0},
    "claude-3-sonnet-20240229": {"input": 3.0, "output": 15.0},
    "claude-3-haiku-20240307": {"input": 0.25, "output": 1.25},
}


class AnthropicProvider(ModelProvider):
    """Anthropic Messages API provider."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: float = 60.0,
        model_mapping: Optional[Dict[str, Dict[str, str]]] = None,
        client: Optional[anthropic.Anthropic] = None
    ):
        super().__init__(model_mapping)
        self._api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        self._base_url = base_url
        self._timeout = timeout_seconds
        self._client = client

    @property
    def name(self) -> str:
        return "anthropic"

    @property
    def is_configured(self) -> bool:
        return self._client is not None or bool(self._api_key)

    def _get_client(self) -> anthropic.Anthropic:
        if self._client is None:
            self._client = anthropic.Anthropic(
                api_key=self._api_key,
                base_url=self._base_url,
                timeout=self._timeout,
                max_retries=0,
            )
        return self._client

    def send_request(self, request: ModelRequest) -> ModelResponse:
        invoked_at = datetime.now(timezone.utc)
        started = time.perf_counter()
        model_id = self.map_model_id(request.model)

        if not self.is_configured:
            return self._failure(
                ProviderErrorCode.NOT_CONFIGURED,
                "ANTHROPIC_API_KEY is not set",
                invoked_at, started, model=model_id,
            )

        params = {
            "model": model_id,
            "max_tokens": request.max_tokens,
            "messages": request.to_api_messages(),
            "temperature": request.temperature,
        }
        if request.system:
            params["system"] = request.system
        if request.top_p is not None:
            params["top_p"] = request.top_p
        if request.top_k is not None:
            params["top_k"] = request.top_k
        if request.stop_sequences:
            params["stop_sequences"] = list(request.stop_sequences)

        try:
            message = self._get_client().messages.create(**params)
        except anthropic.AuthenticationError as e:
            return self._failure(ProviderErrorCode.AUTH_ERROR, f"Authentication failed: {e}",
                                 invoked_at, started, model=model_id)
        except anthropic.PermissionDeniedError as e:
            return self._failure(ProviderErrorCode.AUTH_ERROR, f"Permission denied: {e}",
                                 invoked_at, started, model=model_id)
        except anthropic.RateLimitError as e:
            return self._failure(ProviderErrorCode.RATE_LIMITED, f"Rate limit exceeded: {e}",
                                 invoked_at, started, model=model_id,
                                 retry_after=_retry_after(e))
        except anthropic.NotFoundError as e:
            return self._failure(ProviderErrorCode.MODEL_NOT_FOUND, f"Model not found: {e}",
                                 invoked_at, started, model=model_id)
        except anthropic.BadRequestError as e:
            return self._failure(ProviderErrorCode.INVALID_REQUEST, f"Invalid request: {e}",
                                 invoked_at, started, model=model_id)
        except anthropic.APITimeoutError as e:
            return self._failure(ProviderErrorCode.TIMEOUT, f"Request timed out: {e}",
                                 invoked_at, started, model=model_id)
        except anthropic.APIConnectionError as e:
            return self._failure(ProviderErrorCode.NETWORK_ERROR, f"Connection failed: {e}",
                                 invoked_at, started, model=model_id)
        except anthropic.APIStatusError as e:
            code = ProviderErrorCode.API_ERROR if e.status_code >= 500 else ProviderErrorCode.INVALID_REQUEST
            return self._failure(code, f"API error {e.status_code}: {e}",
                                 invoked_at, started, model=model_id)

        text = "".join(
            block.text for block in message.content
            if getattr(block, "type", None) == "text"
        )
        usage = TokenUsage(
            input_tokens=message.usage.input_tokens,
            output_tokens=message.usage.output_tokens,
        )
        return ModelResponse(
            success=True,
            provider=self.name,
            content=text,
            model=message.model,
            usage=usage,
            stop_reason=message.stop_reason,
            invoked_at=invoked_at,
            latency_ms=(time.perf_counter() - started) * 1000.0,
        )

    def validate_auth(self) -> bool:
        if not self.is_configured:
            return False
        return self.health_check().is_healthy

    def get_available_models(self) -> List[str]:
        return list(ANTHROPIC_PRICING.keys())

    def estimate_cost(self, usage: TokenUsage, model: str) -> float:
        pricing = ANTHROPIC_PRICING.get(
            self.map_model_id(model),
            ANTHROPIC_PRICING["claude-3-5-sonnet-20241022"],
        )
        return (
            usage.input_tokens / 1_000_000 * pricing["input"]
            + usage.output_tokens / 1_000_000 * pricing["output"]
        )

    def get_rate_limits(self) -> RateLimits:
        return RateLimits(requests_per_minute=50, tokens_per_minute=40000, concurrent_requests=5)


def _retry_after(error: anthropic.APIStatusError) -> Optional[float]:
    value = error.response.headers.get("retry-after") if error.response is not None else None
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None
