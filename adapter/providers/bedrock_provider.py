"""
Bedrock Provider
================

Claude models on AWS Bedrock via boto3 `bedrock-runtime` InvokeModel.

Credentials follow the standard boto3 chain (env, profile, instance role).
Region: explicit setting, then AWS_REGION, then us-east-1.
"""

from __future__ import annotations
import json
import os
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from .base import (
    ModelProvider,
    ModelRequest,
    ModelResponse,
    ProviderErrorCode,
    RateLimits,
    TokenUsage,
)


BEDROCK_ANTHROPIC_VERSION = "bedrock-2023-05-31"

# USD per thousand tokens (input, output)
BEDROCK_PRICING: Dict[str, Dict[str, float]] = {
    "anthropic.claude-3-opus-20240229-v1:0": {"input": 0.015, "output": 0.075},
    "anthropic.claude-3-sonnet-20240229-v1:0": {"input": 0.003, "output": 0.015},
    "anthropic.claude-3-haiku-20240307-v1:0": {"input": 0.00025, "output": 0.00125},
    "us.anthropic.claude-3-5-sonnet-20241022-v2:0": {"input": 0.003, "output": 0.015},
    "us.anthropic.claude-3-5-haiku-20241022-v1:0": {"input": 0.0008, "output": 0.004},
}

_ERROR_CODES = {
    "AccessDeniedException": ProviderErrorCode.AUTH_ERROR,
    "UnrecognizedClientException": ProviderErrorCode.AUTH_ERROR,
    "ExpiredTokenException": ProviderErrorCode.AUTH_ERROR,
    "ThrottlingException": ProviderErrorCode.RATE_LIMITED,
    "ServiceQuotaExceededException": ProviderErrorCode.RATE_LIMITED,
    "ResourceNotFoundException": ProviderErrorCode.MODEL_NOT_FOUND,
    "ValidationException": ProviderErrorCode.INVALID_REQUEST,
    "ModelTimeoutException": ProviderErrorCode.TIMEOUT,
    "ModelNotReadyException": ProviderErrorCode.API_ERROR,
    "ServiceUnavailableException": ProviderErrorCode.API_ERROR,
    "InternalServerException": ProviderErrorCode.API_ERROR,
}


class BedrockProvider(ModelProvider):
    """AWS Bedrock provider for Anthropic models."""

    def __init__(
        self,
        region: Optional[str] = None,
        profile: Optional[str] = None,
        model_mapping: Optional[Dict[str, Dict[str, str]]] = None,
        client: Any = None
    ):
        super().__init__(model_mapping)
        self._region = region or os.environ.get("AWS_REGION") or "us-east-1"
        self._profile = profile
        self._client = client

    @property
    def name(self) -> str:
        return "bedrock"

    @property
    def region(self) -> str:
        return self._region

    def set_region(self, region: str):
        """Switch region; the client is rebuilt on next use."""
        self._region = region
        self._client = None

    def _get_client(self):
        if self._client is None:
            session = boto3.Session(profile_name=self._profile, region_name=self._region)
            self._client = session.client("bedrock-runtime", region_name=self._region)
        return self._client

    def _build_body(self, request: ModelRequest) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "anthropic_version": BEDROCK_ANTHROPIC_VERSION,
            "max_tokens": request.max_tokens or 4000,
            "messages": request.to_api_messages(),
            "temperature": request.temperature,
        }
        if request.system:
            body["system"] = request.system
        if request.top_p is not None:
            body["top_p"] = request.top_p
        if request.top_k is not None:
            body["top_k"] = request.top_k
        if request.stop_sequences:
            body["stop_sequences"] = list(request.stop_sequences)
        return body

    def send_request(self, request: ModelRequest) -> ModelResponse:
        invoked_at = datetime.now(timezone.utc)
        started = time.perf_counter()
        model_id = self.map_model_id(request.model)

        try:
            raw = self._get_client().invoke_model(
                modelId=model_id,
                body=json.dumps(self._build_body(request)),
                contentType="application/json",
                accept="application/json",
            )
            payload = json.loads(raw["body"].read())
        except ClientError as e:
            error = e.response.get("Error", {})
            aws_code = error.get("Code", "")
            code = _ERROR_CODES.get(aws_code, ProviderErrorCode.API_ERROR)
            message = error.get("Message") or str(e)
            if code is ProviderErrorCode.MODEL_NOT_FOUND:
                message = f"Model not available in region {self._region}: {model_id}"
            return self._failure(code, f"{aws_code}: {message}", invoked_at, started, model=model_id)
        except NoCredentialsError as e:
            return self._failure(ProviderErrorCode.AUTH_ERROR, f"No AWS credentials: {e}",
                                 invoked_at, started, model=model_id)
        except BotoCoreError as e:
            return self._failure(ProviderErrorCode.NETWORK_ERROR, f"AWS client error: {e}",
                                 invoked_at, started, model=model_id)
        except (json.JSONDecodeError, KeyError) as e:
            return self._failure(ProviderErrorCode.INVALID_RESPONSE, f"Unreadable Bedrock response: {e}",
                                 invoked_at, started, model=model_id)

        text = "".join(
            block.get("text", "") for block in payload.get("content", [])
            if block.get("type") == "text"
        )
        usage = payload.get("usage") or {}
        return ModelResponse(
            success=True,
            provider=self.name,
            content=text,
            model=model_id,
            usage=TokenUsage(
                input_tokens=int(usage.get("input_tokens", 0)),
                output_tokens=int(usage.get("output_tokens", 0)),
            ),
            stop_reason=payload.get("stop_reason"),
            invoked_at=invoked_at,
            latency_ms=(time.perf_counter() - started) * 1000.0,
        )

    def validate_auth(self) -> bool:
        return self.health_check().is_healthy

    def get_available_models(self) -> List[str]:
        return list(BEDROCK_PRICING.keys())

    def estimate_cost(self, usage: TokenUsage, model: str) -> float:
        pricing = BEDROCK_PRICING.get(
            self.map_model_id(model),
            BEDROCK_PRICING["us.anthropic.claude-3-5-sonnet-20241022-v2:0"],
        )
        return (
            usage.input_tokens / 1000 * pricing["input"]
            + usage.output_tokens / 1000 * pricing["output"]
        )

    def get_rate_limits(self) -> RateLimits:
        # Varies by region and account quota
        return RateLimits(requests_per_minute=100, tokens_per_minute=100000, concurrent_requests=10)
