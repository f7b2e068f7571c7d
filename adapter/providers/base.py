"""
Model Provider Abstraction Layer
================================

Abstract interface for hosted model providers (Anthropic, Bedrock).

BOUNDARY ENFORCEMENT:
- Providers are stateless invocation handlers (apart from a lazily built client)
- send_request never raises: failures come back as ModelResponse(success=False)
- Model aliases (sonnet / haiku / opus) are resolved per provider via map_model_id
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple
import hashlib
import json
import time


class ProviderErrorCode(Enum):
    """Explicit failure codes for model invocations."""
    AUTH_ERROR = "auth_error"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    MODEL_NOT_FOUND = "model_not_found"
    INVALID_REQUEST = "invalid_request"
    INVALID_RESPONSE = "invalid_response"
    API_ERROR = "api_error"
    NETWORK_ERROR = "network_error"
    NOT_CONFIGURED = "not_configured"
    CIRCUIT_OPEN = "circuit_open"


# Codes worth retrying on the same provider after a backoff
RETRYABLE_CODES = frozenset({
    ProviderErrorCode.RATE_LIMITED,
    ProviderErrorCode.TIMEOUT,
    ProviderErrorCode.API_ERROR,
    ProviderErrorCode.NETWORK_ERROR,
})


DEFAULT_MODEL_MAPPING: Dict[str, Dict[str, str]] = {
    "sonnet": {
        "anthropic": "claude-3-5-sonnet-20241022",
        "bedrock": "us.anthropic.claude-3-5-sonnet-20241022-v2:0",
    },
    "haiku": {
        "anthropic": "claude-3-5-haiku-20241022",
        "bedrock": "us.anthropic.claude-3-5-haiku-20241022-v1:0",
    },
    "opus": {
        "anthropic": "claude-3-opus-20240229",
        "bedrock": "anthropic.claude-3-opus-20240229-v1:0",
    },
}


# =============================================================================
# EXCEPTIONS (raised only once every provider option is exhausted)
# =============================================================================

class ModelProviderError(Exception):
    def __init__(
        self,
        message: str,
        provider: str,
        code: ProviderErrorCode = ProviderErrorCode.API_ERROR,
        retryable: Optional[bool] = None
    ):
        super().__init__(message)
        self.provider = provider
        self.code = code
        self.retryable = code in RETRYABLE_CODES if retryable is None else retryable


class ModelProviderAuthError(ModelProviderError):
    def __init__(self, message: str, provider: str):
        super().__init__(message, provider, ProviderErrorCode.AUTH_ERROR, retryable=False)


class ModelProviderRateLimitError(ModelProviderError):
    def __init__(self, message: str, provider: str, retry_after: Optional[float] = None):
        super().__init__(message, provider, ProviderErrorCode.RATE_LIMITED, retryable=True)
        self.retry_after = retry_after


# =============================================================================
# REQUEST / RESPONSE
# =============================================================================

@dataclass(frozen=True)
class Message:
    role: str  # "user" | "assistant"
    content: str


@dataclass(frozen=True)
class ModelRequest:
    """
    Immutable model request.

    `model` is either an alias (sonnet / haiku / opus) or a concrete
    provider model id; providers resolve it with map_model_id.
    """
    messages: Tuple[Message, ...]
    model: str = "sonnet"
    max_tokens: int = 4000
    temperature: float = 0.3
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    stop_sequences: Tuple[str, ...] = ()
    system: Optional[str] = None
    metadata: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    @staticmethod
    def create(
        prompt: str,
        model: str = "sonnet",
        max_tokens: int = 4000,
        temperature: float = 0.3,
        system: Optional[str] = None,
        **metadata: str
    ) -> ModelRequest:
        return ModelRequest(
            messages=(Message(role="user", content=prompt),),
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
            metadata=tuple(sorted(metadata.items())),
        )

    @property
    def prompt(self) -> str:
        """Text of the last user message."""
        for message in reversed(self.messages):
            if message.role == "user":
                return message.content
        return ""

    def cache_key(self) -> str:
        """Stable digest of everything that influences the completion."""
        payload = {
            "messages": [[m.role, m.content] for m in self.messages],
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "top_k": self.top_k,
            "stop": list(self.stop_sequences),
            "system": self.system,
        }
        return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()

    def to_api_messages(self) -> List[Dict[str, str]]:
        return [{"role": m.role, "content": m.content} for m in self.messages]


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class ModelResponse:
    """
    Immutable response from a model provider.

    INVARIANT: Either (success=True, content set) or (success=False, error_code set)
    """
    success: bool
    provider: str
    content: Optional[str] = None
    model: Optional[str] = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    stop_reason: Optional[str] = None

    # Failure info (only set if success=False)
    error_code: Optional[ProviderErrorCode] = None
    error_message: Optional[str] = None
    retry_after: Optional[float] = None

    invoked_at: Optional[datetime] = None
    latency_ms: float = 0.0
    cached: bool = False

    def __post_init__(self):
        if self.success and self.content is None:
            raise ValueError("Successful response must have content")
        if not self.success and self.error_code is None:
            raise ValueError("Failed response must have error_code")

    @property
    def retryable(self) -> bool:
        return not self.success and self.error_code in RETRYABLE_CODES

    def to_error(self) -> ModelProviderError:
        """Convert a failed response into the matching exception."""
        message = self.error_message or (self.error_code.value if self.error_code else "unknown error")
        if self.error_code is ProviderErrorCode.AUTH_ERROR:
            return ModelProviderAuthError(message, self.provider)
        if self.error_code is ProviderErrorCode.RATE_LIMITED:
            return ModelProviderRateLimitError(message, self.provider, self.retry_after)
        return ModelProviderError(message, self.provider, self.error_code or ProviderErrorCode.API_ERROR)


@dataclass(frozen=True)
class ProviderHealthCheck:
    is_healthy: bool
    provider: str
    latency_ms: float
    last_checked: datetime
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "is_healthy": self.is_healthy,
            "provider": self.provider,
            "latency_ms": self.latency_ms,
            "last_checked": self.last_checked.isoformat(),
            "error": self.error,
        }


@dataclass(frozen=True)
class RateLimits:
    requests_per_minute: int
    tokens_per_minute: int
    concurrent_requests: int


# =============================================================================
# PROVIDER INTERFACE
# =============================================================================

class ModelProvider(ABC):
    """
    Abstract model provider interface.

    GUARANTEES:
    - send_request returns a ModelResponse, never raises
    - health_check returns a ProviderHealthCheck, never raises
    - Unknown model aliases pass through unchanged to the provider
    """

    def __init__(self, model_mapping: Optional[Dict[str, Dict[str, str]]] = None):
        mapping = {alias: dict(ids) for alias, ids in DEFAULT_MODEL_MAPPING.items()}
        for alias, ids in (model_mapping or {}).items():
            mapping.setdefault(alias, {}).update(ids)
        self._model_mapping = mapping

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique provider identifier ("anthropic" | "bedrock" | "mock")."""
        pass

    @abstractmethod
    def send_request(self, request: ModelRequest) -> ModelResponse:
        """
        Invoke the model.

        MUST return ModelResponse, never raise exceptions.
        """
        pass

    @abstractmethod
    def validate_auth(self) -> bool:
        pass

    @abstractmethod
    def get_available_models(self) -> List[str]:
        pass

    @abstractmethod
    def estimate_cost(self, usage: TokenUsage, model: str) -> float:
        """Estimated cost in USD for the given usage."""
        pass

    @abstractmethod
    def get_rate_limits(self) -> RateLimits:
        pass

    def map_model_id(self, model: str) -> str:
        ids = self._model_mapping.get(model)
        if ids and self.name in ids:
            return ids[self.name]
        return model

    def health_check(self) -> ProviderHealthCheck:
        """Send a minimal request and time it."""
        started = time.perf_counter()
        response = self.send_request(ModelRequest.create("ping", model="haiku", max_tokens=10, temperature=0.0))
        latency_ms = (time.perf_counter() - started) * 1000.0
        return ProviderHealthCheck(
            is_healthy=response.success,
            provider=self.name,
            latency_ms=latency_ms,
            last_checked=datetime.now(timezone.utc),
            error=None if response.success else response.error_message,
        )

    def _failure(
        self,
        code: ProviderErrorCode,
        message: str,
        invoked_at: datetime,
        started: float,
        model: Optional[str] = None,
        retry_after: Optional[float] = None
    ) -> ModelResponse:
        return ModelResponse(
            success=False,
            provider=self.name,
            model=model,
            error_code=code,
            error_message=message,
            retry_after=retry_after,
            invoked_at=invoked_at,
            latency_ms=(time.perf_counter() - started) * 1000.0,
        )
