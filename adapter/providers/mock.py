"""
Mock Model Provider
===================

Deterministic scripted provider for tests and offline runs.

GUARANTEES:
- Same prompt -> same response (unless scripted otherwise)
- Explicit failure modes can be triggered, permanently or for the first N calls
- No external dependencies
"""

from __future__ import annotations
import hashlib
import json
import threading
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from .base import (
    ModelProvider,
    ModelRequest,
    ModelResponse,
    ProviderErrorCode,
    RateLimits,
    TokenUsage,
)


class MockProvider(ModelProvider):
    """
    Scripted provider.

    Response selection, in order:
    1. failure_mode set, or fewer than fail_times calls so far -> failure
    2. responder(request) if given
    3. next entry of `responses` (the last one repeats)
    4. a deterministic JSON document derived from the prompt hash
    """

    def __init__(
        self,
        name: str = "mock",
        responses: Optional[Sequence[str]] = None,
        responder: Optional[Callable[[ModelRequest], str]] = None,
        failure_mode: Optional[ProviderErrorCode] = None,
        fail_times: int = 0,
        latency_ms: float = 0.0,
        cost_per_1k_tokens: float = 0.0
    ):
        super().__init__()
        self._name = name
        self._responses = list(responses or [])
        self._responder = responder
        self._failure_mode = failure_mode
        self._fail_times = fail_times
        self._latency_ms = latency_ms
        self._cost_per_1k = cost_per_1k_tokens
        self._requests: List[ModelRequest] = []
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def requests(self) -> List[ModelRequest]:
        """Requests received so far (copy)."""
        with self._lock:
            return list(self._requests)

    @property
    def call_count(self) -> int:
        return len(self._requests)

    def set_failure_mode(self, failure_mode: Optional[ProviderErrorCode]):
        self._failure_mode = failure_mode

    def send_request(self, request: ModelRequest) -> ModelResponse:
        invoked_at = datetime.now(timezone.utc)
        started = time.perf_counter()

        with self._lock:
            self._requests.append(request)
            call_number = len(self._requests)

        if self._latency_ms:
            time.sleep(self._latency_ms / 1000.0)

        failure = self._failure_mode
        if failure is None and call_number <= self._fail_times:
            failure = ProviderErrorCode.API_ERROR
        if failure is not None:
            return self._failure(
                failure,
                f"Mock provider configured to fail: {failure.value}",
                invoked_at,
                started,
                model=request.model,
            )

        content = self._next_content(request, call_number)
        usage = TokenUsage(
            input_tokens=len(request.prompt.split()),
            output_tokens=len(content.split()),
        )
        return ModelResponse(
            success=True,
            provider=self._name,
            content=content,
            model=self.map_model_id(request.model),
            usage=usage,
            stop_reason="end_turn",
            invoked_at=invoked_at,
            latency_ms=(time.perf_counter() - started) * 1000.0,
        )

    def _next_content(self, request: ModelRequest, call_number: int) -> str:
        if self._responder is not None:
            return self._responder(request)
        if self._responses:
            return self._responses[min(call_number, len(self._responses)) - 1]
        digest = hashlib.sha256(request.prompt.encode()).hexdigest()[:16]
        return json.dumps({"mock": True, "digest": digest})

    def validate_auth(self) -> bool:
        return self._failure_mode is not ProviderErrorCode.AUTH_ERROR

    def get_available_models(self) -> List[str]:
        return ["mock-model"]

    def estimate_cost(self, usage: TokenUsage, model: str) -> float:
        return usage.total_tokens / 1000.0 * self._cost_per_1k

    def get_rate_limits(self) -> RateLimits:
        return RateLimits(requests_per_minute=1000, tokens_per_minute=1000000, concurrent_requests=100)
