"""
Provider Tests
==============

INVARIANTS TESTED:
1. send_request never raises: every SDK failure maps to a ProviderErrorCode
2. Model aliases resolve per provider, unknown ids pass through
3. Only successful responses are cached; eviction is least-recently-used
4. The factory keeps one instance per provider type
"""

import io
import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import anthropic
import httpx
import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from adapter.cache import CachedProvider, ResponseCache
from adapter.providers.anthropic_provider import AnthropicProvider
from adapter.providers.base import (
    ModelProviderAuthError,
    ModelProviderError,
    ModelProviderRateLimitError,
    ModelRequest,
    ModelResponse,
    ProviderErrorCode,
    TokenUsage,
)
from adapter.providers.bedrock_provider import BEDROCK_ANTHROPIC_VERSION, BedrockProvider
from adapter.providers.factory import ProviderFactory
from adapter.providers.mock import MockProvider
from moments.config import ConfigurationError, ProviderConfig

from tests.fixtures import make_mock_factory


REQUEST = ModelRequest.create("Find the moments", system="You are an analyst", temperature=0.2)

_HTTP_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def http_response(status: int, headers=None) -> httpx.Response:
    return httpx.Response(status, request=_HTTP_REQUEST, headers=headers or {})


# =============================================================================
# BASE TYPES
# =============================================================================

class TestModelResponse:

    def test_success_requires_content(self):
        with pytest.raises(ValueError):
            ModelResponse(success=True, provider="mock")

    def test_failure_requires_code(self):
        with pytest.raises(ValueError):
            ModelResponse(success=False, provider="mock")

    def test_retryable_codes(self):
        assert ModelResponse(success=False, provider="x", error_code=ProviderErrorCode.TIMEOUT).retryable
        assert not ModelResponse(success=False, provider="x", error_code=ProviderErrorCode.AUTH_ERROR).retryable

    def test_to_error_subclasses(self):
        auth = ModelResponse(success=False, provider="x", error_code=ProviderErrorCode.AUTH_ERROR)
        limited = ModelResponse(success=False, provider="x", error_code=ProviderErrorCode.RATE_LIMITED,
                                retry_after=3.0)
        assert isinstance(auth.to_error(), ModelProviderAuthError)
        error = limited.to_error()
        assert isinstance(error, ModelProviderRateLimitError)
        assert error.retry_after == 3.0
        assert isinstance(error, ModelProviderError)


class TestModelRequest:

    def test_cache_key_ignores_metadata(self):
        a = ModelRequest.create("p", task="x")
        b = ModelRequest.create("p", task="y")
        assert a.cache_key() == b.cache_key()

    def test_cache_key_tracks_parameters(self):
        assert ModelRequest.create("p").cache_key() != ModelRequest.create("p", temperature=0.9).cache_key()

    def test_model_mapping(self):
        provider = AnthropicProvider(api_key="k", model_mapping={"sonnet": {"anthropic": "custom-sonnet"}})
        assert provider.map_model_id("sonnet") == "custom-sonnet"
        assert provider.map_model_id("haiku") == "claude-3-5-haiku-20241022"
        assert provider.map_model_id("claude-exact-id") == "claude-exact-id"


# =============================================================================
# MOCK
# =============================================================================

class TestMockProvider:

    def test_deterministic_default(self):
        provider = MockProvider()
        assert provider.send_request(REQUEST).content == provider.send_request(REQUEST).content

    def test_scripted_responses_repeat_last(self):
        provider = MockProvider(responses=["one", "two"])
        contents = [provider.send_request(REQUEST).content for _ in range(3)]
        assert contents == ["one", "two", "two"]

    def test_fail_times_then_recover(self):
        provider = MockProvider(fail_times=2)
        assert [provider.send_request(REQUEST).success for _ in range(3)] == [False, False, True]

    def test_failure_mode(self):
        response = MockProvider(failure_mode=ProviderErrorCode.TIMEOUT).send_request(REQUEST)
        assert response.error_code is ProviderErrorCode.TIMEOUT

    def test_health_check_reflects_failure(self):
        check = MockProvider(failure_mode=ProviderErrorCode.API_ERROR).health_check()
        assert check.is_healthy is False
        assert check.provider == "mock"
        assert "configured to fail" in check.error


# =============================================================================
# ANTHROPIC
# =============================================================================

def anthropic_client(result=None, error=None) -> MagicMock:
    client = MagicMock()
    if error is not None:
        client.messages.create.side_effect = error
    else:
        client.messages.create.return_value = result
    return client


class TestAnthropicProvider:

    def test_success(self):
        message = SimpleNamespace(
            content=[SimpleNamespace(type="text", text="[]"), SimpleNamespace(type="tool_use")],
            usage=SimpleNamespace(input_tokens=12, output_tokens=3),
            model="claude-3-5-sonnet-20241022",
            stop_reason="end_turn",
        )
        client = anthropic_client(message)

        response = AnthropicProvider(client=client).send_request(REQUEST)

        assert response.success
        assert response.content == "[]"
        assert response.usage.total_tokens == 15
        params = client.messages.create.call_args.kwargs
        assert params["model"] == "claude-3-5-sonnet-20241022"
        assert params["system"] == "You are an analyst"
        assert params["messages"] == [{"role": "user", "content": "Find the moments"}]
        assert params["temperature"] == 0.2

    def test_missing_key_not_configured(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        response = AnthropicProvider().send_request(REQUEST)
        assert response.error_code is ProviderErrorCode.NOT_CONFIGURED
        assert AnthropicProvider().validate_auth() is False

    @pytest.mark.parametrize("error, code", [
        (anthropic.AuthenticationError("bad key", response=http_response(401), body=None),
         ProviderErrorCode.AUTH_ERROR),
        (anthropic.PermissionDeniedError("denied", response=http_response(403), body=None),
         ProviderErrorCode.AUTH_ERROR),
        (anthropic.NotFoundError("no model", response=http_response(404), body=None),
         ProviderErrorCode.MODEL_NOT_FOUND),
        (anthropic.BadRequestError("bad", response=http_response(400), body=None),
         ProviderErrorCode.INVALID_REQUEST),
        (anthropic.InternalServerError("boom", response=http_response(500), body=None),
         ProviderErrorCode.API_ERROR),
        (anthropic.APITimeoutError(request=_HTTP_REQUEST), ProviderErrorCode.TIMEOUT),
        (anthropic.APIConnectionError(request=_HTTP_REQUEST), ProviderErrorCode.NETWORK_ERROR),
    ])
    def test_error_mapping(self, error, code):
        response = AnthropicProvider(client=anthropic_client(error=error)).send_request(REQUEST)
        assert not response.success
        assert response.error_code is code
        assert response.provider == "anthropic"

    def test_rate_limit_retry_after(self):
        error = anthropic.RateLimitError("slow", response=http_response(429, {"retry-after": "7"}), body=None)
        response = AnthropicProvider(client=anthropic_client(error=error)).send_request(REQUEST)
        assert response.error_code is ProviderErrorCode.RATE_LIMITED
        assert response.retry_after == 7.0

    def test_cost_estimate(self):
        cost = AnthropicProvider(api_key="k").estimate_cost(TokenUsage(1_000_000, 1_000_000), "sonnet")
        assert cost == pytest.approx(18.0)


# =============================================================================
# BEDROCK
# =============================================================================

def bedrock_client(payload=None, error=None, raw: bytes = None) -> MagicMock:
    client = MagicMock()
    if error is not None:
        client.invoke_model.side_effect = error
    else:
        body = raw if raw is not None else json.dumps(payload).encode()
        client.invoke_model.return_value = {"body": io.BytesIO(body)}
    return client


def client_error(code: str, message: str = "nope") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, "InvokeModel")


class TestBedrockProvider:

    def test_success(self):
        client = bedrock_client({
            "content": [{"type": "text", "text": "[]"}],
            "usage": {"input_tokens": 4, "output_tokens": 2},
            "stop_reason": "end_turn",
        })

        response = BedrockProvider(region="eu-west-1", client=client).send_request(REQUEST)

        assert response.success
        assert response.content == "[]"
        assert response.usage.total_tokens == 6
        kwargs = client.invoke_model.call_args.kwargs
        assert kwargs["modelId"] == "us.anthropic.claude-3-5-sonnet-20241022-v2:0"
        body = json.loads(kwargs["body"])
        assert body["anthropic_version"] == BEDROCK_ANTHROPIC_VERSION
        assert body["system"] == "You are an analyst"
        assert body["max_tokens"] == 4000

    @pytest.mark.parametrize("aws_code, code", [
        ("AccessDeniedException", ProviderErrorCode.AUTH_ERROR),
        ("ThrottlingException", ProviderErrorCode.RATE_LIMITED),
        ("ValidationException", ProviderErrorCode.INVALID_REQUEST),
        ("ModelTimeoutException", ProviderErrorCode.TIMEOUT),
        ("SomethingNew", ProviderErrorCode.API_ERROR),
    ])
    def test_client_error_mapping(self, aws_code, code):
        provider = BedrockProvider(client=bedrock_client(error=client_error(aws_code)))
        response = provider.send_request(REQUEST)
        assert response.error_code is code
        assert response.error_message.startswith(aws_code)

    def test_model_not_found_names_region(self):
        provider = BedrockProvider(region="ap-south-1", client=bedrock_client(error=client_error("ResourceNotFoundException")))
        response = provider.send_request(REQUEST)
        assert response.error_code is ProviderErrorCode.MODEL_NOT_FOUND
        assert "ap-south-1" in response.error_message

    def test_no_credentials(self):
        provider = BedrockProvider(client=bedrock_client(error=NoCredentialsError()))
        assert provider.send_request(REQUEST).error_code is ProviderErrorCode.AUTH_ERROR

    def test_connection_error(self):
        provider = BedrockProvider(client=bedrock_client(error=EndpointConnectionError(endpoint_url="https://x")))
        assert provider.send_request(REQUEST).error_code is ProviderErrorCode.NETWORK_ERROR

    def test_unreadable_body(self):
        provider = BedrockProvider(client=bedrock_client(raw=b"not json"))
        assert provider.send_request(REQUEST).error_code is ProviderErrorCode.INVALID_RESPONSE

    def test_region_resolution(self, monkeypatch):
        monkeypatch.setenv("AWS_REGION", "eu-central-1")
        assert BedrockProvider().region == "eu-central-1"
        monkeypatch.delenv("AWS_REGION")
        provider = BedrockProvider()
        assert provider.region == "us-east-1"
        provider.set_region("us-west-2")
        assert provider.region == "us-west-2"


# =============================================================================
# CACHE
# =============================================================================

class TestCachedProvider:

    def test_second_call_served_from_cache(self):
        inner = MockProvider(responses=["[]"])
        provider = CachedProvider(inner, ResponseCache())

        first = provider.send_request(REQUEST)
        second = provider.send_request(REQUEST)

        assert inner.call_count == 1
        assert not first.cached
        assert second.cached
        stats = provider.cache.get_stats()
        assert stats.hit_count == 1
        assert stats.miss_count == 1

    def test_failures_not_cached(self):
        inner = MockProvider(fail_times=1, responses=["[]"])
        provider = CachedProvider(inner)
        assert not provider.send_request(REQUEST).success
        assert provider.send_request(REQUEST).success
        assert inner.call_count == 2

    def test_eviction(self):
        cache = ResponseCache(max_entries=1)
        ok = ModelResponse(success=True, provider="mock", content="x")
        cache.put("a", ok)
        cache.put("b", ok)
        assert cache.get("a") is None
        assert cache.get_stats().eviction_count == 1

    def test_read_refreshes_recency(self):
        cache = ResponseCache(max_entries=2)
        ok = ModelResponse(success=True, provider="mock", content="x")
        cache.put("a", ok)
        cache.put("b", ok)
        assert cache.get("a") is ok

        cache.put("c", ok)

        assert cache.get("b") is None
        assert cache.get("a") is ok
        assert cache.get("c") is ok

    def test_overwrite_does_not_evict(self):
        cache = ResponseCache(max_entries=2)
        ok = ModelResponse(success=True, provider="mock", content="x")
        cache.put("a", ok)
        cache.put("b", ok)
        cache.put("a", ok)
        assert cache.get_stats().eviction_count == 0
        assert cache.get_stats().total_entries == 2

    def test_expired_entry_is_a_miss(self):
        cache = ResponseCache(ttl_seconds=-1)
        cache.put("a", ModelResponse(success=True, provider="mock", content="x"))
        assert cache.get("a") is None


# =============================================================================
# FACTORY
# =============================================================================

class TestProviderFactory:

    def test_uninitialized_primary(self):
        factory = ProviderFactory(ProviderConfig(type="mock", fallback=None))
        with pytest.raises(ModelProviderError) as info:
            factory.get_primary()
        assert info.value.code is ProviderErrorCode.NOT_CONFIGURED

    def test_one_instance_per_type(self):
        factory = make_mock_factory()
        assert factory.get_primary() is factory.get_provider("mock")

    def test_builders_and_fallback(self):
        primary, fallback = MockProvider("mock"), MockProvider("bedrock")
        factory = make_mock_factory(primary, fallback, fallback="bedrock")
        assert factory.get_primary() is primary
        assert factory.get_fallback() is fallback
        assert factory.available_providers() == ["mock", "bedrock"]

    def test_same_fallback_as_primary_dropped(self):
        factory = make_mock_factory()
        factory.initialize("mock", "mock")
        assert factory.fallback_type is None

    def test_unknown_type(self):
        with pytest.raises(ConfigurationError):
            ProviderFactory(ProviderConfig(type="mock", fallback=None)).get_provider("openai")

    def test_cache_wraps_built_providers(self):
        factory = ProviderFactory(ProviderConfig(type="mock", fallback=None))
        factory.initialize()
        assert isinstance(factory.get_primary(), CachedProvider)
        assert factory.cache is not None

    def test_provider_with_fallback_skips_unhealthy_primary(self):
        primary = MockProvider("mock", failure_mode=ProviderErrorCode.API_ERROR)
        fallback = MockProvider("bedrock")
        factory = make_mock_factory(primary, fallback, fallback="bedrock")
        assert factory.get_provider_with_fallback() is fallback

    def test_no_healthy_provider(self):
        factory = make_mock_factory(MockProvider(failure_mode=ProviderErrorCode.API_ERROR))
        with pytest.raises(ModelProviderError):
            factory.get_provider_with_fallback()

    def test_health_check_all(self):
        factory = make_mock_factory(MockProvider("mock"), MockProvider("bedrock"), fallback="bedrock")
        checks = factory.health_check_all()
        assert set(checks) == {"mock", "bedrock"}
        assert all(c.is_healthy for c in checks.values())

    def test_reset(self):
        factory = make_mock_factory()
        factory.reset()
        assert factory.primary_type is None
        assert factory.available_providers() == []

    def test_from_environment_both_credentials(self):
        factory = ProviderFactory.create_from_environment({"ANTHROPIC_API_KEY": "k", "AWS_REGION": "us-east-1"})
        assert factory.primary_type == "anthropic"
        assert factory.fallback_type == "bedrock"

    def test_from_environment_bedrock_only(self):
        factory = ProviderFactory.create_from_environment({"AWS_PROFILE": "dev"})
        assert factory.primary_type == "bedrock"
        assert factory.fallback_type is None

    def test_from_environment_without_credentials(self):
        with pytest.raises(ModelProviderError) as info:
            ProviderFactory.create_from_environment({})
        assert info.value.code is ProviderErrorCode.NOT_CONFIGURED

    def test_config_rejects_unknown_type(self):
        with pytest.raises(ConfigurationError):
            ProviderConfig(type="openai")
