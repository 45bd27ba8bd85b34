"""
Tests for the LLM gateway, the AI client adapter and retry classification.

Tests cover:
- Retry of transient provider errors with backoff, give-up on client errors
- Usage taken from the provider response, metrics per purpose
- AIClient wrapping provider errors in LLMError
- Cost estimation
- is_retryable classification
"""

from unittest.mock import MagicMock

import pytest
from llama_index.core.base.llms.types import ChatMessage, ChatResponse, MessageRole

from commitloom.core.errors import LLMError, VCSError, is_retryable
from commitloom.core.gateway import LLMGateway, _usage_from_raw, estimate_cost
from commitloom.core.review.client import AIClient

MODEL = "claude-sonnet-4-5-20250929"


class ProviderError(Exception):
    def __init__(self, status_code):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


def _response(text="ok", usage=None):
    return ChatResponse(
        message=ChatMessage(role=MessageRole.ASSISTANT, content=text),
        raw={"usage": usage or {"input_tokens": 12, "output_tokens": 3}},
    )


# ── Fixtures ──────────────────────────────────────────────────────────────


@pytest.fixture
def raw_llm():
    llm = MagicMock()
    llm.model = MODEL
    return llm


@pytest.fixture
def gateway(raw_llm):
    return LLMGateway(raw_llm, max_tries=3, retry_factor=0)


def _messages():
    return [
        ChatMessage(role=MessageRole.SYSTEM, content="system"),
        ChatMessage(role=MessageRole.USER, content="hello"),
    ]


# ── Tests: Gateway ────────────────────────────────────────────────────────


class TestLLMGateway:
    """Tests for retry and metrics in LLMGateway.chat."""

    def test_retries_rate_limit(self, gateway, raw_llm):
        raw_llm.chat.side_effect = [ProviderError(429), ProviderError(503), _response()]

        response = gateway.chat(_messages(), gateway_purpose="stage1")

        assert response.message.content == "ok"
        assert raw_llm.chat.call_count == 3
        metrics = gateway.get_metrics()
        assert metrics["retries"] == 2
        assert metrics["total_calls"] == 1
        assert metrics["calls_by_purpose"] == {"stage1": 1}
        assert metrics["total_tokens_in"] == 12
        assert metrics["total_tokens_out"] == 3

    def test_gives_up_on_client_error(self, gateway, raw_llm):
        raw_llm.chat.side_effect = ProviderError(400)

        with pytest.raises(ProviderError):
            gateway.chat(_messages(), gateway_purpose="sampling")

        assert raw_llm.chat.call_count == 1
        metrics = gateway.get_metrics()
        assert metrics["errors"] == 1
        assert metrics["calls_by_purpose"] == {"sampling_error": 1}

    def test_stops_after_max_tries(self, gateway, raw_llm):
        raw_llm.chat.side_effect = ProviderError(500)

        with pytest.raises(ProviderError):
            gateway.chat(_messages())

        assert raw_llm.chat.call_count == 3

    def test_reset_metrics(self, gateway, raw_llm):
        raw_llm.chat.return_value = _response()
        gateway.chat(_messages())

        gateway.reset_metrics()

        assert gateway.get_metrics()["total_calls"] == 0
        assert gateway.get_metrics()["model"] == MODEL


# ── Tests: AIClient ───────────────────────────────────────────────────────


class TestAIClient:
    """Tests for the complete() adapter over the gateway."""

    def test_complete_returns_usage_and_cost(self, gateway, raw_llm):
        raw_llm.chat.return_value = _response('{"a": 1}', {"input_tokens": 1_000_000, "output_tokens": 0})
        client = AIClient(gateway, max_tokens=512)

        result = client.complete("system", "user", purpose="stage2")

        assert result.text == '{"a": 1}'
        assert result.input_tokens == 1_000_000
        assert result.cost_usd == 3.0
        assert result.model == MODEL
        kwargs = raw_llm.chat.call_args.kwargs
        assert kwargs["max_tokens"] == 512
        assert "gateway_purpose" not in kwargs

    def test_generation_kwargs_can_be_disabled(self, gateway, raw_llm):
        raw_llm.chat.return_value = _response()
        AIClient(gateway, pass_generation_kwargs=False).complete("s", "u")

        assert raw_llm.chat.call_args.kwargs == {}

    def test_provider_error_becomes_llm_error(self, gateway, raw_llm):
        raw_llm.chat.side_effect = ProviderError(401)

        with pytest.raises(LLMError) as exc_info:
            AIClient(gateway).complete("s", "u", purpose="stage4")

        assert exc_info.value.status_code == 401
        assert exc_info.value.is_transient is False
        assert "stage4" in str(exc_info.value)


# ── Tests: Helpers ────────────────────────────────────────────────────────


class TestHelpers:
    """Tests for cost and usage helpers."""

    def test_estimate_cost(self):
        assert estimate_cost(MODEL, 1_000_000, 1_000_000) == 18.0
        assert estimate_cost("llama3:8b", 5000, 5000) == 0.0

    def test_usage_from_openai_style_raw(self):
        assert _usage_from_raw({"usage": {"prompt_tokens": 7, "completion_tokens": 2}}) == (7, 2)
        assert _usage_from_raw({"id": "x"}) == (None, None)
        assert _usage_from_raw(None) == (None, None)


class TestRetryClassification:
    """Tests for is_retryable."""

    @pytest.mark.parametrize("status,expected", [(429, True), (500, True), (503, True),
                                                 (400, False), (401, False), (404, False)])
    def test_status_codes(self, status, expected):
        assert is_retryable(ProviderError(status)) is expected
        assert VCSError("x", status_code=status).is_transient is expected

    def test_status_on_attached_response(self):
        exc = Exception("boom")
        exc.response = MagicMock(status_code=502)
        assert is_retryable(exc) is True

    def test_network_errors(self):
        assert is_retryable(TimeoutError()) is True
        assert is_retryable(ConnectionError()) is True
        assert is_retryable(ValueError("bad")) is False

    def test_wrapped_transport_error(self):
        try:
            try:
                raise ConnectionError("reset")
            except ConnectionError as cause:
                raise VCSError("request failed") from cause
        except VCSError as e:
            assert is_retryable(e) is True
