"""LLM Gateway: transparent proxy for observability, retry, and metrics.

Wraps any LlamaIndex LLM as a CustomLLM subclass. Every review call
(sampling, stage1 .. stage4) flows through the gateway.

Features:
- Call logging (prompt/response length, latency, model)
- Token tracking (extracted from provider responses, tiktoken fallback)
- Retry with exponential backoff on rate limits, 5xx, timeouts
- Per-call purpose tagging (sampling, stage1, ..., stage4)
- Cost estimation by model
- Thread-safe in-memory metrics
"""

import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, Tuple

import backoff
from llama_index.core.base.llms.types import (
    ChatMessage,
    ChatResponse,
    CompletionResponse,
    LLMMetadata,
)
from llama_index.core.llms import CustomLLM

from .errors import is_retryable

logger = logging.getLogger(__name__)

# ── Cost table (USD per 1M tokens) ────────────────────────────────────
_COST_PER_1M_TOKENS = {
    # Anthropic
    "claude-sonnet-4-5-20250929": {"input": 3.00, "output": 15.00},
    "claude-sonnet-4-20250514": {"input": 3.00, "output": 15.00},
    "claude-3-5-sonnet-20241022": {"input": 3.00, "output": 15.00},
    "claude-3-haiku-20240307": {"input": 0.25, "output": 1.25},
    # OpenAI
    "gpt-4.1": {"input": 2.00, "output": 8.00},
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    # Local (Ollama), no cost
    "_default": {"input": 0.0, "output": 0.0},
}


def estimate_cost(model: str, tokens_in: int, tokens_out: int) -> float:
    """USD cost for a call, rounded to 4 decimals."""
    costs = _COST_PER_1M_TOKENS.get(model, _COST_PER_1M_TOKENS["_default"])
    return round((tokens_in * costs["input"] + tokens_out * costs["output"]) / 1_000_000, 4)


def _usage_from_raw(raw: Any) -> Tuple[Optional[int], Optional[int]]:
    """Pull (input, output) token counts out of a provider response.

    OpenAI reports prompt_tokens/completion_tokens, Anthropic reports
    input_tokens/output_tokens. ``raw`` may be a dict or an SDK object.
    """
    if raw is None:
        return None, None
    usage = raw.get("usage") if isinstance(raw, dict) else getattr(raw, "usage", None)
    if usage is None:
        return None, None

    def _get(name):
        if isinstance(usage, dict):
            return usage.get(name)
        return getattr(usage, name, None)

    tokens_in = _get("input_tokens") or _get("prompt_tokens")
    tokens_out = _get("output_tokens") or _get("completion_tokens")
    return (
        int(tokens_in) if tokens_in is not None else None,
        int(tokens_out) if tokens_out is not None else None,
    )


# ── Metrics ────────────────────────────────────────────────────────────

@dataclass
class LLMMetrics:
    """Thread-safe in-memory LLM usage metrics."""

    total_calls: int = 0
    total_tokens_in: int = 0
    total_tokens_out: int = 0
    total_latency_ms: float = 0.0
    errors: int = 0
    retries: int = 0
    calls_by_purpose: dict = field(default_factory=lambda: defaultdict(int))
    estimated_cost_usd: float = 0.0

    def to_dict(self) -> dict:
        return {
            "total_calls": self.total_calls,
            "total_tokens_in": self.total_tokens_in,
            "total_tokens_out": self.total_tokens_out,
            "total_latency_ms": round(self.total_latency_ms, 1),
            "avg_latency_ms": round(self.total_latency_ms / max(self.total_calls, 1), 1),
            "errors": self.errors,
            "retries": self.retries,
            "calls_by_purpose": dict(self.calls_by_purpose),
            "estimated_cost_usd": round(self.estimated_cost_usd, 4),
        }


# ── Gateway ────────────────────────────────────────────────────────────

class LLMGateway(CustomLLM):
    """Transparent LLM proxy with observability and retry.

    Usage:
        from commitloom.core.gateway import LLMGateway
        raw_llm = ...  # Any LlamaIndex LLM
        gateway = LLMGateway(raw_llm)
        gateway.chat(messages, gateway_purpose="stage1")

    Retries: ``max_tries`` attempts, waiting ``retry_factor`` * 2**n
    seconds (2s, 4s with the defaults). Only errors that
    ``errors.is_retryable`` accepts are retried.
    """

    # Pydantic fields (CustomLLM is a Pydantic BaseModel)
    _llm: Any = None
    _metrics: LLMMetrics = None
    _lock: threading.Lock = None
    _max_tries: int = 3
    _retry_factor: float = 2.0
    _token_counter: Any = None

    def __init__(self, llm: Any, max_tries: int = 3, retry_factor: float = 2.0, **kwargs):
        super().__init__(**kwargs)
        # Store as private attrs (bypass Pydantic field validation)
        object.__setattr__(self, "_llm", llm)
        object.__setattr__(self, "_metrics", LLMMetrics())
        object.__setattr__(self, "_lock", threading.Lock())
        object.__setattr__(self, "_max_tries", max_tries)
        object.__setattr__(self, "_retry_factor", retry_factor)
        object.__setattr__(self, "_token_counter", None)
        logger.info(
            f"LLMGateway initialized, wrapping {type(llm).__name__}"
            f" (model={getattr(llm, 'model', 'unknown')})"
        )

    @property
    def metadata(self) -> LLMMetadata:
        """Delegate metadata to the wrapped LLM."""
        return self._llm.metadata

    @property
    def model(self) -> str:
        """Expose model name for compatibility."""
        return getattr(self._llm, "model", "unknown")

    # ── Core methods ──────────────────────────────────────────────────

    def complete(
        self, prompt: str, formatted: bool = False, **kwargs: Any
    ) -> CompletionResponse:
        """Intercept completion calls with logging, retry, and metrics."""
        purpose = kwargs.pop("gateway_purpose", "general")
        t0 = time.time()

        try:
            response = self._retry_call(
                self._llm.complete, prompt, formatted=formatted, **kwargs
            )
        except Exception:
            self._record_error(purpose)
            raise

        latency_ms = (time.time() - t0) * 1000
        tokens_in, tokens_out = _usage_from_raw(getattr(response, "raw", None))
        self._record_success(
            tokens_in if tokens_in is not None else self.count_tokens(prompt),
            tokens_out if tokens_out is not None else self.count_tokens(response.text or ""),
            latency_ms,
            purpose,
        )
        return response

    def stream_complete(self, prompt: str, formatted: bool = False, **kwargs: Any):
        raise NotImplementedError("LLMGateway does not stream; use complete() or chat()")

    def chat(
        self, messages: Sequence[ChatMessage], **kwargs: Any
    ) -> ChatResponse:
        """Intercept chat calls."""
        purpose = kwargs.pop("gateway_purpose", "general")
        t0 = time.time()

        try:
            response = self._retry_call(self._llm.chat, messages, **kwargs)
        except Exception:
            self._record_error(purpose)
            raise

        latency_ms = (time.time() - t0) * 1000
        tokens_in, tokens_out = self.chat_usage(messages, response)
        self._record_success(tokens_in, tokens_out, latency_ms, purpose)
        return response

    def chat_usage(self, messages: Sequence[ChatMessage], response: ChatResponse) -> Tuple[int, int]:
        """Token usage of a chat call; counted locally when the provider omits it."""
        tokens_in, tokens_out = _usage_from_raw(getattr(response, "raw", None))
        if tokens_in is None:
            tokens_in = self.count_tokens(" ".join(m.content or "" for m in messages))
        if tokens_out is None:
            text = (response.message.content or "") if response.message else ""
            tokens_out = self.count_tokens(text)
        return tokens_in, tokens_out

    def count_tokens(self, text: str) -> int:
        if self._token_counter is None:
            from .review.tokens import TokenCounter
            object.__setattr__(self, "_token_counter", TokenCounter())
        return self._token_counter.count(text)

    # ── Retry ─────────────────────────────────────────────────────────

    def _retry_call(self, fn, *args, **kwargs):
        """Execute fn with exponential backoff on retryable errors."""

        @backoff.on_exception(
            backoff.expo,
            Exception,
            max_tries=self._max_tries,
            giveup=lambda e: not is_retryable(e),
            on_backoff=self._on_retry,
            factor=self._retry_factor,
            jitter=None,
        )
        def _do_call():
            return fn(*args, **kwargs)

        return _do_call()

    def _on_retry(self, details: dict):
        """Log retry events and increment counter."""
        with self._lock:
            self._metrics.retries += 1
        logger.warning(
            f"LLMGateway retry {details['tries']}/{self._max_tries} "
            f"after {details['wait']:.1f}s: {type(details.get('exception')).__name__}"
        )

    # ── Metrics recording ─────────────────────────────────────────────

    def _record_success(self, tokens_in: int, tokens_out: int, latency_ms: float, purpose: str):
        cost = self.estimate_cost(tokens_in, tokens_out)

        with self._lock:
            m = self._metrics
            m.total_calls += 1
            m.total_tokens_in += tokens_in
            m.total_tokens_out += tokens_out
            m.total_latency_ms += latency_ms
            m.estimated_cost_usd += cost
            m.calls_by_purpose[purpose] += 1

        logger.debug(
            f"LLM call: purpose={purpose} tokens_in={tokens_in} "
            f"tokens_out={tokens_out} latency={latency_ms:.0f}ms "
            f"model={self.model}"
        )

    def _record_error(self, purpose: str):
        with self._lock:
            self._metrics.errors += 1
            self._metrics.calls_by_purpose[f"{purpose}_error"] += 1
        logger.error(f"LLM call failed: purpose={purpose} model={self.model}")

    def estimate_cost(self, tokens_in: int, tokens_out: int) -> float:
        return estimate_cost(self.model, tokens_in, tokens_out)

    # ── Public metrics API ────────────────────────────────────────────

    def get_metrics(self) -> dict:
        """Return a thread-safe snapshot of current metrics."""
        with self._lock:
            result = self._metrics.to_dict()
            result["model"] = self.model
            return result

    def reset_metrics(self):
        """Zero all metric counters."""
        with self._lock:
            object.__setattr__(self, "_metrics", LLMMetrics())
        logger.info("LLMGateway metrics reset")

    # ── LlamaIndex compatibility ──────────────────────────────────────

    @classmethod
    def class_name(cls) -> str:
        return "LLMGateway"
