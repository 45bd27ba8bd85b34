"""LLM client used by sampling and the review stages.

``AIClient`` adapts an LLMGateway (chat with system + user messages) to
the narrow ``complete()`` contract the review code depends on. Tests
substitute any object with the same ``complete`` signature.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from llama_index.core.base.llms.types import ChatMessage, MessageRole

from ..errors import LLMError
from ..gateway import LLMGateway

logger = logging.getLogger(__name__)


@dataclass
class LLMResult:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    model: Optional[str] = None


class LLMClient(Protocol):
    model: str

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        purpose: str = "general",
    ) -> LLMResult:
        ...


class AIClient:
    """LLMClient backed by the gateway (retry, metrics, cost table).

    Usage:
        client = AIClient(build_gateway())
        result = client.complete(system, user, max_tokens=2048, purpose="stage1")
    """

    def __init__(
        self,
        gateway: LLMGateway,
        max_tokens: int = 4096,
        temperature: float = 0.3,
        pass_generation_kwargs: bool = True,
    ):
        self._gateway = gateway
        self.max_tokens = max_tokens
        self.temperature = temperature
        # Ollama takes generation options at construction time only
        self._pass_generation_kwargs = pass_generation_kwargs

    @property
    def model(self) -> str:
        return self._gateway.model

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        purpose: str = "general",
    ) -> LLMResult:
        messages = [
            ChatMessage(role=MessageRole.SYSTEM, content=system_prompt),
            ChatMessage(role=MessageRole.USER, content=user_prompt),
        ]
        kwargs = {"gateway_purpose": purpose}
        if self._pass_generation_kwargs:
            kwargs["max_tokens"] = max_tokens or self.max_tokens
            kwargs["temperature"] = self.temperature if temperature is None else temperature

        try:
            response = self._gateway.chat(messages, **kwargs)
        except Exception as e:
            status = getattr(e, "status_code", None)
            if status is None:
                status = getattr(getattr(e, "response", None), "status_code", None)
            raise LLMError(f"LLM call failed ({purpose}): {e}", status_code=status) from e

        text = (response.message.content or "") if response.message else ""
        tokens_in, tokens_out = self._gateway.chat_usage(messages, response)
        return LLMResult(
            text=text,
            input_tokens=tokens_in,
            output_tokens=tokens_out,
            cost_usd=self._gateway.estimate_cost(tokens_in, tokens_out),
            model=self.model,
        )


def build_ai_client(settings=None, model_name: str = "") -> AIClient:
    """AIClient for the configured provider (or an explicit model)."""
    from ...setting import get_settings
    from ..model import build_gateway

    llm_settings = (settings or get_settings()).llm
    gateway = build_gateway(model_name, llm_settings)
    return AIClient(
        gateway,
        max_tokens=llm_settings.max_tokens,
        temperature=llm_settings.temperature,
        pass_generation_kwargs=llm_settings.provider.lower() != "ollama",
    )
