"""LLM factory: builds the LlamaIndex model for the configured provider.

The returned model is always wrapped in LLMGateway by ``build_gateway``.
"""

import logging
from typing import Optional

import requests

from ..setting import get_settings
from ..setting.setting import LLMSettings
from .gateway import LLMGateway

logger = logging.getLogger(__name__)

# Cache for LLM models to avoid re-initialization
_llm_cache: dict = {}


def create_llm(model_name: str = "", setting: Optional[LLMSettings] = None):
    """Get or create the LlamaIndex LLM for a provider/model pair.

    Args:
        model_name: Model name (uses settings default if empty)
        setting: LLMSettings instance

    Returns:
        LLM model instance
    """
    setting = setting or get_settings().llm
    model_name = model_name or setting.model
    provider = setting.provider.lower()

    cache_key = f"{provider}_{model_name}"
    if cache_key in _llm_cache:
        logger.debug(f"Using cached LLM model: {model_name}")
        return _llm_cache[cache_key]

    if provider == "anthropic":
        from llama_index.llms.anthropic import Anthropic
        model = Anthropic(
            model=model_name,
            api_key=setting.anthropic_api_key,
            temperature=setting.temperature,
            max_tokens=setting.max_tokens,
            timeout=setting.request_timeout,
            max_retries=0,
        )
    elif provider == "openai":
        from llama_index.llms.openai import OpenAI
        model = OpenAI(
            model=model_name,
            api_key=setting.openai_api_key,
            temperature=setting.temperature,
            max_tokens=setting.max_tokens,
            timeout=setting.request_timeout,
            max_retries=0,
        )
    elif provider == "ollama":
        from llama_index.llms.ollama import Ollama
        model = Ollama(
            model=model_name,
            base_url=setting.ollama_base_url,
            temperature=setting.temperature,
            request_timeout=setting.request_timeout,
        )
    else:
        raise ValueError(f"Unknown LLM provider: {setting.provider}")

    _llm_cache[cache_key] = model
    logger.debug(f"Created and cached {provider.upper()} model: {model_name}")
    return model


def build_gateway(model_name: str = "", setting: Optional[LLMSettings] = None) -> LLMGateway:
    """Create the provider model and wrap it with retry and metrics."""
    setting = setting or get_settings().llm
    llm = create_llm(model_name, setting)
    return LLMGateway(llm, max_tries=setting.max_tries)


def check_ollama_model(base_url: str, model_name: str) -> bool:
    """Check that a model is pulled on the Ollama server."""
    url = f"{base_url.rstrip('/')}/api/tags"
    try:
        response = requests.get(url, timeout=10)
        response.raise_for_status()
        data = response.json()
    except requests.RequestException as e:
        logger.warning(f"Error checking model existence: {e}")
        return False
    except ValueError as e:
        logger.warning(f"Error parsing Ollama response: {e}")
        return False

    names = [m.get("name", "") for m in data.get("models") or []]
    return model_name in names or f"{model_name}:latest" in names


def clear_cache() -> None:
    """Clear the LLM model cache."""
    _llm_cache.clear()
    logger.info("LLM model cache cleared")
