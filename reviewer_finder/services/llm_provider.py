"""LLM Provider abstraction for supporting multiple LLM backends.

To add a new LLM module:
1. Implement a class that subclasses LLMProvider and implements stream_generate() and generate().
2. Call register_provider("name", factory) where factory is a callable (config_dict) -> LLMProvider.
3. Add a YAML under reviewer_finder/llm_configs/ with provider: "name" and any provider-specific keys.
"""
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Dict, Any
import asyncio
import logging

import anthropic

logger = logging.getLogger(__name__)

# Registry: provider name -> factory(config: dict) -> LLMProvider
_PROVIDER_REGISTRY: Dict[str, Callable[[Dict[str, Any]], "LLMProvider"]] = {}

# HTTP statuses worth retrying (rate limited, overloaded)
RETRYABLE_STATUS = (429, 529)


def register_provider(name: str, factory: Callable[[Dict[str, Any]], "LLMProvider"]) -> None:
    """Register an LLM provider. factory(config_dict) must return an LLMProvider instance."""
    name = (name or "").lower().strip()
    if not name:
        raise ValueError("Provider name must be non-empty")
    _PROVIDER_REGISTRY[name] = factory


def list_providers() -> list[str]:
    """Return registered provider names."""
    return sorted(_PROVIDER_REGISTRY.keys())


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    # Providers that can browse (used by the contact enrichment web-search tier)
    supports_web_search: bool = False

    @abstractmethod
    async def stream_generate(self, prompt: str, **kwargs) -> AsyncIterator[str]:
        """Stream LLM response tokens."""
        pass

    @abstractmethod
    async def generate(self, prompt: str, **kwargs) -> str:
        """Generate complete LLM response (non-streaming)."""
        pass


def _is_retryable(error: Exception) -> bool:
    if isinstance(error, anthropic.APIConnectionError):
        return True
    return isinstance(error, anthropic.APIStatusError) and error.status_code in RETRYABLE_STATUS


class AnthropicProvider(LLMProvider):
    """Anthropic Messages API provider.

    Retries 429/529 and connection errors with exponential backoff; when the
    primary model stays overloaded, one last attempt goes to ``fallback_model``.
    ``generate(..., web_search=True)`` enables the server-side web search tool.
    """

    supports_web_search = True

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        fallback_model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.3,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        self.model = model
        self.fallback_model = fallback_model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        # SDK retries disabled; backoff and fallback are handled here
        self.client = client or anthropic.AsyncAnthropic(api_key=api_key, max_retries=0)

    def _request(self, model: str, prompt: str, **kwargs) -> dict:
        request = {
            "model": model,
            "max_tokens": kwargs.get("max_tokens") or self.max_tokens,
            "temperature": kwargs.get("temperature", self.temperature),
            "messages": [{"role": "user", "content": prompt}],
        }
        if kwargs.get("system"):
            request["system"] = kwargs["system"]
        if kwargs.get("web_search"):
            request["tools"] = [{
                "type": "web_search_20250305",
                "name": "web_search",
                "max_uses": kwargs.get("max_uses", 3),
            }]
        return request

    async def _create_with_retry(self, model: str, prompt: str, **kwargs):
        for attempt in range(self.max_retries + 1):
            try:
                return await self.client.messages.create(**self._request(model, prompt, **kwargs))
            except Exception as e:
                if not _is_retryable(e) or attempt == self.max_retries:
                    raise
                delay = self.retry_delay * (2 ** attempt)
                logger.warning(
                    "[llm] %s unavailable (attempt %s/%s): %s. Retrying in %.1fs",
                    model, attempt + 1, self.max_retries + 1, e, delay,
                )
                await asyncio.sleep(delay)

    async def generate(self, prompt: str, **kwargs) -> str:
        """Generate full response text (text blocks only; tool-use blocks are skipped)."""
        try:
            message = await self._create_with_retry(self.model, prompt, **kwargs)
        except Exception as e:
            if not (self.fallback_model and _is_retryable(e)):
                raise
            logger.warning("[llm] %s exhausted retries, falling back to %s", self.model, self.fallback_model)
            message = await self.client.messages.create(**self._request(self.fallback_model, prompt, **kwargs))
        return "".join(
            getattr(block, "text", "") for block in message.content if getattr(block, "type", "") == "text"
        )

    async def stream_generate(self, prompt: str, **kwargs) -> AsyncIterator[str]:
        """Stream response text from the Messages API."""
        async with self.client.messages.stream(**self._request(self.model, prompt, **kwargs)) as stream:
            async for text in stream.text_stream:
                yield text


def _anthropic_factory(config: Dict[str, Any]) -> "LLMProvider":
    """Build AnthropicProvider from config dict (for registry)."""
    from reviewer_finder.config import ANTHROPIC_API_KEY, ANTHROPIC_FALLBACK_MODEL, ANTHROPIC_MODEL
    section = config.get("anthropic") or {}
    api_key = section.get("api_key")
    if not api_key or (isinstance(api_key, str) and api_key.strip() == "***"):
        api_key = ANTHROPIC_API_KEY
    if not api_key:
        raise ValueError("Anthropic requires api_key (anthropic.api_key or ANTHROPIC_API_KEY)")
    options = config.get("options") or {}
    return AnthropicProvider(
        api_key=api_key,
        model=config.get("model") or ANTHROPIC_MODEL,
        fallback_model=section.get("fallback_model") or ANTHROPIC_FALLBACK_MODEL,
        max_tokens=int(options.get("max_tokens", 4096)),
        temperature=float(options.get("temperature", 0.3)),
        max_retries=int(section.get("max_retries", 3)),
        retry_delay=float(section.get("retry_delay", 2.0)),
    )


def _openai_factory(config: Dict[str, Any]) -> "LLMProvider":
    """Build OpenAIProvider from config dict (for registry)."""
    from reviewer_finder.config import OPENAI_API_KEY, OPENAI_MODEL
    from reviewer_finder.services.llm_provider_openai import OpenAIProvider
    openai_config = config.get("openai") or {}
    api_key = openai_config.get("api_key")
    if not api_key or (isinstance(api_key, str) and api_key.strip() == "***"):
        api_key = OPENAI_API_KEY
    if not api_key:
        raise ValueError("OpenAI requires api_key (openai.api_key or OPENAI_API_KEY)")
    model = config.get("model") or OPENAI_MODEL
    base_url = openai_config.get("base_url")
    options = config.get("options") or {}
    return OpenAIProvider(
        api_key=api_key,
        model=model,
        base_url=base_url,
        temperature=float(options.get("temperature", 0.1)),
        max_tokens=int(options.get("max_tokens", 4096)),
    )


# Register built-in providers so config-driven and future modules can resolve by name
register_provider("anthropic", _anthropic_factory)
register_provider("openai", _openai_factory)


def get_llm_provider() -> LLMProvider:
    """Get LLM provider based on environment configuration (config.py).

    A YAML config named by LLM_CONFIG wins when it targets LLM_PROVIDER;
    otherwise LLM_PROVIDER picks a registered provider with its env defaults.
    """
    from reviewer_finder.config import LLM_CONFIG, LLM_PROVIDER
    from reviewer_finder.services.llm_config import get_llm_provider_from_config, resolve_llm_config

    return get_llm_provider_from_config(resolve_llm_config(LLM_CONFIG, LLM_PROVIDER))
