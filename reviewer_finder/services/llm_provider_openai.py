"""OpenAI chat completions provider (analysis and reasoning only, no web search)."""
from typing import AsyncIterator
import logging

from openai import AsyncOpenAI

from reviewer_finder.services.llm_provider import LLMProvider

logger = logging.getLogger(__name__)


class OpenAIProvider(LLMProvider):
    """OpenAI API provider. ``supports_web_search`` stays False, so the claude_search tier is skipped."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 4096,
        client: AsyncOpenAI | None = None,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)

    def _request(self, prompt: str, **kwargs) -> dict:
        messages = [{"role": "system", "content": kwargs["system"]}] if kwargs.get("system") else []
        messages.append({"role": "user", "content": prompt})
        if kwargs.get("web_search"):
            logger.debug("[llm] web_search requested but %s has no search tool, ignoring", self.model)
        return {
            "model": self.model,
            "messages": messages,
            "temperature": kwargs.get("temperature", self.temperature),
            "max_tokens": kwargs.get("max_tokens") or self.max_tokens,
        }

    async def stream_generate(self, prompt: str, **kwargs) -> AsyncIterator[str]:
        """Stream response from OpenAI chat completions."""
        stream = await self.client.chat.completions.create(stream=True, **self._request(prompt, **kwargs))
        async for chunk in stream:
            if chunk.choices and chunk.choices[0].delta.content:
                yield chunk.choices[0].delta.content

    async def generate(self, prompt: str, **kwargs) -> str:
        """Generate full response from OpenAI chat completions."""
        resp = await self.client.chat.completions.create(stream=False, **self._request(prompt, **kwargs))
        if resp.choices and resp.choices[0].message.content:
            return resp.choices[0].message.content
        return ""
