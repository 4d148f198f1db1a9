"""Chat-completions providers: one scoring prompt, one HTTP call.

All five backends speak the OpenAI chat completions protocol:
  - ChatGPT: api.openai.com
  - DeepSeek: api.deepseek.com (no /v1 prefix)
  - Mistral: api.mistral.ai
  - Grok: api.x.ai
  - Gemini: Google's OpenAI-compatible endpoint

The reply is expected to contain ``SCORE: XX/100``.
"""

from __future__ import annotations

import logging
import time

import httpx

from orchestrator.core.exceptions import (
    ProviderError,
    ProviderNetworkError,
    ProviderResponseError,
    ProviderTimeout,
    ValidationError,
    classify_http_status,
)
from orchestrator.gateway.types import ProviderResult
from orchestrator.providers.base import BaseProvider, parse_score

logger = logging.getLogger(__name__)

SCORING_PROMPT = """You are a Generative Engine Optimization (GEO) analyst.
Rate how visible the brand or site "{input}" is in AI-generated answers.

Consider presence in AI search results, authority, context quality,
competitive positioning and richness of available information.

Answer with one line in exactly this format:
SCORE: XX/100"""


class ChatCompletionsProvider(BaseProvider):
    """OpenAI-compatible chat completions provider."""

    api_url: str
    default_model: str

    def __init__(
        self,
        api_key: str = "",
        enabled: bool = True,
        timeout: float = 25.0,
        model: str | None = None,
    ):
        super().__init__(api_key=api_key, enabled=enabled, timeout=timeout)
        self.model = model or self.default_model

    def build_payload(self, text: str) -> dict:
        return {
            "model": self.model,
            "messages": [{"role": "user", "content": SCORING_PROMPT.format(input=text)}],
            "temperature": 0.1,
            "max_tokens": 50,
        }

    async def _complete(self, text: str, timeout: float) -> tuple[str, dict]:
        """One chat completion call. Raises a classified ProviderError."""
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.post(
                    self.api_url,
                    json=self.build_payload(text),
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                )
            resp.raise_for_status()
            data = resp.json()
        except httpx.TimeoutException:
            raise ProviderTimeout(f"Timeout after {timeout:.1f}s", provider=self.name)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise classify_http_status(status, f"{self.name} returned HTTP {status}", provider=self.name)
        except httpx.TransportError as e:
            raise ProviderNetworkError(f"{type(e).__name__}: {e}", provider=self.name)
        except ValueError:
            raise ProviderResponseError("Reply is not valid JSON", provider=self.name)

        try:
            content = (data["choices"][0]["message"]["content"] or "").strip()
        except (KeyError, IndexError, TypeError):
            raise ProviderResponseError("Unexpected reply shape", provider=self.name)
        return content, data

    async def analyze(self, text: str, deadline: float) -> ProviderResult:
        if not text or not text.strip():
            raise ValidationError("Input is empty")

        timeout = self._remaining(deadline)
        start = time.monotonic()

        try:
            content, data = await self._complete(text, timeout)
            score = parse_score(content, provider=self.name)
        except ProviderError as e:
            latency_ms = int((time.monotonic() - start) * 1000)
            logger.info("%s failed: %s (%s)", self.name, e.message, e.code, extra={"provider": self.name})
            return ProviderResult.failure(self.name, e, latency_ms=latency_ms)

        latency_ms = int((time.monotonic() - start) * 1000)
        logger.debug("%s scored %d in %dms", self.name, score, latency_ms, extra={"provider": self.name})

        return ProviderResult.success(
            self.name,
            score,
            metadata={"raw": content, "model": data.get("model", self.model)},
            latency_ms=latency_ms,
        )


class ChatGPTProvider(ChatCompletionsProvider):
    name = "chatgpt"
    api_url = "https://api.openai.com/v1/chat/completions"
    default_model = "gpt-4o-mini"


class DeepSeekProvider(ChatCompletionsProvider):
    name = "deepseek"
    api_url = "https://api.deepseek.com/chat/completions"
    default_model = "deepseek-chat"


class MistralProvider(ChatCompletionsProvider):
    name = "mistral"
    api_url = "https://api.mistral.ai/v1/chat/completions"
    default_model = "mistral-small-latest"


class GrokProvider(ChatCompletionsProvider):
    name = "grok"
    api_url = "https://api.x.ai/v1/chat/completions"
    default_model = "grok-2-1212"


class GeminiProvider(ChatCompletionsProvider):
    name = "gemini"
    api_url = "https://generativelanguage.googleapis.com/v1beta/openai/chat/completions"
    default_model = "gemini-1.5-flash"
