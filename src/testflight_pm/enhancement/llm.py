"""OpenAI-compatible chat client used to enhance issues.

Any endpoint speaking the OpenAI chat completions API works; point
``llm.base_url`` at it to use something other than api.openai.com.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from openai import OpenAI

from testflight_pm.config import ConfigError, LLMSettings

logger = logging.getLogger(__name__)

# USD per 1K tokens (input, output).
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4.1": (0.002, 0.008),
    "gpt-4.1-mini": (0.0004, 0.0016),
    "gpt-4.1-nano": (0.0001, 0.0004),
    "gpt-4o": (0.0025, 0.01),
    "gpt-4o-mini": (0.00015, 0.0006),
    "gpt-4-turbo": (0.01, 0.03),
    "gpt-4": (0.03, 0.06),
    "gpt-3.5-turbo": (0.0005, 0.0015),
}
# Unknown models are billed at the most expensive known rate so the cost cap errs low.
_FALLBACK_PRICING = max(MODEL_PRICING.values(), key=lambda rates: rates[0] + rates[1])


@dataclass(slots=True)
class ChatReply:
    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0


def estimate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    input_rate, output_rate = MODEL_PRICING.get(model, _FALLBACK_PRICING)
    return (prompt_tokens / 1000) * input_rate + (completion_tokens / 1000) * output_rate


class ChatClient(ABC):
    model: str

    @abstractmethod
    def chat_completion(self, prompt: str, *, max_tokens: int, temperature: float) -> ChatReply:
        """Send one user message and return the assistant's reply."""


class OpenAIChatClient(ChatClient):
    def __init__(self, settings: LLMSettings, *, client: OpenAI | None = None) -> None:
        if not settings.api_key and client is None:
            raise ConfigError("LLM enhancement is missing: api_key")

        self.settings = settings
        self.model = settings.model
        # Retries are handled by the enhancer so rate limits are counted per run.
        self._client = client or OpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url or None,
            timeout=settings.timeout_seconds,
            max_retries=0,
        )

    def chat_completion(self, prompt: str, *, max_tokens: int, temperature: float) -> ChatReply:
        """Run a chat completion against the configured model.

        Raises:
            openai.APIError: On API errors.
        """
        response = self._client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=max_tokens,
            temperature=temperature,
        )
        usage = response.usage
        return ChatReply(
            text=response.choices[0].message.content or "",
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
        )
