"""
Chat-model transport for script repair, via litellm.

Any provider litellm can reach works: Claude, GPT, DeepSeek, Gemini, a
local Ollama model, or an OpenAI-compatible endpoint set in ``api_base``.
litellm is imported when the first client is built, so validating and
compiling never pay for it.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional, Sequence, Union

from scadsafe.compiler import ScadSafeError
from scadsafe.config import LLMConfig

logger = logging.getLogger(__name__)

# model-name keyword -> (litellm prefix, API key variable)
PROVIDERS = {
    "claude": ("anthropic/", "ANTHROPIC_API_KEY"),
    "deepseek": ("deepseek/", "DEEPSEEK_API_KEY"),
    "gemini": ("gemini/", "GEMINI_API_KEY"),
    "gpt": ("openai/", "OPENAI_API_KEY"),
    "o1": ("openai/", "OPENAI_API_KEY"),
    "o3": ("openai/", "OPENAI_API_KEY"),
}
# These resolve their own endpoint; api_base would misroute them.
SELF_ROUTED = ("anthropic/", "deepseek/", "gemini/", "ollama/")


class LLMError(ScadSafeError):
    """The model could not be reached or replied with nothing usable."""


@dataclass
class Message:
    role: str  # "system" | "user" | "assistant"
    content: str


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: dict = field(default_factory=dict)
    finish_reason: str = ""


def resolve_model(model: str) -> str:
    """Add the litellm provider prefix a bare model name needs."""
    if "/" in model and not model.startswith("http"):
        return model
    lower = model.lower()
    for keyword, (prefix, _) in PROVIDERS.items():
        if keyword in lower:
            return prefix + model
    return model


def _key_variable(model: str) -> str:
    lower = model.lower()
    for keyword, (_, variable) in PROVIDERS.items():
        if keyword in lower:
            return variable
    return "OPENAI_API_KEY"


class LLMAdapter:
    """
    One configured chat model.

    Usage:
        llm = LLMAdapter(config.llm)
        reply = llm.generate([Message("user", "fix this script ...")])
    """

    def __init__(self, config: LLMConfig):
        import litellm

        self.config = config
        self.model = resolve_model(config.model)
        self._completion = litellm.completion
        litellm.suppress_debug_info = True

        self.api_key = config.resolve_api_key()
        if self.api_key:
            os.environ.setdefault(_key_variable(config.model), self.api_key)
        else:
            logger.warning("No API key found for %s; repair requests will likely fail", self.model)

    def generate(self, messages: Sequence[Union[Message, dict]], **kwargs) -> LLMResponse:
        """Send ``messages`` and return the first choice. Raises LLMError on transport failure."""
        payload = [m if isinstance(m, dict) else {"role": m.role, "content": m.content}
                   for m in messages]
        request = {
            "model": self.model,
            "messages": payload,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }
        if self.api_key:
            request["api_key"] = self.api_key
        if self.config.api_base and not self.model.startswith(SELF_ROUTED):
            request["api_base"] = self.config.api_base
        request.update(kwargs)

        logger.debug("Repair request to %s (%d messages)", self.model, len(payload))
        try:
            response = self._completion(**request)
        except Exception as e:
            raise LLMError(f"{self.model} request failed: {e}") from e

        if not response.choices:
            raise LLMError(f"{self.model} returned no choices (rate limit or content filter?)")
        choice = response.choices[0]
        usage = dict(response.usage) if getattr(response, "usage", None) else {}
        logger.debug("Repair reply from %s: %s", self.model, usage or "no usage data")
        return LLMResponse(
            content=choice.message.content or "",
            model=response.model or self.model,
            usage=usage,
            finish_reason=choice.finish_reason or "",
        )


class MockLLM:
    """Replays canned replies in order, repeating the last; records every request."""

    def __init__(self, responses: Optional[list[str]] = None):
        self.responses = responses or ["cube([10, 10, 10]);"]
        self.requests: list[list[Message]] = []

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def generate(self, messages: Sequence[Message], **kwargs) -> LLMResponse:
        self.requests.append(list(messages))
        content = self.responses[min(self.call_count, len(self.responses)) - 1]
        return LLMResponse(content=content, model="mock-model", finish_reason="stop")
