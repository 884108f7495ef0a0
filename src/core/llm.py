"""
Bonsai Assistant — LLM Provider Abstraction.

Two public entry points routed to the configured provider:

- `complete()` for single-shot calls (summaries).
- `ModelSession` for multi-turn chat: it holds the system instruction and the
  role-tagged history and replays them on every turn.

Provider is selected at first use via the LLM_PROVIDER env var.
Supports: gemini (default), anthropic, openai, cohere.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

USER = "user"
MODEL = "model"


class ConfigurationError(Exception):
    """Raised when the LLM provider cannot be configured (missing key, unknown provider)."""


@dataclass
class Turn:
    """One role-tagged history entry. role is "user" or "model"."""

    role: str
    text: str


@dataclass
class GenerationConfig:
    temperature: float = 0.2
    max_output_tokens: int = 2048


# Type alias for provider implementations:
#   (api_key, model, system, history, user_message, config) -> reply text
_ProviderFn = Callable[[str, str, str, list[Turn], str, GenerationConfig], Awaitable[str]]

# ---------------------------------------------------------------------------
# Provider implementations
# ---------------------------------------------------------------------------


async def _chat_gemini(
    api_key: str, model: str, system: str, history: list[Turn],
    user_message: str, config: GenerationConfig,
) -> str:
    import google.generativeai as genai

    genai.configure(api_key=api_key)
    gm = genai.GenerativeModel(
        model_name=model,
        system_instruction=system,
    )
    contents = [{"role": t.role, "parts": [t.text]} for t in history]
    contents.append({"role": USER, "parts": [user_message]})
    response = await gm.generate_content_async(
        contents,
        generation_config=genai.types.GenerationConfig(
            temperature=config.temperature,
            max_output_tokens=config.max_output_tokens,
        ),
    )
    return response.text


def _openai_style_messages(history: list[Turn], user_message: str) -> list[dict]:
    messages = [
        {"role": "assistant" if t.role == MODEL else "user", "content": t.text}
        for t in history
    ]
    messages.append({"role": "user", "content": user_message})
    return messages


async def _chat_anthropic(
    api_key: str, model: str, system: str, history: list[Turn],
    user_message: str, config: GenerationConfig,
) -> str:
    import anthropic

    client = anthropic.AsyncAnthropic(api_key=api_key)
    response = await client.messages.create(
        model=model,
        max_tokens=config.max_output_tokens,
        temperature=config.temperature,
        system=system,
        messages=_openai_style_messages(history, user_message),
    )
    return response.content[0].text


async def _chat_openai(
    api_key: str, model: str, system: str, history: list[Turn],
    user_message: str, config: GenerationConfig,
) -> str:
    from openai import AsyncOpenAI

    client = AsyncOpenAI(api_key=api_key)
    response = await client.chat.completions.create(
        model=model,
        max_tokens=config.max_output_tokens,
        temperature=config.temperature,
        messages=[{"role": "system", "content": system}]
        + _openai_style_messages(history, user_message),
    )
    return response.choices[0].message.content


async def _chat_cohere(
    api_key: str, model: str, system: str, history: list[Turn],
    user_message: str, config: GenerationConfig,
) -> str:
    import cohere

    client = cohere.AsyncClientV2(api_key=api_key)
    response = await client.chat(
        model=model,
        max_tokens=config.max_output_tokens,
        temperature=config.temperature,
        messages=[{"role": "system", "content": system}]
        + _openai_style_messages(history, user_message),
    )
    return response.message.content[0].text


# ---------------------------------------------------------------------------
# Provider selection (runs once at first call)
# ---------------------------------------------------------------------------

_PROVIDERS: dict[str, tuple[_ProviderFn, str]] = {
    "gemini":    (_chat_gemini,    "gemini-2.0-flash"),
    "anthropic": (_chat_anthropic, "claude-haiku-4-5-20251001"),
    "openai":    (_chat_openai,    "gpt-4o-mini"),
    "cohere":    (_chat_cohere,    "command-a-03-2025"),
}


@dataclass
class Provider:
    """A resolved provider: implementation, model name and credentials."""

    name: str
    fn: _ProviderFn = field(repr=False)
    model: str
    api_key: str = field(repr=False)


def _select_provider() -> Provider:
    """Read settings and return the configured provider.

    Raises ConfigurationError if the provider is unknown or the key is missing.
    """
    from src.config import settings

    provider_name = settings.LLM_PROVIDER.lower()
    if provider_name not in _PROVIDERS:
        raise ConfigurationError(
            f"Unknown LLM_PROVIDER={provider_name!r}. "
            f"Supported: {', '.join(_PROVIDERS)}"
        )

    api_key = settings.LLM_API_KEY
    if not api_key or api_key.startswith("your-"):
        raise ConfigurationError("LLM_API_KEY is missing or not set in .env")

    fn, default_model = _PROVIDERS[provider_name]
    model = settings.LLM_MODEL or default_model

    logger.info("LLM provider: %s, model: %s", provider_name, model)
    return Provider(name=provider_name, fn=fn, model=model, api_key=api_key)


# Lazy singleton, populated on first call to get_provider()
_provider: Provider | None = None


def get_provider() -> Provider:
    """Return the configured provider, resolving it on first use."""
    global _provider

    if _provider is None:
        _provider = _select_provider()
    return _provider


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class ModelSession:
    """Multi-turn conversation with the configured model.

    History only grows on a successful turn, so a failed call can be retried
    with the same context.
    """

    def __init__(
        self,
        system: str,
        history: list[Turn] | None = None,
        config: GenerationConfig | None = None,
        provider: Provider | None = None,
    ) -> None:
        self.system = system
        self.history: list[Turn] = list(history or [])
        self.config = config or GenerationConfig()
        self._provider = provider or get_provider()

    async def send(self, user_message: str) -> str:
        """Send one user turn and return the model's reply text.

        Raises on API errors — callers should handle exceptions.
        """
        reply = await self._provider.fn(
            self._provider.api_key,
            self._provider.model,
            self.system,
            self.history,
            user_message,
            self.config,
        )
        reply = reply or ""
        self.history.append(Turn(USER, user_message))
        self.history.append(Turn(MODEL, reply))
        return reply


async def complete(
    system: str,
    user_message: str,
    max_tokens: int = 256,
    temperature: float = 0.2,
) -> str:
    """Send a single prompt to the configured LLM provider and return the response text.

    Raises on API errors — callers should handle exceptions.
    """
    provider = get_provider()
    config = GenerationConfig(temperature=temperature, max_output_tokens=max_tokens)
    return await provider.fn(provider.api_key, provider.model, system, [], user_message, config)
