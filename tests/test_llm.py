"""Tests for src.core.llm — provider selection and model sessions."""

from unittest.mock import AsyncMock, patch

import pytest

import src.core.llm as llm
from src.core.llm import (
    MODEL,
    USER,
    ConfigurationError,
    GenerationConfig,
    ModelSession,
    Provider,
    Turn,
    _openai_style_messages,
    complete,
)


@pytest.fixture(autouse=True)
def _reset_provider():
    llm._provider = None
    yield
    llm._provider = None


class TestSelectProvider:
    def test_default_gemini(self):
        with patch("src.config.settings.LLM_PROVIDER", "gemini"), \
             patch("src.config.settings.LLM_MODEL", ""):
            provider = llm.get_provider()
        assert provider.name == "gemini"
        assert provider.model == "gemini-2.0-flash"

    def test_model_override(self):
        with patch("src.config.settings.LLM_PROVIDER", "openai"), \
             patch("src.config.settings.LLM_MODEL", "gpt-4o"):
            assert llm.get_provider().model == "gpt-4o"

    def test_unknown_provider(self):
        with patch("src.config.settings.LLM_PROVIDER", "mystery"):
            with pytest.raises(ConfigurationError):
                llm.get_provider()

    @pytest.mark.parametrize("key", ["", "your-api-key-here"])
    def test_missing_key(self, key):
        with patch("src.config.settings.LLM_API_KEY", key):
            with pytest.raises(ConfigurationError):
                llm.get_provider()

    def test_singleton(self):
        assert llm.get_provider() is llm.get_provider()


def _fake_provider(reply="ok"):
    return Provider(name="fake", fn=AsyncMock(return_value=reply), model="m", api_key="k")


class TestModelSession:
    @pytest.mark.asyncio
    async def test_send_appends_turns(self):
        provider = _fake_provider("Sure")
        session = ModelSession("sys", history=[Turn(USER, "earlier")], provider=provider)
        assert await session.send("hello") == "Sure"
        assert session.history == [Turn(USER, "earlier"), Turn(USER, "hello"), Turn(MODEL, "Sure")]

    @pytest.mark.asyncio
    async def test_failed_send_leaves_history(self):
        provider = _fake_provider()
        provider.fn.side_effect = RuntimeError("503")
        session = ModelSession("sys", provider=provider)
        with pytest.raises(RuntimeError):
            await session.send("hello")
        assert session.history == []

    @pytest.mark.asyncio
    async def test_passes_config(self):
        provider = _fake_provider()
        config = GenerationConfig(temperature=0.2, max_output_tokens=2048)
        await ModelSession("sys", config=config, provider=provider).send("hi")
        assert provider.fn.call_args.args[5] is config

    @pytest.mark.asyncio
    async def test_none_reply_is_empty_text(self):
        session = ModelSession("sys", provider=_fake_provider(None))
        assert await session.send("hi") == ""


class TestComplete:
    @pytest.mark.asyncio
    async def test_single_shot_has_no_history(self):
        provider = _fake_provider("summary")
        with patch("src.core.llm.get_provider", return_value=provider):
            assert await complete("sys", "text", max_tokens=512, temperature=0.1) == "summary"
        args = provider.fn.call_args.args
        assert args[3] == []
        assert args[5] == GenerationConfig(temperature=0.1, max_output_tokens=512)


def test_openai_style_roles():
    messages = _openai_style_messages([Turn(USER, "a"), Turn(MODEL, "b")], "c")
    assert [m["role"] for m in messages] == ["user", "assistant", "user"]
    assert messages[-1]["content"] == "c"
