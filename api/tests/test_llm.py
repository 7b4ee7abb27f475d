"""Tests for the inference provider clients."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import ollama
import openai
import pytest

from tally.processing.llm import (
    LLMProvider,
    OllamaLLMProvider,
    OpenAICompatibleProvider,
    RateLimitError,
    build_provider,
    build_provider_chain,
    extract_json,
    parse_retry_after,
)

REQUEST = httpx.Request("POST", "https://api.example.test/v1/chat/completions")


def completion(content: str | None) -> MagicMock:
    """Build a chat completion response with one choice."""
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    return response


class TestExtractJson:
    """Tests for JSON extraction from model output."""

    def test_plain_object(self):
        assert extract_json('{"decisions": []}') == {"decisions": []}

    def test_code_fence(self):
        """Test that Markdown fences are removed."""
        text = '```json\n{"decisions": [], "responsibilities": []}\n```'
        assert extract_json(text) == {"decisions": [], "responsibilities": []}

    def test_bare_fence(self):
        assert extract_json('```\n{"a": 1}\n```') == {"a": 1}

    def test_invalid_json(self):
        with pytest.raises(ValueError, match="Failed to parse JSON"):
            extract_json("not json at all")

    def test_non_object(self):
        with pytest.raises(ValueError, match="Expected a JSON object"):
            extract_json("[1, 2, 3]")


class TestParseRetryAfter:
    """Tests for Retry-After parsing."""

    def test_seconds(self):
        assert parse_retry_after("12") == 12.0

    def test_missing_or_invalid(self):
        assert parse_retry_after(None) is None
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None
        assert parse_retry_after("-1") is None


class TestOpenAICompatibleProvider:
    """Tests for OpenAI-compatible providers."""

    async def test_generate_json_success(self):
        """Test a successful completion."""
        provider = OpenAICompatibleProvider(LLMProvider.GROQ, api_key="test-key")

        mock_client = AsyncMock()
        mock_client.chat.completions.create.return_value = completion(
            '{"decisions": [{"title": "Use Supabase"}]}'
        )

        with patch.object(provider, "_get_client", return_value=mock_client):
            result = await provider.generate_json("Messages: []", system_prompt="Extract")

        assert result == {"decisions": [{"title": "Use Supabase"}]}
        kwargs = mock_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "llama-3.3-70b-versatile"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert [m["role"] for m in kwargs["messages"]] == ["system", "user"]

    async def test_rate_limit_mapped(self):
        """Test that a 429 becomes a RateLimitError with the server's delay."""
        provider = OpenAICompatibleProvider(LLMProvider.OPENROUTER, api_key="test-key")

        mock_client = AsyncMock()
        mock_client.chat.completions.create.side_effect = openai.RateLimitError(
            "Too many requests",
            response=httpx.Response(429, headers={"retry-after": "7"}, request=REQUEST),
            body=None,
        )

        with patch.object(provider, "_get_client", return_value=mock_client):
            with pytest.raises(RateLimitError) as exc_info:
                await provider.generate_json("prompt")

        assert exc_info.value.retry_after == 7.0

    async def test_api_error_is_connection_error(self):
        """Test that other API failures become ConnectionError."""
        provider = OpenAICompatibleProvider(LLMProvider.OPENAI, api_key="test-key")

        mock_client = AsyncMock()
        mock_client.chat.completions.create.side_effect = openai.APIConnectionError(
            request=REQUEST
        )

        with patch.object(provider, "_get_client", return_value=mock_client):
            with pytest.raises(ConnectionError) as exc_info:
                await provider.generate_json("prompt")

        assert not isinstance(exc_info.value, RateLimitError)

    async def test_empty_content(self):
        """Test that an empty reply is a ValueError."""
        provider = OpenAICompatibleProvider(api_key="test-key")

        mock_client = AsyncMock()
        mock_client.chat.completions.create.return_value = completion(None)

        with patch.object(provider, "_get_client", return_value=mock_client):
            with pytest.raises(ValueError, match="empty content"):
                await provider.generate_json("prompt")

    async def test_missing_api_key(self, monkeypatch):
        """Test that an unconfigured provider fails before any request."""
        monkeypatch.delenv("GROQ_API_KEY", raising=False)
        provider = OpenAICompatibleProvider(LLMProvider.GROQ)

        with pytest.raises(ValueError, match="GROQ_API_KEY"):
            await provider.generate_json("prompt")

    def test_model_from_environment(self, monkeypatch):
        """Test the per-provider model override."""
        monkeypatch.setenv("TALLY_OPENROUTER_MODEL", "some/model")
        provider = OpenAICompatibleProvider(LLMProvider.OPENROUTER, api_key="k")
        assert provider.model_name == "some/model"
        assert provider.base_url == "https://openrouter.ai/api/v1"
        assert provider.name == "openrouter"


class TestOllamaLLMProvider:
    """Tests for the Ollama provider."""

    async def test_generate_json_success(self):
        """Test successful generation in JSON mode."""
        provider = OllamaLLMProvider(model="llama3.2")

        mock_client = AsyncMock()
        mock_client.chat.return_value = {"message": {"content": '{"decisions": []}'}}

        with patch.object(provider, "_get_client", return_value=mock_client):
            result = await provider.generate_json("prompt", system_prompt="Extract")

        assert result == {"decisions": []}
        call_kwargs = mock_client.chat.call_args.kwargs
        assert call_kwargs["format"] == "json"
        assert call_kwargs["messages"][0]["role"] == "system"

    async def test_rate_limit(self):
        """Test that a 429 response is a rate limit."""
        provider = OllamaLLMProvider(model="llama3.2")

        mock_client = AsyncMock()
        mock_client.chat.side_effect = ollama.ResponseError("slow down", 429)

        with patch.object(provider, "_get_client", return_value=mock_client):
            with pytest.raises(RateLimitError):
                await provider.generate_json("prompt")

    async def test_connection_error(self):
        """Test that connection errors are wrapped properly."""
        provider = OllamaLLMProvider(model="llama3.2")

        mock_client = AsyncMock()
        mock_client.chat.side_effect = ConnectionRefusedError("refused")

        with patch.object(provider, "_get_client", return_value=mock_client):
            with pytest.raises(ConnectionError, match="Failed to connect to Ollama"):
                await provider.generate_json("prompt")

    async def test_transport_error_is_connection_error(self):
        """Test that HTTP transport failures become connection errors."""
        provider = OllamaLLMProvider(model="llama3.2")

        mock_client = AsyncMock()
        mock_client.chat.side_effect = httpx.ReadError("connection reset", request=REQUEST)

        with patch.object(provider, "_get_client", return_value=mock_client):
            with pytest.raises(ConnectionError, match="connection reset"):
                await provider.generate_json("prompt")

    async def test_invalid_json_reply(self):
        """Test that a non-JSON reply is a ValueError."""
        provider = OllamaLLMProvider(model="llama3.2")

        mock_client = AsyncMock()
        mock_client.chat.return_value = {"message": {"content": "Sure! Here you go"}}

        with patch.object(provider, "_get_client", return_value=mock_client):
            with pytest.raises(ValueError):
                await provider.generate_json("prompt")


class TestBuildProvider:
    """Tests for provider construction."""

    def test_openai_compatible(self):
        provider = build_provider("Groq")
        assert isinstance(provider, OpenAICompatibleProvider)
        assert provider.base_url == "https://api.groq.com/openai/v1"

    def test_ollama(self):
        assert isinstance(build_provider("ollama"), OllamaLLMProvider)

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown provider"):
            build_provider("carrier-pigeon")

    def test_chain_keeps_order(self):
        chain = build_provider_chain(["openrouter", "groq", "ollama"])
        assert [p.name for p in chain] == ["openrouter", "groq", "ollama"]
