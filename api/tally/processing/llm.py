"""Inference provider clients with a common JSON-generation interface."""

from __future__ import annotations

import json
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import ollama
    import openai

_CODE_FENCE_START = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_CODE_FENCE_END = re.compile(r"\s*```\s*$")


class LLMProvider(str, Enum):
    """Supported inference providers."""

    OPENROUTER = "openrouter"
    GROQ = "groq"
    OPENAI = "openai"
    OLLAMA = "ollama"


@dataclass(frozen=True)
class EndpointConfig:
    """Connection defaults for an OpenAI-compatible endpoint."""

    base_url: str | None
    default_model: str
    api_key_env: str
    model_env: str


OPENAI_COMPATIBLE_ENDPOINTS: dict[LLMProvider, EndpointConfig] = {
    LLMProvider.OPENROUTER: EndpointConfig(
        base_url="https://openrouter.ai/api/v1",
        default_model="arcee-ai/trinity-large-preview:free",
        api_key_env="OPENROUTER_API_KEY",
        model_env="TALLY_OPENROUTER_MODEL",
    ),
    LLMProvider.GROQ: EndpointConfig(
        base_url="https://api.groq.com/openai/v1",
        default_model="llama-3.3-70b-versatile",
        api_key_env="GROQ_API_KEY",
        model_env="TALLY_GROQ_MODEL",
    ),
    LLMProvider.OPENAI: EndpointConfig(
        base_url=None,
        default_model="gpt-4o-mini",
        api_key_env="OPENAI_API_KEY",
        model_env="TALLY_OPENAI_MODEL",
    ),
}


class RateLimitError(ConnectionError):
    """The provider refused the request because of rate limiting."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


def parse_retry_after(value: str | None) -> float | None:
    """Read a Retry-After header given in seconds."""
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def extract_json(text: str) -> dict[str, Any]:
    """Parse a JSON object from model output, unwrapping Markdown code fences.

    Raises:
        ValueError: If the text is not a JSON object.
    """
    stripped = _CODE_FENCE_END.sub("", _CODE_FENCE_START.sub("", text.strip())).strip()
    try:
        result = json.loads(stripped)
    except json.JSONDecodeError as e:
        raise ValueError(f"Failed to parse JSON response: {e}") from e
    if not isinstance(result, dict):
        raise ValueError(f"Expected a JSON object, got {type(result).__name__}")
    return result


class LLMProviderBase(ABC):
    """Abstract base class for inference providers."""

    @abstractmethod
    async def generate_json(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.0,
    ) -> dict[str, Any]:
        """Generate a JSON object from a prompt.

        Raises:
            RateLimitError: If the provider is rate limiting.
            ConnectionError: If the provider cannot be reached or refuses.
            ValueError: If the provider is misconfigured or the reply is not JSON.
        """
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name reported to callers."""
        ...

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the model name used by this provider."""
        ...


def _chat_messages(prompt: str, system_prompt: str | None) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})
    return messages


class OpenAICompatibleProvider(LLMProviderBase):
    """Provider for OpenAI and OpenAI-compatible endpoints (OpenRouter, Groq)."""

    def __init__(
        self,
        provider: LLMProvider = LLMProvider.OPENAI,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        endpoint = OPENAI_COMPATIBLE_ENDPOINTS[provider]
        self.provider = provider
        self.model = model or os.getenv(endpoint.model_env) or endpoint.default_model
        self.api_key = api_key or os.getenv(endpoint.api_key_env)
        self.api_key_env = endpoint.api_key_env
        self.base_url = base_url or endpoint.base_url
        self._client: openai.AsyncOpenAI | None = None

    async def _get_client(self) -> openai.AsyncOpenAI:
        """Get or create the async client."""
        if self._client is None:
            if not self.api_key:
                raise ValueError(
                    f"{self.provider.value} API key not provided. "
                    f"Set {self.api_key_env} environment variable."
                )
            try:
                import openai

                self._client = openai.AsyncOpenAI(
                    api_key=self.api_key, base_url=self.base_url, max_retries=0
                )
            except ImportError as e:
                raise ImportError(
                    "openai package not installed. Install with: pip install openai"
                ) from e
        return self._client

    async def generate_json(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.0,
    ) -> dict[str, Any]:
        """Generate JSON output using the chat completions API."""
        import openai

        client = await self._get_client()

        try:
            response = await client.chat.completions.create(  # type: ignore[call-overload]
                model=self.model,
                messages=_chat_messages(prompt, system_prompt),
                temperature=temperature,
                response_format={"type": "json_object"},
            )
        except openai.RateLimitError as e:
            raise RateLimitError(
                f"{self.provider.value} rate limited (429): {e}",
                retry_after=parse_retry_after(e.response.headers.get("retry-after")),
            ) from e
        except openai.APIError as e:
            raise ConnectionError(f"{self.provider.value} request failed: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ValueError(f"{self.provider.value} returned empty content")
        return extract_json(content)

    @property
    def name(self) -> str:
        return self.provider.value

    @property
    def model_name(self) -> str:
        return self.model


class OllamaLLMProvider(LLMProviderBase):
    """Provider using a local Ollama server."""

    def __init__(self, model: str | None = None, host: str | None = None):
        self.model = model or os.getenv("TALLY_OLLAMA_MODEL", "llama3.2")
        self.host = host or os.getenv("OLLAMA_HOST", "http://localhost:11434")
        self._client: ollama.AsyncClient | None = None

    async def _get_client(self) -> ollama.AsyncClient:
        """Get or create Ollama async client."""
        if self._client is None:
            try:
                import ollama

                self._client = ollama.AsyncClient(host=self.host)
            except ImportError as e:
                raise ImportError(
                    "ollama package not installed. Install with: pip install ollama"
                ) from e
        return self._client

    async def generate_json(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.0,
    ) -> dict[str, Any]:
        """Generate JSON output using Ollama with format enforcement."""
        import ollama

        client = await self._get_client()

        try:
            response = await client.chat(
                model=self.model,
                messages=_chat_messages(prompt, system_prompt),  # type: ignore[arg-type]
                options={"temperature": temperature},
                format="json",
            )
        except ollama.ResponseError as e:
            if e.status_code == 429:
                raise RateLimitError(f"Ollama rate limited (429): {e}") from e
            raise ConnectionError(f"Ollama request failed: {e}") from e
        except Exception as e:
            raise ConnectionError(f"Failed to connect to Ollama at {self.host}: {e}") from e

        content = str(response["message"]["content"])  # type: ignore[index]
        return extract_json(content)

    @property
    def name(self) -> str:
        return LLMProvider.OLLAMA.value

    @property
    def model_name(self) -> str:
        return self.model


def build_provider(name: str | LLMProvider) -> LLMProviderBase:
    """Create the provider client for a chain entry.

    Raises:
        ValueError: If the name is not a supported provider.
    """
    try:
        provider = LLMProvider(name.lower() if isinstance(name, str) else name)
    except ValueError as e:
        raise ValueError(f"Unknown provider: {name}") from e

    if provider == LLMProvider.OLLAMA:
        return OllamaLLMProvider()
    return OpenAICompatibleProvider(provider)


def build_provider_chain(names: list[str]) -> list[LLMProviderBase]:
    """Create providers for a fallback chain, in order."""
    return [build_provider(name) for name in names]
