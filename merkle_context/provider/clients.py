"""
Multi-provider LLM clients used by frame generation.

Supports:
- Anthropic (Claude Opus, Sonnet, Haiku) - including custom endpoints
- OpenAI (GPT-4o, GPT-5, o-series)
- Ollama (local models over HTTP)

Provider errors are mapped onto the store's error taxonomy: connection
failures, timeouts, rate limits and 5xx responses become ``Transient``;
other request rejections become ``GenerationFailed``.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import anthropic
import httpx
import openai
from dotenv import load_dotenv

from ..config import ProviderConfig
from ..errors import GenerationFailed, Transient

logger = logging.getLogger(__name__)

# Auto-load .env from project root
_project_root = Path(__file__).parent.parent.parent
_env_file = _project_root / ".env"
if _env_file.exists():
    load_dotenv(_env_file)

OLLAMA_DEFAULT_URL = "http://localhost:11434"


class Provider(Enum):
    """LLM provider."""

    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    OLLAMA = "ollama"


@dataclass
class APIResponse:
    """Response from LLM API."""

    content: str
    input_tokens: int
    output_tokens: int
    model: str
    provider: Provider
    stop_reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


# Model registry with provider info
MODEL_REGISTRY: dict[str, tuple[Provider, str]] = {
    # Anthropic models
    "opus": (Provider.ANTHROPIC, "claude-opus-4-5-20251101"),
    "sonnet": (Provider.ANTHROPIC, "claude-sonnet-4-20250514"),
    "haiku": (Provider.ANTHROPIC, "claude-haiku-4-5-20251001"),
    # OpenAI models
    "gpt-5.2": (Provider.OPENAI, "gpt-5.2"),
    "gpt-4o": (Provider.OPENAI, "gpt-4o"),
    "gpt-4o-mini": (Provider.OPENAI, "gpt-4o-mini"),
    "o3-mini": (Provider.OPENAI, "o3-mini"),
}


def resolve_model(model: str) -> tuple[Provider, str]:
    """Resolve model shorthand to (provider, full_model_id)."""
    if model in MODEL_REGISTRY:
        return MODEL_REGISTRY[model]
    if model.startswith("claude"):
        return (Provider.ANTHROPIC, model)
    if model.startswith(("gpt-", "o1", "o3")):
        return (Provider.OPENAI, model)
    # Default to Anthropic
    return (Provider.ANTHROPIC, model)


def _is_transient_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class BaseLLMClient(ABC):
    """Abstract base class for LLM clients."""

    provider: Provider

    @abstractmethod
    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        model: str | None = None,
        max_tokens: int = 2048,
        temperature: float = 0.0,
    ) -> APIResponse:
        """Get completion from LLM."""
        pass

    async def aclose(self) -> None:
        """Release network resources."""


class AnthropicClient(BaseLLMClient):
    """Anthropic Claude API client."""

    provider = Provider.ANTHROPIC

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_s: float = 60.0,
    ):
        # Support both ANTHROPIC_API_KEY and ANTHROPIC_AUTH_TOKEN
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY") or os.environ.get("ANTHROPIC_AUTH_TOKEN")
        if not self.api_key:
            raise ValueError(
                "Anthropic API key required. Set ANTHROPIC_API_KEY or ANTHROPIC_AUTH_TOKEN environment variable."
            )
        # Support custom base URL for alternative endpoints
        self.base_url = base_url or os.environ.get("ANTHROPIC_BASE_URL")
        client_kwargs: dict[str, Any] = {"api_key": self.api_key, "timeout": timeout_s, "max_retries": 0}
        if self.base_url:
            client_kwargs["base_url"] = self.base_url
        self.client = anthropic.AsyncAnthropic(**client_kwargs)

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        model: str | None = None,
        max_tokens: int = 2048,
        temperature: float = 0.0,
    ) -> APIResponse:
        model = model or os.environ.get("ANTHROPIC_DEFAULT_SONNET_MODEL", "claude-sonnet-4-20250514")

        request_params: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": messages,
        }
        if system:
            request_params["system"] = system

        try:
            response = await self.client.messages.create(**request_params)
        except (anthropic.APIConnectionError, anthropic.RateLimitError, anthropic.InternalServerError) as e:
            raise Transient(f"Anthropic request failed: {e}", identity=model) from e
        except anthropic.APIStatusError as e:
            if _is_transient_status(e.status_code):
                raise Transient(f"Anthropic request failed: {e}", identity=model) from e
            raise GenerationFailed(f"Anthropic rejected request: {e}", identity=model) from e

        content = ""
        for block in response.content:
            if block.type == "text":
                content += block.text

        return APIResponse(
            content=content,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            model=model,
            provider=Provider.ANTHROPIC,
            stop_reason=response.stop_reason,
        )

    async def aclose(self) -> None:
        await self.client.close()


class OpenAIClient(BaseLLMClient):
    """OpenAI GPT API client."""

    provider = Provider.OPENAI

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_s: float = 60.0,
    ):
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not self.api_key:
            raise ValueError("OpenAI API key required. Set OPENAI_API_KEY environment variable.")
        client_kwargs: dict[str, Any] = {"api_key": self.api_key, "timeout": timeout_s, "max_retries": 0}
        if base_url:
            client_kwargs["base_url"] = base_url
        self.client = openai.AsyncOpenAI(**client_kwargs)

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        model: str | None = None,
        max_tokens: int = 2048,
        temperature: float = 0.0,
    ) -> APIResponse:
        model = model or "gpt-4o"

        # OpenAI uses system message in messages array
        full_messages = []
        if system:
            full_messages.append({"role": "system", "content": system})
        full_messages.extend(messages)

        # GPT-5+ and reasoning models use max_completion_tokens instead of max_tokens
        if model.startswith(("gpt-5", "o1", "o3")):
            token_kwargs = {"max_completion_tokens": max_tokens}
        else:
            token_kwargs = {"max_tokens": max_tokens}

        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=full_messages,
                temperature=temperature,
                **token_kwargs,
            )
        except (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError) as e:
            raise Transient(f"OpenAI request failed: {e}", identity=model) from e
        except openai.APIStatusError as e:
            if _is_transient_status(e.status_code):
                raise Transient(f"OpenAI request failed: {e}", identity=model) from e
            raise GenerationFailed(f"OpenAI rejected request: {e}", identity=model) from e

        content = response.choices[0].message.content or ""
        input_tokens = response.usage.prompt_tokens if response.usage else 0
        output_tokens = response.usage.completion_tokens if response.usage else 0

        return APIResponse(
            content=content,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=model,
            provider=Provider.OPENAI,
            stop_reason=response.choices[0].finish_reason,
        )

    async def aclose(self) -> None:
        await self.client.close()


class OllamaClient(BaseLLMClient):
    """Local Ollama server client."""

    provider = Provider.OLLAMA

    def __init__(
        self,
        base_url: str | None = None,
        timeout_s: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url or os.environ.get("OLLAMA_HOST") or OLLAMA_DEFAULT_URL).rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout_s)

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        model: str | None = None,
        max_tokens: int = 2048,
        temperature: float = 0.0,
    ) -> APIResponse:
        model = model or "gemma3"
        payload: dict[str, Any] = {
            "model": model,
            "prompt": "\n\n".join(m["content"] for m in messages),
            "stream": False,
            "options": {
                "num_predict": max_tokens,
                "temperature": temperature,
            },
        }
        if system:
            payload["system"] = system

        try:
            response = await self.client.post(f"{self.base_url}/api/generate", json=payload)
            response.raise_for_status()
        except httpx.TransportError as e:
            raise Transient(f"Failed to connect to Ollama: {e}", identity=model) from e
        except httpx.HTTPStatusError as e:
            if _is_transient_status(e.response.status_code):
                raise Transient(f"Ollama request failed: {e}", identity=model) from e
            raise GenerationFailed(f"Ollama rejected request: {e}", identity=model) from e

        data = response.json()
        return APIResponse(
            content=data.get("response", ""),
            input_tokens=data.get("prompt_eval_count", 0),
            output_tokens=data.get("eval_count", 0),
            model=model,
            provider=Provider.OLLAMA,
            stop_reason=data.get("done_reason"),
        )

    async def aclose(self) -> None:
        await self.client.aclose()


def create_client(config: ProviderConfig) -> tuple[BaseLLMClient, str]:
    """
    Build the client named in config.

    Returns:
        (client, resolved model id)
    """
    if config.name == "ollama":
        return OllamaClient(base_url=config.base_url, timeout_s=config.timeout_s), config.model

    provider, model = resolve_model(config.model)
    if config.name == "openai" or provider == Provider.OPENAI:
        return OpenAIClient(base_url=config.base_url, timeout_s=config.timeout_s), model
    return AnthropicClient(base_url=config.base_url, timeout_s=config.timeout_s), model
