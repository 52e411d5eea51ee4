"""Provider Layer - LLM clients and frame generation."""

from .clients import (
    MODEL_REGISTRY,
    AnthropicClient,
    APIResponse,
    BaseLLMClient,
    OllamaClient,
    OpenAIClient,
    Provider,
    create_client,
    resolve_model,
)
from .generation import FrameGenerator, ProviderGenerator, render_prompt, validate_agent_prompts

__all__ = [
    "MODEL_REGISTRY",
    "AnthropicClient",
    "APIResponse",
    "BaseLLMClient",
    "OllamaClient",
    "OpenAIClient",
    "Provider",
    "create_client",
    "resolve_model",
    "FrameGenerator",
    "ProviderGenerator",
    "render_prompt",
    "validate_agent_prompts",
]
