"""
Frame generation through an LLM provider.

A FrameGenerator turns a NodeContext into frame content. The queue only
depends on the protocol; ProviderGenerator is the production implementation
that fills an agent's prompt templates and asks an LLM client.
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

from ..agents.registry import (
    SYSTEM_PROMPT,
    USER_PROMPT_DIRECTORY,
    USER_PROMPT_FILE,
    AgentRegistry,
)
from ..config import ProviderConfig
from ..context import NodeContext
from ..errors import GenerationFailed, PolicyViolation
from ..types import short_id
from .clients import BaseLLMClient

logger = logging.getLogger(__name__)

PLACEHOLDERS = ("path", "node_type", "file_size", "content")


@runtime_checkable
class FrameGenerator(Protocol):
    """Produces frame content for a node on behalf of an agent."""

    async def generate(self, node_context: NodeContext, agent_id: str) -> bytes:
        """
        Raises:
            Transient: For failures worth retrying
            ContextStoreError: For anything else
        """
        ...


def render_prompt(template: str, node_context: NodeContext) -> str:
    """
    Fill {path}, {node_type}, {file_size} and {content} in a template.

    Other braces are left alone so templates can quote code.
    """
    values = {
        "path": node_context.path,
        "node_type": node_context.node_type.value,
        "file_size": "" if node_context.size is None else str(node_context.size),
        "content": node_context.content,
    }
    # content last, so placeholder-looking text inside it is not expanded
    for name in PLACEHOLDERS:
        template = template.replace("{" + name + "}", values[name])
    return template


def validate_agent_prompts(registry: AgentRegistry) -> dict[str, list[str]]:
    """
    Check every writer agent has the prompts generation needs.

    Returns:
        Mapping of agent_id -> missing prompt keys (only agents with gaps)
    """
    problems: dict[str, list[str]] = {}
    for agent_id in registry.list_agents():
        agent = registry.get(agent_id)
        if not agent.can_write():
            continue
        missing = sorted(set(agent.missing_prompts(is_file=True) + agent.missing_prompts(is_file=False)))
        if missing:
            problems[agent_id] = missing
    return problems


class ProviderGenerator:
    """
    FrameGenerator backed by an LLM client and agent prompt templates.

    Usage:
        client, model = create_client(config.provider)
        generator = ProviderGenerator(registry, client, config.provider, model=model)
        content = await generator.generate(ctx, "summary")
    """

    def __init__(
        self,
        registry: AgentRegistry,
        client: BaseLLMClient,
        config: ProviderConfig | None = None,
        model: str | None = None,
    ):
        self.registry = registry
        self.client = client
        self.config = config or ProviderConfig()
        self.model = model or self.config.model

    def build_messages(self, node_context: NodeContext, agent_id: str) -> tuple[str, list[dict[str, str]]]:
        """
        Build (system prompt, messages) for an agent and node.

        Raises:
            NotFound: If the agent is not registered
            PolicyViolation: If the agent is a reader or lacks prompts
        """
        agent = self.registry.require_writer(agent_id)
        missing = agent.missing_prompts(node_context.is_file)
        if missing:
            raise PolicyViolation(f"Agent is missing prompts: {', '.join(missing)}", identity=agent_id)

        key = USER_PROMPT_FILE if node_context.is_file else USER_PROMPT_DIRECTORY
        system = agent.metadata[SYSTEM_PROMPT]
        user = render_prompt(agent.metadata[key], node_context)
        return system, [{"role": "user", "content": user}]

    async def generate(self, node_context: NodeContext, agent_id: str) -> bytes:
        system, messages = self.build_messages(node_context, agent_id)

        logger.debug(f"Generating {agent_id} frame for {node_context.path} ({short_id(node_context.node_id)})")
        response = await self.client.complete(
            messages=messages,
            system=system,
            model=self.model,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
        )

        if not response.content.strip():
            raise GenerationFailed("Provider returned empty content", identity=agent_id)

        logger.debug(
            f"Generated {agent_id} frame for {node_context.path}: "
            f"{response.input_tokens} in / {response.output_tokens} out tokens"
        )
        return response.content.encode("utf-8")
