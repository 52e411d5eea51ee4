"""Agent registry - the closed set of identities that own frame streams.

Heads are keyed by (node, agent). Only registered writer agents may
commit frames, so a typo at a call site cannot create an orphaned stream.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import NotFound, PolicyViolation

SYSTEM_PROMPT = "system_prompt"
USER_PROMPT_FILE = "user_prompt_file"
USER_PROMPT_DIRECTORY = "user_prompt_directory"


class AgentRole(Enum):
    """What an agent may do."""

    READER = "reader"  # query only
    WRITER = "writer"  # query and commit frames


@dataclass
class AgentIdentity:
    """Agent identity with role and prompt metadata."""

    agent_id: str
    role: AgentRole = AgentRole.WRITER
    metadata: dict[str, str] = field(default_factory=dict)

    def can_write(self) -> bool:
        return self.role == AgentRole.WRITER

    def missing_prompts(self, is_file: bool) -> list[str]:
        """Prompt keys required for generation on a node kind but absent."""
        required = [SYSTEM_PROMPT, USER_PROMPT_FILE if is_file else USER_PROMPT_DIRECTORY]
        return [key for key in required if not self.metadata.get(key, "").strip()]


def validate_agent(agent: AgentIdentity) -> None:
    """
    Validate an agent definition.

    Raises:
        PolicyViolation: If the definition is unusable
    """
    if not agent.agent_id or not agent.agent_id.strip():
        raise PolicyViolation("Agent ID cannot be empty")
    if agent.agent_id != agent.agent_id.strip():
        raise PolicyViolation("Agent ID cannot have surrounding whitespace", identity=agent.agent_id)

    prompt = agent.metadata.get(SYSTEM_PROMPT)
    if prompt is not None and not prompt.strip():
        raise PolicyViolation("System prompt cannot be empty if provided", identity=agent.agent_id)


class AgentRegistry:
    """
    Registry of known agents.

    Agents are registered by id and retrieved by id.
    """

    def __init__(self):
        self._agents: dict[str, AgentIdentity] = {}

    def register(self, agent: AgentIdentity) -> None:
        """Register (or replace) an agent after validating it."""
        validate_agent(agent)
        self._agents[agent.agent_id] = agent

    def get(self, agent_id: str) -> AgentIdentity:
        """
        Get an agent by id.

        Raises:
            NotFound: If the agent is not registered
        """
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFound("Agent not registered", identity=agent_id)
        return agent

    def require_writer(self, agent_id: str) -> AgentIdentity:
        """
        Get an agent that may commit frames.

        Raises:
            NotFound: If the agent is not registered
            PolicyViolation: If the agent is a reader
        """
        agent = self.get(agent_id)
        if not agent.can_write():
            raise PolicyViolation(f"Agent (role: {agent.role.value}) cannot write", identity=agent_id)
        return agent

    def list_agents(self) -> list[str]:
        """All registered agent ids, sorted."""
        return sorted(self._agents)

    def __contains__(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    @classmethod
    def from_config(cls, definitions: dict[str, dict[str, Any]]) -> "AgentRegistry":
        """
        Build a registry from config definitions.

        Example:
            {"docs": {"role": "writer", "system_prompt": "...",
                      "user_prompt_file": "Describe {path}"}}
        """
        registry = cls()
        for agent_id, definition in definitions.items():
            definition = dict(definition)
            role = AgentRole(definition.pop("role", AgentRole.WRITER.value))
            metadata = {k: str(v) for k, v in definition.items()}
            registry.register(AgentIdentity(agent_id=agent_id, role=role, metadata=metadata))
        return registry
