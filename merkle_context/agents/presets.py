"""Pre-configured agents for common context tasks."""

from .registry import (
    SYSTEM_PROMPT,
    USER_PROMPT_DIRECTORY,
    USER_PROMPT_FILE,
    AgentIdentity,
    AgentRegistry,
    AgentRole,
)

summary_agent = AgentIdentity(
    agent_id="summary",
    role=AgentRole.WRITER,
    metadata={
        SYSTEM_PROMPT: "You are a concise code summarizer. Describe purpose and structure, not line-by-line behavior.",
        USER_PROMPT_FILE: "Summarize the file {path} ({file_size} bytes).\n\n{content}",
        USER_PROMPT_DIRECTORY: "Summarize the directory {path}. It contains:\n{content}",
    },
)

api_agent = AgentIdentity(
    agent_id="api",
    role=AgentRole.WRITER,
    metadata={
        SYSTEM_PROMPT: "You document public interfaces. List exported names with one-line descriptions.",
        USER_PROMPT_FILE: "Document the public API of {path}.\n\n{content}",
        USER_PROMPT_DIRECTORY: "List the modules in {path} and what each exposes:\n{content}",
    },
)

viewer_agent = AgentIdentity(agent_id="viewer", role=AgentRole.READER)


def default_registry() -> AgentRegistry:
    """Registry holding the preset agents."""
    registry = AgentRegistry()
    for agent in (summary_agent, api_agent, viewer_agent):
        registry.register(agent)
    return registry


__all__ = [
    "summary_agent",
    "api_agent",
    "viewer_agent",
    "default_registry",
]
