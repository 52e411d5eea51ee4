"""Agents Layer - identities that own frame streams."""

from .presets import api_agent, default_registry, summary_agent, viewer_agent
from .registry import AgentIdentity, AgentRegistry, AgentRole, validate_agent

__all__ = [
    "AgentIdentity",
    "AgentRegistry",
    "AgentRole",
    "validate_agent",
    "api_agent",
    "summary_agent",
    "viewer_agent",
    "default_registry",
]
