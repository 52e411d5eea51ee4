"""Context Views

Selects and orders a bounded set of frames for a node based on a closed
policy (ordering, agent inclusion/exclusion, maximum count).

Selection is read-only and deterministic: it reads the Head Index and the
Frame Set, never scans the Frame Store, and never triggers generation.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .frame.frame_set import FrameSet
from .heads import HeadEntry, HeadIndex
from .types import FrameID, NodeID

MAX_VIEW_FRAMES = 1000


class OrderingPolicy(str, Enum):
    """Ordering of selected frames."""

    RECENCY = "recency"  # newest commit first
    AGENT = "agent"      # agent id ascending


class ViewPolicy(BaseModel):
    """Closed view configuration. Unknown options are rejected."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_frames: int = Field(default=10, ge=0, le=MAX_VIEW_FRAMES)
    ordering: OrderingPolicy = OrderingPolicy.RECENCY
    include_agents: tuple[str, ...] | None = None
    exclude_agents: tuple[str, ...] = ()

    @field_validator("include_agents", "exclude_agents")
    @classmethod
    def _no_blank_agents(cls, value: tuple[str, ...] | None) -> tuple[str, ...] | None:
        if value is not None and any(not a.strip() for a in value):
            raise ValueError("agent ids in a view policy cannot be blank")
        return value

    def admits(self, agent_id: str) -> bool:
        if self.include_agents is not None and agent_id not in self.include_agents:
            return False
        return agent_id not in self.exclude_agents


def _order(entries: list[HeadEntry], ordering: OrderingPolicy) -> list[HeadEntry]:
    if ordering == OrderingPolicy.RECENCY:
        return sorted(entries, key=lambda e: (-e.seq, e.agent_id))
    return sorted(entries, key=lambda e: e.agent_id)


class ViewComposer:
    """Composes bounded frame views from heads and frame sets."""

    def __init__(self, heads: HeadIndex, frame_set: FrameSet):
        self.heads = heads
        self.frame_set = frame_set

    def select(self, node_id: NodeID, policy: ViewPolicy) -> list[FrameID]:
        """
        Select frames for a node.

        Returns:
            At most ``policy.max_frames`` FrameIDs in policy order

        Raises:
            NodeUnknown: If the node was never observed
        """
        self.frame_set.require_node(node_id)
        if policy.max_frames == 0:
            return []

        candidates = [
            e for e in self.heads.entries_for_node(node_id)
            if policy.admits(e.agent_id) and self.frame_set.contains(node_id, e.frame_id)
        ]
        return [e.frame_id for e in _order(candidates, policy.ordering)[: policy.max_frames]]


__all__ = ["MAX_VIEW_FRAMES", "OrderingPolicy", "ViewComposer", "ViewPolicy"]
