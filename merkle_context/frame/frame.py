"""Frame - immutable, content-addressed context attached to a node."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..identity import compute_frame_id
from ..types import FrameID, NodeID, from_hex, to_hex


@dataclass(frozen=True)
class Frame:
    """
    A single context frame for one (node, agent) pair.

    Design decisions:
    - frame_id covers node_id, agent_id, content and identity_fields only
    - metadata is validated by the metadata collaborator and never hashed
    - created_at is informational
    """

    # Identity
    frame_id: FrameID
    node_id: NodeID
    agent_id: str
    content: bytes
    identity_fields: dict[str, str] = field(default_factory=dict, compare=False)

    # Non-hashed
    metadata: dict[str, str] = field(default_factory=dict, compare=False)
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc), compare=False
    )

    @classmethod
    def create(
        cls,
        node_id: NodeID,
        agent_id: str,
        content: bytes,
        metadata: dict[str, str] | None = None,
        identity_fields: dict[str, str] | None = None,
    ) -> "Frame":
        """Build a frame with its FrameID computed from the identity fields."""
        identity_fields = dict(identity_fields or {})
        return cls(
            frame_id=compute_frame_id(node_id, agent_id, content, identity_fields),
            node_id=node_id,
            agent_id=agent_id,
            content=bytes(content),
            identity_fields=identity_fields,
            metadata=dict(metadata or {}),
        )

    def expected_id(self) -> FrameID:
        """Recompute the FrameID from the identity-relevant fields."""
        return compute_frame_id(self.node_id, self.agent_id, self.content, self.identity_fields)

    @property
    def text(self) -> str:
        """Content decoded as UTF-8 (lossy)."""
        return self.content.decode("utf-8", errors="replace")


def serialize_frame(frame: Frame) -> dict[str, Any]:
    """
    Serialize a Frame to a JSON-compatible dict.

    Format: hex ids, base64 content, ISO 8601 timestamp.
    """
    return {
        "frame_id": to_hex(frame.frame_id),
        "node_id": to_hex(frame.node_id),
        "agent_id": frame.agent_id,
        "content": base64.b64encode(frame.content).decode("ascii"),
        "identity_fields": dict(frame.identity_fields),
        "metadata": dict(frame.metadata),
        "created_at": frame.created_at.isoformat(),
    }


def deserialize_frame(data: dict[str, Any]) -> Frame:
    """Inverse of serialize_frame. Does not verify integrity."""
    return Frame(
        frame_id=from_hex(data["frame_id"]),
        node_id=from_hex(data["node_id"]),
        agent_id=data["agent_id"],
        content=base64.b64decode(data["content"], validate=True),
        identity_fields=dict(data.get("identity_fields", {})),
        metadata=dict(data.get("metadata", {})),
        created_at=datetime.fromisoformat(data["created_at"]),
    )
