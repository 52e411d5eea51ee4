"""ContextStore - the on-disk store and its single commit path.

Direct writes and the generation queue both commit through
``commit_frame``: validate metadata -> compute FrameID -> FrameStore.put ->
FrameSet.add -> HeadIndex.update_head, serialized by one commit lock.

Layout under the store root:
    nodes/       NodeRecords
    frames/      Frames
    frame_sets/  per-node membership sets
    heads.json   head index
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .agents.registry import AgentRegistry
from .errors import NotFound, PolicyViolation
from .frame.frame import Frame
from .frame.frame_set import FrameSet
from .frame.frame_store import FrameStore
from .heads import HeadIndex
from .metadata import MetadataValidator, PassthroughValidator
from .tree.node import NodeRecord, NodeRecordStore
from .tree.walker import IngestReport, TreeWalker
from .types import FrameID, NodeID, short_id, to_hex

logger = logging.getLogger(__name__)


class ContextStore:
    """Node records, frames, frame sets and heads under one root."""

    def __init__(
        self,
        root: Path | str,
        validator: MetadataValidator | None = None,
        agents: AgentRegistry | None = None,
    ):
        self.root = Path(root).expanduser()
        self.root.mkdir(parents=True, exist_ok=True)

        self.nodes = NodeRecordStore(self.root / "nodes")
        self.frames = FrameStore(self.root / "frames")
        self.frame_sets = FrameSet(self.root / "frame_sets", self.nodes)
        self.heads = HeadIndex(self.root / "heads.json")

        self.validator: MetadataValidator = validator or PassthroughValidator()
        self.agents = agents
        self._commit_lock = threading.RLock()

    def ingest(self, workspace: Path | str, ignore: list[str] | None = None) -> IngestReport:
        """Record the Merkle tree of a workspace."""
        return TreeWalker(workspace, self.nodes, ignore=ignore).ingest()

    def get_node(self, node_id: NodeID) -> NodeRecord:
        return self.nodes.get(node_id)

    def get_frame(self, frame_id: FrameID) -> Frame:
        return self.frames.get(frame_id)

    def get_head(self, node_id: NodeID, agent_id: str) -> FrameID | None:
        return self.heads.get_head(node_id, agent_id)

    def _check_agent(self, agent_id: str) -> None:
        if not isinstance(agent_id, str) or not agent_id.strip():
            raise PolicyViolation("Agent ID cannot be empty", identity=repr(agent_id))
        if self.agents is not None:
            self.agents.require_writer(agent_id)

    def commit_frame(
        self,
        node_id: NodeID,
        agent_id: str,
        content: bytes,
        metadata: Mapping[str, Any] | None = None,
        identity_fields: Mapping[str, str] | None = None,
    ) -> Frame:
        """
        Commit a frame and make it the head for (node_id, agent_id).

        The head only moves after the frame is stored and added to the
        node's frame set. If any step fails the previous head stays current.

        Stores are append-only, so a failure after FrameStore.put leaves the
        frame on disk with no frame set entry and no head. get_frame still
        returns it; views never select it. Retrying the commit adopts it.

        Raises:
            NotFound: If the node was never observed
            PolicyViolation: If metadata or the agent is rejected
            Transient: If a storage write fails
        """
        self._check_agent(agent_id)
        if not self.nodes.contains(node_id):
            raise NotFound("Cannot commit frame for unknown node", identity=to_hex(node_id))

        normalized = self.validator.validate(dict(metadata or {}))
        frame = Frame.create(
            node_id=node_id,
            agent_id=agent_id,
            content=content,
            metadata=normalized,
            identity_fields=dict(identity_fields or {}),
        )

        with self._commit_lock:
            self.frames.put(frame)
            self.frame_sets.add(node_id, frame.frame_id)
            self.heads.update_head(node_id, agent_id, frame.frame_id)

        logger.info(f"Committed frame {short_id(frame.frame_id)} for {short_id(node_id)}/{agent_id}")
        return frame
