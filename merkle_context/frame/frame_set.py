"""FrameSet - per-node Merkle membership set of committed FrameIDs.

The root is a pure function of the member set: leaves are sorted before
hashing, so insertion order never matters. Sets only grow.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from pathlib import Path

from ..errors import IntegrityViolation, NodeUnknown, Transient
from ..identity import EMPTY_CONTENT_HASH
from ..persistence import atomic_write_json, read_json, sharded_path
from ..tree.node import NodeRecordStore
from ..types import FrameID, Hash, NodeID, from_hex, to_hex

logger = logging.getLogger(__name__)

EMPTY_SET_ROOT: Hash = EMPTY_CONTENT_HASH

_LEAF_PREFIX = b"\x00"
_INNER_PREFIX = b"\x01"


def merkle_root(members: set[FrameID] | list[FrameID]) -> Hash:
    """
    Sorted-leaf binary Merkle root.

    leaf = H(0x00 || id), inner = H(0x01 || left || right); an odd node at
    any level is promoted unchanged.
    """
    if not members:
        return EMPTY_SET_ROOT

    level = [hashlib.sha256(_LEAF_PREFIX + m).digest() for m in sorted(set(members))]
    while len(level) > 1:
        next_level = []
        for i in range(0, len(level) - 1, 2):
            next_level.append(hashlib.sha256(_INNER_PREFIX + level[i] + level[i + 1]).digest())
        if len(level) % 2 == 1:
            next_level.append(level[-1])
        level = next_level
    return level[0]


class FrameSet:
    """
    Frame membership per node.

    Persisted as one JSON file per node that has at least one frame:
    {root}/frame_sets/ab/<node_id hex>.json
    """

    def __init__(self, path: Path | str, node_store: NodeRecordStore):
        self.path = Path(path)
        self.path.mkdir(parents=True, exist_ok=True)
        self.node_store = node_store
        self._members: dict[NodeID, set[FrameID]] = {}
        self._lock = threading.RLock()

    def _set_path(self, node_id: NodeID) -> Path:
        return sharded_path(self.path, to_hex(node_id))

    def require_node(self, node_id: NodeID) -> None:
        if not self.node_store.contains(node_id):
            raise NodeUnknown("Node has never been observed", identity=to_hex(node_id))

    def _load(self, node_id: NodeID) -> set[FrameID]:
        """Members for a known node, loading from disk on first access."""
        members = self._members.get(node_id)
        if members is not None:
            return members

        set_path = self._set_path(node_id)
        if set_path.exists():
            try:
                data = read_json(set_path)
                members = {from_hex(m) for m in data["members"]}
                stored_root = from_hex(data["root"])
            except (KeyError, TypeError, ValueError) as e:
                raise IntegrityViolation(f"Unreadable frame set: {e}", identity=to_hex(node_id)) from e
            if stored_root != merkle_root(members):
                raise IntegrityViolation("Frame set root does not match its members", identity=to_hex(node_id))
        else:
            members = set()

        self._members[node_id] = members
        return members

    def add(self, node_id: NodeID, frame_id: FrameID) -> Hash:
        """
        Add a frame to a node's set.

        Returns:
            The new set root

        Raises:
            NodeUnknown: If the node was never observed
        """
        self.require_node(node_id)
        with self._lock:
            members = self._load(node_id)
            if frame_id in members:
                return merkle_root(members)

            updated = members | {frame_id}
            root = merkle_root(updated)
            try:
                atomic_write_json(
                    self._set_path(node_id),
                    {
                        "node_id": to_hex(node_id),
                        "members": sorted(to_hex(m) for m in updated),
                        "root": to_hex(root),
                    },
                )
            except OSError as e:
                raise Transient(f"Failed to write frame set: {e}", identity=to_hex(node_id)) from e
            self._members[node_id] = updated
            return root

    def contains(self, node_id: NodeID, frame_id: FrameID) -> bool:
        self.require_node(node_id)
        with self._lock:
            return frame_id in self._load(node_id)

    def root(self, node_id: NodeID) -> Hash:
        self.require_node(node_id)
        with self._lock:
            return merkle_root(self._load(node_id))

    def members(self, node_id: NodeID) -> list[FrameID]:
        """All FrameIDs ever committed for a node, sorted."""
        self.require_node(node_id)
        with self._lock:
            return sorted(self._load(node_id))
