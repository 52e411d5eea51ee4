"""NodeRecord - metadata and relationships for filesystem nodes.

Ownership flows downward (directory -> children). The ``parent`` field is a
lookup-only back-reference resolved through the store.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ..errors import IntegrityViolation, NotFound
from ..persistence import atomic_write_json, read_json, sharded_path
from ..types import NodeID, from_hex, short_id, to_hex

logger = logging.getLogger(__name__)


class NodeType(Enum):
    """Kind of filesystem node."""

    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class NodeRecord:
    """Immutable record of one observed node."""

    node_id: NodeID
    path: str                      # relative, POSIX form; "." for the root
    node_type: NodeType
    children: tuple[NodeID, ...] = ()
    parent: NodeID | None = None   # back-reference only
    size: int | None = None
    content_hash: bytes | None = None
    metadata: dict[str, str] = field(default_factory=dict, compare=False)

    @property
    def is_file(self) -> bool:
        return self.node_type == NodeType.FILE

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": to_hex(self.node_id),
            "path": self.path,
            "node_type": self.node_type.value,
            "children": [to_hex(c) for c in self.children],
            "parent": to_hex(self.parent) if self.parent else None,
            "size": self.size,
            "content_hash": to_hex(self.content_hash) if self.content_hash else None,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NodeRecord":
        return cls(
            node_id=from_hex(data["node_id"]),
            path=data["path"],
            node_type=NodeType(data["node_type"]),
            children=tuple(from_hex(c) for c in data.get("children", [])),
            parent=from_hex(data["parent"]) if data.get("parent") else None,
            size=data.get("size"),
            content_hash=from_hex(data["content_hash"]) if data.get("content_hash") else None,
            metadata=dict(data.get("metadata", {})),
        )


class NodeRecordStore:
    """
    Append-only, file-backed NodeRecord store.

    One JSON file per record: ``{root}/nodes/ab/<node_id hex>.json``.
    Re-putting an existing record is a no-op.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self.path.mkdir(parents=True, exist_ok=True)
        self._cache: dict[NodeID, NodeRecord] = {}
        self._lock = threading.Lock()

    def _record_path(self, node_id: NodeID) -> Path:
        return sharded_path(self.path, to_hex(node_id))

    def put(self, record: NodeRecord) -> bool:
        """
        Persist a record.

        Returns:
            True if the record was new, False if it already existed
        """
        with self._lock:
            if record.node_id in self._cache:
                return False
            record_path = self._record_path(record.node_id)
            if record_path.exists():
                self._cache[record.node_id] = record
                return False
            atomic_write_json(record_path, record.to_dict())
            self._cache[record.node_id] = record
            return True

    def get(self, node_id: NodeID) -> NodeRecord:
        """
        Load a record by NodeID.

        Raises:
            NotFound: If the node was never observed
        """
        with self._lock:
            cached = self._cache.get(node_id)
        if cached is not None:
            return cached

        record_path = self._record_path(node_id)
        if not record_path.exists():
            raise NotFound("Node not found", identity=to_hex(node_id))

        try:
            record = NodeRecord.from_dict(read_json(record_path))
        except (ValueError, KeyError, TypeError) as e:
            raise IntegrityViolation(f"Unreadable node record: {e}", identity=to_hex(node_id)) from e

        if record.node_id != node_id:
            raise IntegrityViolation("Node record stored under wrong id", identity=to_hex(node_id))

        with self._lock:
            self._cache[node_id] = record
        return record

    def contains(self, node_id: NodeID) -> bool:
        with self._lock:
            if node_id in self._cache:
                return True
        return self._record_path(node_id).exists()

    def get_parent(self, node_id: NodeID) -> NodeRecord | None:
        """Resolve the parent back-reference of a node."""
        record = self.get(node_id)
        if record.parent is None:
            return None
        return self.get(record.parent)

    def get_children(self, node_id: NodeID) -> list[NodeRecord]:
        """Child records in canonical order."""
        return [self.get(child) for child in self.get(node_id).children]

    def __contains__(self, node_id: NodeID) -> bool:
        return self.contains(node_id)

    def __repr__(self) -> str:
        return f"NodeRecordStore({self.path})"


def describe(record: NodeRecord) -> str:
    """One-line summary for logs."""
    return f"{record.node_type.value}:{record.path}@{short_id(record.node_id)}"
