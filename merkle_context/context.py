"""NodeContext - what the generation collaborator sees for one node."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from .errors import PolicyViolation, Transient
from .tree.node import NodeRecord, NodeRecordStore, NodeType
from .types import NodeID


@dataclass
class NodeContext:
    """
    Bounded description of a node handed to a FrameGenerator.

    For files, ``content`` is a prefix of the file (``truncated`` tells
    whether it was cut). For directories it lists the child paths.
    """

    node_id: NodeID
    path: str
    node_type: NodeType
    size: int | None = None
    content: str = ""
    truncated: bool = False
    children: list[str] = field(default_factory=list)

    @property
    def is_file(self) -> bool:
        return self.node_type == NodeType.FILE


class NodeContextCollector:
    """
    Build NodeContext from node records and the workspace on disk.

    Usage:
        collector = NodeContextCollector(store.nodes, Path.cwd())
        ctx = collector.collect(node_id)
    """

    def __init__(self, nodes: NodeRecordStore, workspace: Path | str, max_bytes: int = 32_000):
        self.nodes = nodes
        self.workspace = Path(workspace).resolve()
        self.max_bytes = max_bytes

    def _resolve(self, rel_path: str) -> Path:
        """Workspace path for a relative path; rejects escapes."""
        candidate = (self.workspace / rel_path).resolve()
        if candidate != self.workspace and self.workspace not in candidate.parents:
            raise PolicyViolation("Content source escapes the workspace", identity=rel_path)
        return candidate

    def _read_excerpt(self, path: Path) -> tuple[str, bool]:
        with open(path, "rb") as f:
            data = f.read(self.max_bytes + 1)
        truncated = len(data) > self.max_bytes
        return data[: self.max_bytes].decode("utf-8", errors="replace"), truncated

    def collect(self, node_id: NodeID, source: str | None = None) -> NodeContext:
        """
        Collect context for a node.

        Args:
            node_id: Node to describe
            source: Optional content-source path (relative to the workspace)
                overriding the node's own path

        Raises:
            NotFound: If the node is unknown
            PolicyViolation: If the source path is outside the workspace
        """
        record: NodeRecord = self.nodes.get(node_id)
        ctx = NodeContext(
            node_id=record.node_id,
            path=record.path,
            node_type=record.node_type,
            size=record.size,
        )

        source_path = self._resolve(source or record.path)

        if record.is_file:
            if not source_path.is_file():
                raise PolicyViolation("Content source is not a file", identity=source or record.path)
            try:
                ctx.content, ctx.truncated = self._read_excerpt(source_path)
            except OSError as e:
                raise Transient(f"Failed to read content source: {e}", identity=str(source_path)) from e
        else:
            ctx.children = [child.path for child in self.nodes.get_children(node_id)]
            ctx.content = "\n".join(f"- {p}" for p in ctx.children)

        return ctx
