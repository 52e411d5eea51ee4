"""Filesystem walker - builds the Merkle tree of a workspace.

NodeIDs are computed bottom-up with children in name order, then records
are written top-down so each child can carry its parent back-reference.
"""

from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass, field
from pathlib import Path

from ..identity import compute_node_id, content_hash
from ..types import NodeID, short_id
from .node import NodeRecord, NodeRecordStore, NodeType

logger = logging.getLogger(__name__)

DEFAULT_IGNORE = [".git", "__pycache__", ".DS_Store", "*.pyc", ".merkle-context"]


@dataclass
class _Draft:
    """Node whose id is known but whose parent is not yet assigned."""

    node_id: NodeID
    path: str
    node_type: NodeType
    children: list["_Draft"] = field(default_factory=list)
    size: int | None = None
    content_hash: bytes | None = None


@dataclass
class IngestReport:
    """Summary of one tree ingestion."""

    root_id: NodeID
    node_count: int = 0
    new_nodes: int = 0
    file_count: int = 0
    directory_count: int = 0


class TreeWalker:
    """
    Walk a workspace and record every node in a NodeRecordStore.

    Usage:
        walker = TreeWalker(Path.cwd(), node_store)
        report = walker.ingest()
    """

    def __init__(
        self,
        root: Path | str,
        node_store: NodeRecordStore,
        ignore: list[str] | None = None,
    ):
        self.root = Path(root).resolve()
        self.node_store = node_store
        self.ignore = list(DEFAULT_IGNORE if ignore is None else ignore)

    def _is_ignored(self, name: str) -> bool:
        return any(fnmatch.fnmatch(name, pattern) for pattern in self.ignore)

    def _relative(self, path: Path) -> str:
        rel = path.relative_to(self.root).as_posix()
        return rel or "."

    def _build(self, path: Path) -> _Draft:
        rel = self._relative(path)

        if path.is_file():
            data = path.read_bytes()
            return _Draft(
                node_id=compute_node_id(rel, data, []),
                path=rel,
                node_type=NodeType.FILE,
                size=len(data),
                content_hash=content_hash(data),
            )

        children = []
        for entry in sorted(path.iterdir(), key=lambda p: p.name):
            if self._is_ignored(entry.name) or entry.is_symlink():
                continue
            if entry.is_file() or entry.is_dir():
                children.append(self._build(entry))

        return _Draft(
            node_id=compute_node_id(rel, None, [c.node_id for c in children]),
            path=rel,
            node_type=NodeType.DIRECTORY,
            children=children,
        )

    def _emit(self, draft: _Draft, parent: NodeID | None, report: IngestReport) -> None:
        record = NodeRecord(
            node_id=draft.node_id,
            path=draft.path,
            node_type=draft.node_type,
            children=tuple(c.node_id for c in draft.children),
            parent=parent,
            size=draft.size,
            content_hash=draft.content_hash,
        )
        if self.node_store.put(record):
            report.new_nodes += 1
        report.node_count += 1
        if draft.node_type == NodeType.FILE:
            report.file_count += 1
        else:
            report.directory_count += 1

        for child in draft.children:
            self._emit(child, draft.node_id, report)

    def ingest(self) -> IngestReport:
        """
        Ingest the tree rooted at ``self.root``.

        Returns:
            IngestReport with the root NodeID and counts
        """
        if not self.root.exists():
            raise FileNotFoundError(f"Workspace root does not exist: {self.root}")

        tree = self._build(self.root)
        report = IngestReport(root_id=tree.node_id)
        self._emit(tree, None, report)

        logger.info(
            f"Ingested {self.root}: root={short_id(report.root_id)} "
            f"nodes={report.node_count} new={report.new_nodes}"
        )
        return report

    def find(self, report: IngestReport, rel_path: str) -> NodeRecord | None:
        """Resolve a relative path to its record within an ingested tree."""
        target = Path(rel_path).as_posix()
        if target in ("", "."):
            return self.node_store.get(report.root_id)

        record = self.node_store.get(report.root_id)
        for part in target.split("/"):
            match = None
            for child in self.node_store.get_children(record.node_id):
                if child.path.rsplit("/", 1)[-1] == part:
                    match = child
                    break
            if match is None:
                return None
            record = match
        return record
