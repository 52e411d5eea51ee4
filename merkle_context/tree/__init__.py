"""Tree Layer - Merkle model of the workspace filesystem."""

from .node import NodeRecord, NodeRecordStore, NodeType
from .walker import IngestReport, TreeWalker

__all__ = [
    "NodeRecord",
    "NodeRecordStore",
    "NodeType",
    "IngestReport",
    "TreeWalker",
]
