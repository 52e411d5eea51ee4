"""Deterministic identity computation for nodes and frames.

All integers are encoded big-endian and every variable-length field is
length-prefixed, so the same inputs hash identically on every platform.

Callers own canonical ordering: ``compute_node_id`` hashes children in the
order given. The walker in ``tree.walker`` supplies them sorted by child name.
"""

from __future__ import annotations

import hashlib
import struct
from collections.abc import Mapping, Sequence
from pathlib import PurePath

from .types import FrameID, NodeID

NODE_TAG = b"merkle-context/node/v1"
FRAME_TAG = b"merkle-context/frame/v1"

# SHA-256 of the empty string; used as a canary in tests
EMPTY_CONTENT_HASH = bytes.fromhex(
    "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
)


def content_hash(data: bytes) -> bytes:
    """SHA-256 digest of raw bytes."""
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError(f"content must be bytes, got {type(data).__name__}")
    return hashlib.sha256(data).digest()


def _length_prefixed(data: bytes) -> bytes:
    return struct.pack(">Q", len(data)) + bytes(data)


def canonical_path(path: str | PurePath) -> str:
    """POSIX form of a path, used for hashing and persistence."""
    if isinstance(path, PurePath):
        return path.as_posix()
    if isinstance(path, str):
        return PurePath(path).as_posix()
    raise TypeError(f"path must be str or PurePath, got {type(path).__name__}")


def compute_node_id(
    path: str | PurePath,
    content: bytes | None,
    children: Sequence[NodeID],
) -> NodeID:
    """
    Compute the NodeID for a filesystem node.

    Args:
        path: Node path relative to the workspace root
        content: File bytes, or None for directories
        children: Child NodeIDs in canonical (name) order

    Returns:
        32-byte NodeID
    """
    h = hashlib.sha256()
    h.update(NODE_TAG)
    h.update(_length_prefixed(canonical_path(path).encode("utf-8")))

    if content is None:
        h.update(b"\x00")
    else:
        if not isinstance(content, (bytes, bytearray, memoryview)):
            raise TypeError(f"content must be bytes or None, got {type(content).__name__}")
        h.update(b"\x01")
        h.update(_length_prefixed(bytes(content)))

    h.update(struct.pack(">Q", len(children)))
    for child in children:
        if not isinstance(child, bytes):
            raise TypeError(f"child NodeID must be bytes, got {type(child).__name__}")
        h.update(_length_prefixed(child))

    return h.digest()


def compute_frame_id(
    node_id: NodeID,
    agent_id: str,
    content: bytes,
    identity_fields: Mapping[str, str] | None = None,
) -> FrameID:
    """
    Compute the FrameID for a frame.

    Same (node, agent, content, identity fields) = same FrameID.
    Metadata and timestamps are not inputs.
    """
    if not isinstance(node_id, bytes):
        raise TypeError(f"node_id must be bytes, got {type(node_id).__name__}")
    if not isinstance(agent_id, str):
        raise TypeError(f"agent_id must be str, got {type(agent_id).__name__}")
    if not isinstance(content, (bytes, bytearray, memoryview)):
        raise TypeError(f"content must be bytes, got {type(content).__name__}")

    fields = identity_fields or {}

    h = hashlib.sha256()
    h.update(FRAME_TAG)
    h.update(_length_prefixed(node_id))
    h.update(_length_prefixed(agent_id.encode("utf-8")))
    h.update(_length_prefixed(bytes(content)))
    h.update(struct.pack(">I", len(fields)))
    for key in sorted(fields):
        h.update(_length_prefixed(key.encode("utf-8")))
        h.update(_length_prefixed(str(fields[key]).encode("utf-8")))

    return h.digest()


__all__ = [
    "EMPTY_CONTENT_HASH",
    "canonical_path",
    "compute_frame_id",
    "compute_node_id",
    "content_hash",
]
