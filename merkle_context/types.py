"""Core identifier types."""

from __future__ import annotations

# 32-byte SHA-256 digests
NodeID = bytes
FrameID = bytes
Hash = bytes

HASH_SIZE = 32


def to_hex(value: bytes) -> str:
    """Render an identifier as lowercase hex."""
    return value.hex()


def from_hex(value: str) -> bytes:
    """
    Parse a hex identifier.

    Raises:
        ValueError: If the string is not 64 hex characters
    """
    if len(value) != HASH_SIZE * 2:
        raise ValueError(f"Invalid hash length: {len(value)}")
    return bytes.fromhex(value)


def short_id(value: bytes) -> str:
    """Abbreviated hex for log lines."""
    return value.hex()[:12]
