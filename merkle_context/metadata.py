"""Metadata validation boundary.

Caller-supplied frame metadata passes through a validator before any
frame is stored. Metadata carries derived references (digests, model
names, link identifiers), never the payload itself. Stricter key policies
belong to a validator supplied by the host application; the store only
needs the normalized result and never reads metadata for integrity
decisions.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from .errors import PolicyViolation

# Keys that would duplicate a frame's payload or its prompt
PAYLOAD_KEYS = frozenset({"content", "prompt", "system_prompt", "user_prompt", "response", "completion", "text"})

MAX_VALUE_LENGTH = 256


class MetadataValidator(Protocol):
    """Validates and normalizes frame metadata."""

    def validate(self, metadata: Mapping[str, Any]) -> dict[str, str]:
        """Return normalized metadata or raise PolicyViolation."""
        ...


class PassthroughValidator:
    """
    Default validator: string keys, short scalar values, nothing else.

    Values are normalized to strings. Containers, payload keys and values
    longer than max_value_length are rejected so payloads cannot be
    smuggled in as metadata.
    """

    def __init__(self, max_value_length: int = MAX_VALUE_LENGTH):
        self.max_value_length = max_value_length

    def validate(self, metadata: Mapping[str, Any]) -> dict[str, str]:
        normalized: dict[str, str] = {}
        for key, value in metadata.items():
            if not isinstance(key, str) or not key.strip():
                raise PolicyViolation(f"Metadata key must be a non-empty string: {key!r}")
            if key.lower() in PAYLOAD_KEYS:
                raise PolicyViolation("Metadata may not carry payload text; store a digest instead", identity=key)
            if isinstance(value, bool):
                normalized[key] = "true" if value else "false"
            elif isinstance(value, (str, int, float)):
                normalized[key] = str(value)
            else:
                raise PolicyViolation(
                    f"Metadata value for {key!r} must be a scalar, got {type(value).__name__}"
                )
            if len(normalized[key]) > self.max_value_length:
                raise PolicyViolation(
                    f"Metadata value exceeds {self.max_value_length} characters",
                    identity=key,
                )
        return normalized
