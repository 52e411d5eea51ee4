"""Error taxonomy for the context store.

Every error carries the identity it concerns so callers can act on it.
Only ``Transient`` failures are eligible for retry.
"""

from __future__ import annotations


class ContextStoreError(Exception):
    """Base class for all context store failures."""

    retryable: bool = False

    def __init__(self, message: str, identity: str | None = None):
        super().__init__(message)
        self.message = message
        self.identity = identity

    def __str__(self) -> str:
        if self.identity:
            return f"{self.message} [{self.identity}]"
        return self.message


class NotFound(ContextStoreError):
    """Node or frame identity is absent."""


class NodeUnknown(NotFound):
    """Node has never been observed during tree ingestion."""


class IntegrityViolation(ContextStoreError):
    """Stored content disagrees with its identity hash."""


class PolicyViolation(ContextStoreError):
    """Request rejected by a deterministic policy check."""


class Conflict(ContextStoreError):
    """Operation would violate the single-head or single-flight invariant."""


class Transient(ContextStoreError):
    """Provider or storage I/O failure that may succeed on retry."""

    retryable = True


class QueueFull(Transient):
    """Generation queue is at capacity."""


class Cancelled(ContextStoreError):
    """Request was cancelled before it completed."""


class Timeout(ContextStoreError):
    """Caller-side wait expired. The underlying work is unaffected."""


class GenerationFailed(ContextStoreError):
    """Generation collaborator failed in a way retrying will not fix."""


__all__ = [
    "ContextStoreError",
    "NotFound",
    "NodeUnknown",
    "IntegrityViolation",
    "PolicyViolation",
    "Conflict",
    "Transient",
    "QueueFull",
    "Cancelled",
    "Timeout",
    "GenerationFailed",
]
