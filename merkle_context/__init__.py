"""merkle-context: content-addressed context frames over a Merkle tree.

Tracks a workspace as a Merkle tree of nodes and attaches append-only
context frames to those nodes, written directly or produced by a
single-flight generation queue.

Layers:
- Identity: deterministic NodeID / FrameID computation
- Storage: node records, frames, frame sets, head index
- Views: bounded, ordered frame selection
- Generation: asyncio queue driving an LLM provider
- Regeneration: re-generating frames for nodes changed between ingestions
"""

__version__ = "0.1.0"

# Identity Layer
from .identity import EMPTY_CONTENT_HASH, compute_frame_id, compute_node_id, content_hash

# Storage Layer
from .frame import Frame, FrameSet, FrameStore
from .heads import HeadEntry, HeadIndex, migrate_legacy_heads
from .store import ContextStore
from .tree import NodeRecord, NodeRecordStore, NodeType, TreeWalker

# Views & Generation
from .views import OrderingPolicy, ViewComposer, ViewPolicy
from .frame.queue import (
    CompletionMode,
    GenerationOptions,
    GenerationOutcome,
    GenerationQueue,
    Priority,
    RequestHandle,
)
from .regeneration import NodeChange, RegenerationReport, diff_trees, plan_regeneration
from .api import ContextApi

# Errors & Config
from .errors import (
    Cancelled,
    Conflict,
    ContextStoreError,
    GenerationFailed,
    IntegrityViolation,
    NodeUnknown,
    NotFound,
    PolicyViolation,
    QueueFull,
    Timeout,
    Transient,
)
from .config import ContextConfig, configure_logging, default_config

__all__ = [
    # Identity
    "EMPTY_CONTENT_HASH",
    "compute_frame_id",
    "compute_node_id",
    "content_hash",
    # Storage
    "Frame",
    "FrameSet",
    "FrameStore",
    "HeadEntry",
    "HeadIndex",
    "migrate_legacy_heads",
    "ContextStore",
    "NodeRecord",
    "NodeRecordStore",
    "NodeType",
    "TreeWalker",
    # Views & Generation
    "OrderingPolicy",
    "ViewComposer",
    "ViewPolicy",
    "CompletionMode",
    "GenerationOptions",
    "GenerationOutcome",
    "GenerationQueue",
    "Priority",
    "RequestHandle",
    "NodeChange",
    "RegenerationReport",
    "diff_trees",
    "plan_regeneration",
    "ContextApi",
    # Errors
    "Cancelled",
    "Conflict",
    "ContextStoreError",
    "GenerationFailed",
    "IntegrityViolation",
    "NodeUnknown",
    "NotFound",
    "PolicyViolation",
    "QueueFull",
    "Timeout",
    "Transient",
    # Config
    "ContextConfig",
    "configure_logging",
    "default_config",
]
