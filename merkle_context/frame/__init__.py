"""
Frame Layer - immutable context frames and how they are produced.

Components:
- Frame: content attached to a node by an agent, addressed by FrameID
- FrameStore: durable frames, integrity-checked on read
- FrameSet: per-node Merkle set of every frame ever committed
- GenerationQueue: asynchronous single-flight frame production
"""

from .frame import Frame, deserialize_frame, serialize_frame
from .frame_set import EMPTY_SET_ROOT, FrameSet, merkle_root
from .frame_store import FrameStore
from .queue import (
    CompletionMode,
    GenerationOptions,
    GenerationOutcome,
    GenerationQueue,
    Priority,
    QueueStats,
    RequestHandle,
    RequestState,
)

__all__ = [
    "Frame",
    "serialize_frame",
    "deserialize_frame",
    "FrameStore",
    "FrameSet",
    "EMPTY_SET_ROOT",
    "merkle_root",
    "CompletionMode",
    "GenerationOptions",
    "GenerationOutcome",
    "GenerationQueue",
    "Priority",
    "QueueStats",
    "RequestHandle",
    "RequestState",
]
