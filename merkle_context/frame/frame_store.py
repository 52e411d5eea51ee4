"""FrameStore - content-addressed persistence for Frames.

One JSON file per frame: {root}/frames/ab/<frame_id hex>.json
Append-only. Every read recomputes the FrameID from the stored identity
fields, so corruption is detected without consulting metadata.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from ..errors import IntegrityViolation, NotFound, Transient
from ..persistence import atomic_write_json, read_json, sharded_path
from ..types import FrameID, short_id, to_hex
from .frame import Frame, deserialize_frame, serialize_frame

logger = logging.getLogger(__name__)


class FrameStore:
    """
    File-backed store of immutable frames.

    put() is idempotent: storing a frame that already exists is a no-op.
    """

    def __init__(self, path: Path | str):
        """
        Initialize FrameStore.

        Args:
            path: Directory holding the frame files
        """
        self.path = Path(path)
        self.path.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _frame_path(self, frame_id: FrameID) -> Path:
        return sharded_path(self.path, to_hex(frame_id))

    def put(self, frame: Frame) -> FrameID:
        """
        Persist a frame durably.

        Args:
            frame: Frame to store

        Returns:
            The frame's FrameID

        Raises:
            IntegrityViolation: If the frame's id does not match its content
            Transient: If the write fails with an I/O error
        """
        if frame.expected_id() != frame.frame_id:
            raise IntegrityViolation("Frame id does not match its content", identity=to_hex(frame.frame_id))

        frame_path = self._frame_path(frame.frame_id)
        with self._lock:
            if frame_path.exists():
                logger.debug(f"Frame {short_id(frame.frame_id)} already stored")
                return frame.frame_id
            try:
                atomic_write_json(frame_path, serialize_frame(frame))
            except OSError as e:
                raise Transient(f"Failed to write frame: {e}", identity=to_hex(frame.frame_id)) from e

        return frame.frame_id

    def get(self, frame_id: FrameID) -> Frame:
        """
        Load and verify a frame.

        Raises:
            NotFound: If no frame is stored under this id
            IntegrityViolation: If the stored record is corrupt or its
                recomputed id differs from frame_id
        """
        frame_path = self._frame_path(frame_id)
        if not frame_path.exists():
            raise NotFound("Frame not found", identity=to_hex(frame_id))

        try:
            frame = deserialize_frame(read_json(frame_path))
        except (KeyError, TypeError, ValueError) as e:
            raise IntegrityViolation(f"Unreadable frame record: {e}", identity=to_hex(frame_id)) from e
        except OSError as e:
            raise Transient(f"Failed to read frame: {e}", identity=to_hex(frame_id)) from e

        if frame.frame_id != frame_id or frame.expected_id() != frame_id:
            raise IntegrityViolation("Stored frame content does not match its id", identity=to_hex(frame_id))

        return frame

    def exists(self, frame_id: FrameID) -> bool:
        """True if a record exists for frame_id (not verified)."""
        return self._frame_path(frame_id).exists()

    def __contains__(self, frame_id: FrameID) -> bool:
        return self.exists(frame_id)


__all__ = ["FrameStore"]
