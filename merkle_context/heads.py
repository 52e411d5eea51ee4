"""Frame Heads

O(1) access to the latest frame for a (node, agent) pair.

Heads are keyed by agent identity only. Legacy stores keyed heads by a
free-form frame type; ``migrate_legacy_heads`` converts them.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from .errors import IntegrityViolation, Transient
from .persistence import atomic_write_json, read_json
from .types import HASH_SIZE, FrameID, NodeID, from_hex, short_id, to_hex

logger = logging.getLogger(__name__)

LEGACY_FRAME_TYPE_PREFIX = "context-"


def head_key(node_id: NodeID, agent_id: str) -> bytes:
    """Persisted key: NodeID bytes followed by the UTF-8 agent id."""
    return node_id + agent_id.encode("utf-8")


def split_head_key(key: bytes) -> tuple[NodeID, str]:
    """Inverse of head_key. NodeIDs are fixed-size, so the split is unambiguous."""
    return key[:HASH_SIZE], key[HASH_SIZE:].decode("utf-8")


@dataclass(frozen=True)
class HeadEntry:
    """Current head of one (node, agent) stream."""

    node_id: NodeID
    agent_id: str
    frame_id: FrameID
    seq: int  # commit order, strictly increasing across the index


class HeadIndex:
    """
    Head index: (NodeID, agent_id) -> FrameID.

    update_head is an unconditional overwrite; the last commit wins.
    When constructed with a path, every update is persisted before
    returning and the in-memory state is rolled back if the write fails.
    """

    def __init__(self, path: Path | str | None = None):
        self.path = Path(path) if path is not None else None
        self._by_node: dict[NodeID, dict[str, HeadEntry]] = {}
        self._seq = 0
        self._lock = threading.RLock()
        if self.path is not None and self.path.exists():
            self._load()

    def _load(self) -> None:
        try:
            data = read_json(self.path)
            self._seq = int(data.get("seq", 0))
            for key_hex, entry in data.get("heads", {}).items():
                node_id, agent_id = split_head_key(bytes.fromhex(key_hex))
                head = HeadEntry(
                    node_id=node_id,
                    agent_id=agent_id,
                    frame_id=from_hex(entry["frame_id"]),
                    seq=int(entry["seq"]),
                )
                self._by_node.setdefault(node_id, {})[agent_id] = head
        except (KeyError, TypeError, ValueError) as e:
            raise IntegrityViolation(f"Unreadable head index: {e}", identity=str(self.path)) from e

    def _snapshot(self) -> dict[str, Any]:
        heads = {}
        for agents in self._by_node.values():
            for entry in agents.values():
                heads[head_key(entry.node_id, entry.agent_id).hex()] = {
                    "frame_id": to_hex(entry.frame_id),
                    "seq": entry.seq,
                }
        return {"version": 2, "seq": self._seq, "heads": heads}

    def _persist(self) -> None:
        if self.path is None:
            return
        try:
            atomic_write_json(self.path, self._snapshot())
        except OSError as e:
            raise Transient(f"Failed to persist head index: {e}", identity=str(self.path)) from e

    def get_head(self, node_id: NodeID, agent_id: str) -> FrameID | None:
        with self._lock:
            entry = self._by_node.get(node_id, {}).get(agent_id)
            return entry.frame_id if entry else None

    def get_entry(self, node_id: NodeID, agent_id: str) -> HeadEntry | None:
        with self._lock:
            return self._by_node.get(node_id, {}).get(agent_id)

    def update_head(self, node_id: NodeID, agent_id: str, frame_id: FrameID) -> HeadEntry:
        """
        Point (node, agent) at frame_id.

        Raises:
            Transient: If persisting fails; the previous head stays current
        """
        with self._lock:
            agents = self._by_node.setdefault(node_id, {})
            previous = agents.get(agent_id)
            previous_seq = self._seq

            self._seq += 1
            entry = HeadEntry(node_id=node_id, agent_id=agent_id, frame_id=frame_id, seq=self._seq)
            agents[agent_id] = entry
            try:
                self._persist()
            except Transient:
                self._seq = previous_seq
                if previous is None:
                    del agents[agent_id]
                    if not agents:
                        del self._by_node[node_id]
                else:
                    agents[agent_id] = previous
                raise

            logger.debug(f"Head {short_id(node_id)}/{agent_id} -> {short_id(frame_id)} (seq {entry.seq})")
            return entry

    def get_all_heads_for_node(self, node_id: NodeID) -> list[tuple[str, FrameID]]:
        """(agent_id, FrameID) pairs for a node, sorted by agent_id."""
        return [(e.agent_id, e.frame_id) for e in self.entries_for_node(node_id)]

    def entries_for_node(self, node_id: NodeID) -> list[HeadEntry]:
        with self._lock:
            agents = self._by_node.get(node_id, {})
            return [agents[a] for a in sorted(agents)]

    def __len__(self) -> int:
        with self._lock:
            return sum(len(agents) for agents in self._by_node.values())


@dataclass
class MigrationReport:
    """Result of converting legacy (node, frame_type) heads."""

    migrated: int = 0
    conflicts: int = 0
    skipped: list[str] = field(default_factory=list)


def _legacy_agent(entry: dict[str, Any]) -> str | None:
    agent_id = entry.get("agent_id")
    if agent_id:
        return agent_id
    frame_type = entry.get("frame_type") or ""
    if frame_type.startswith(LEGACY_FRAME_TYPE_PREFIX) and len(frame_type) > len(LEGACY_FRAME_TYPE_PREFIX):
        return frame_type[len(LEGACY_FRAME_TYPE_PREFIX):]
    return None


def _legacy_time(entry: dict[str, Any]) -> float:
    value = entry.get("committed_at")
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    return datetime.fromisoformat(value).timestamp()


def migrate_legacy_heads(
    legacy_entries: list[dict[str, Any]],
    index: HeadIndex,
) -> MigrationReport:
    """
    Convert legacy heads into agent-keyed heads.

    Each legacy entry has ``node_id``, ``frame_type``, ``frame_id`` and
    optionally ``agent_id`` and ``committed_at``. The frame type is dropped.
    When several legacy heads map to one (node, agent) key, the most recent
    ``committed_at`` wins and the conflict is logged. Entries are applied
    oldest first so commit sequence numbers follow legacy commit order.
    """
    report = MigrationReport()
    winners: dict[bytes, dict[str, Any]] = {}

    for entry in legacy_entries:
        agent_id = _legacy_agent(entry)
        if agent_id is None or "node_id" not in entry or "frame_id" not in entry:
            report.skipped.append(f"{entry.get('node_id')}/{entry.get('frame_type')}")
            logger.warning(f"Skipping legacy head without resolvable agent: {entry.get('frame_type')!r}")
            continue

        key = head_key(from_hex(entry["node_id"]), agent_id)
        current = winners.get(key)
        if current is None:
            winners[key] = entry
            continue

        report.conflicts += 1
        keep, drop = (entry, current) if _legacy_time(entry) > _legacy_time(current) else (current, entry)
        logger.warning(
            f"Legacy head conflict for {entry['node_id'][:12]}/{agent_id}: "
            f"keeping {keep['frame_id'][:12]} ({keep.get('frame_type')}), "
            f"dropping {drop['frame_id'][:12]} ({drop.get('frame_type')})"
        )
        winners[key] = keep

    for key, entry in sorted(winners.items(), key=lambda kv: (_legacy_time(kv[1]), kv[0])):
        node_id, agent_id = split_head_key(key)
        index.update_head(node_id, agent_id, from_hex(entry["frame_id"]))
        report.migrated += 1

    logger.info(
        f"Migrated {report.migrated} legacy heads "
        f"({report.conflicts} conflicts, {len(report.skipped)} skipped)"
    )
    return report
