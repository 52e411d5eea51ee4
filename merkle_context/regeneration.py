"""Incremental regeneration after the workspace changes.

Editing a file gives it, and every directory above it, a new NodeID with
no heads. ``diff_trees`` pairs two ingested trees by path and prunes every
subtree whose NodeID did not change. ``plan_regeneration`` carries each
agent that had a head on the old node over to the new one. Old frames and
heads are left untouched.

Usage:
    changes = diff_trees(store.nodes, before.root_id, after.root_id)
    tasks = plan_regeneration(store.heads, changes, agents=["summary"])
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .errors import ContextStoreError
from .frame.queue import GenerationOutcome
from .heads import HeadIndex
from .tree.node import NodeRecord, NodeRecordStore
from .types import FrameID, NodeID, short_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodeChange:
    """A path whose NodeID differs between two ingestions."""

    path: str
    previous_id: NodeID | None  # None when the path is new
    current_id: NodeID


@dataclass(frozen=True)
class RegenerationTask:
    """One (node, agent) pair to regenerate."""

    change: NodeChange
    agent_id: str
    previous_frame: FrameID


@dataclass
class RegenerationReport:
    """Summary of one regeneration run."""

    previous_root: NodeID
    current_root: NodeID
    changed_nodes: int = 0
    regenerated: list[tuple[NodeID, str, FrameID]] = field(default_factory=list)
    skipped: int = 0
    failures: list[tuple[NodeID, str, ContextStoreError]] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def regenerated_count(self) -> int:
        return len(self.regenerated)

    @property
    def frame_ids(self) -> list[FrameID]:
        return [frame_id for _, _, frame_id in self.regenerated]

    def record(self, task: RegenerationTask, outcome: GenerationOutcome) -> None:
        node_id = task.change.current_id
        if not outcome.succeeded:
            self.failures.append((node_id, task.agent_id, outcome.error))
        elif outcome.skipped:
            self.skipped += 1
        else:
            self.regenerated.append((node_id, task.agent_id, outcome.frame_id))


def diff_trees(
    nodes: NodeRecordStore,
    previous_root: NodeID,
    current_root: NodeID,
    recursive: bool = True,
) -> list[NodeChange]:
    """
    Paths whose NodeID changed between two ingested trees, parents first.

    Without recursive only the root is compared.

    Raises:
        NotFound: If either root was never ingested
    """
    changes: list[NodeChange] = []

    def _diff(previous: NodeRecord | None, current: NodeRecord) -> None:
        if previous is not None and previous.node_id == current.node_id:
            return
        changes.append(
            NodeChange(
                path=current.path,
                previous_id=previous.node_id if previous is not None else None,
                current_id=current.node_id,
            )
        )
        if not recursive or current.is_file:
            return

        before: dict[str, NodeRecord] = {}
        if previous is not None and not previous.is_file:
            before = {child.path: child for child in nodes.get_children(previous.node_id)}
        for child in nodes.get_children(current.node_id):
            _diff(before.get(child.path), child)

    _diff(nodes.get(previous_root), nodes.get(current_root))
    logger.debug(f"Tree diff {short_id(previous_root)} -> {short_id(current_root)}: {len(changes)} changed")
    return changes


def plan_regeneration(
    heads: HeadIndex,
    changes: Iterable[NodeChange],
    agents: Iterable[str] | None = None,
) -> list[RegenerationTask]:
    """
    Pair each changed node with the agents that had heads on its predecessor.

    New paths have no predecessor and are not planned. When agents is given
    only those agents are carried over.
    """
    allowed = set(agents) if agents is not None else None
    tasks = []
    for change in changes:
        if change.previous_id is None:
            continue
        for agent_id, frame_id in heads.get_all_heads_for_node(change.previous_id):
            if allowed is None or agent_id in allowed:
                tasks.append(RegenerationTask(change=change, agent_id=agent_id, previous_frame=frame_id))
    return tasks


__all__ = [
    "NodeChange",
    "RegenerationReport",
    "RegenerationTask",
    "diff_trees",
    "plan_regeneration",
]
