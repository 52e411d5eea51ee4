"""
ContextApi - the query interface for tools and workflows.

Wraps a ContextStore, a ViewComposer and a GenerationQueue behind one
object. Reads are synchronous; generation is async.

Example:
    config = ContextConfig.load()
    api = ContextApi.from_config(config, workspace=Path.cwd())
    report = api.ingest_tree()
    async with api:
        frame_id = await api.generate_frame(report.root_id, "summary")
    print(api.get_frame(frame_id).text)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .agents.presets import default_registry
from .agents.registry import AgentRegistry
from .config import ContextConfig, ViewConfig
from .context import NodeContextCollector
from .errors import Conflict, PolicyViolation
from .frame.frame import Frame
from .frame.queue import GenerationOptions, GenerationOutcome, GenerationQueue, RequestHandle
from .provider.clients import create_client
from .provider.generation import FrameGenerator, ProviderGenerator
from .regeneration import RegenerationReport, diff_trees, plan_regeneration
from .store import ContextStore
from .tree.node import NodeRecord
from .tree.walker import IngestReport, TreeWalker
from .types import FrameID, Hash, NodeID, short_id, to_hex
from .views import ViewComposer, ViewPolicy

logger = logging.getLogger(__name__)


@dataclass
class NodeInfo:
    """A node record with its frame set and heads."""

    record: NodeRecord
    frame_set_root: Hash
    frames: list[FrameID] = field(default_factory=list)
    heads: list[tuple[str, FrameID]] = field(default_factory=list)


class ContextApi:
    """Query and generation entry point over one store."""

    def __init__(
        self,
        store: ContextStore,
        queue: GenerationQueue | None = None,
        workspace: Path | str | None = None,
        view_defaults: ViewConfig | None = None,
        ignore: list[str] | None = None,
    ):
        self.store = store
        self.queue = queue
        self.workspace = Path(workspace) if workspace is not None else None
        self.view_defaults = view_defaults or ViewConfig()
        self.ignore = ignore
        self.views = ViewComposer(store.heads, store.frame_sets)

    @classmethod
    def from_config(
        cls,
        config: ContextConfig,
        workspace: Path | str,
        generator: FrameGenerator | None = None,
        registry: AgentRegistry | None = None,
    ) -> "ContextApi":
        """
        Build the full stack from configuration.

        Agents come from ``config.agents`` when defined, else the presets.
        Without an explicit generator, a ProviderGenerator is built from
        ``config.provider``.
        """
        if registry is None:
            registry = AgentRegistry.from_config(config.agents) if config.agents else default_registry()

        store = ContextStore(config.store_root, agents=registry)
        collector = NodeContextCollector(store.nodes, workspace, max_bytes=config.store.max_context_bytes)

        if generator is None:
            client, model = create_client(config.provider)
            generator = ProviderGenerator(registry, client, config.provider, model=model)

        queue = GenerationQueue(store, generator, collector, config.generation)
        return cls(store, queue, workspace=workspace, view_defaults=config.views, ignore=config.store.ignore)

    # ------------------------------------------------------------------
    # Tree
    # ------------------------------------------------------------------

    def ingest_tree(self, workspace: Path | str | None = None) -> IngestReport:
        """Record the workspace tree and return its root."""
        target = workspace if workspace is not None else self.workspace
        if target is None:
            raise PolicyViolation("No workspace to ingest")
        return self.store.ingest(target, ignore=self.ignore)

    def resolve_path(self, report: IngestReport, rel_path: str) -> NodeRecord | None:
        """Find the node at rel_path in an ingested tree."""
        return TreeWalker(self.workspace or ".", self.store.nodes, ignore=self.ignore).find(report, rel_path)

    def get_node(self, node_id: NodeID) -> NodeInfo:
        record = self.store.get_node(node_id)
        return NodeInfo(
            record=record,
            frame_set_root=self.store.frame_sets.root(node_id),
            frames=self.store.frame_sets.members(node_id),
            heads=self.store.heads.get_all_heads_for_node(node_id),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_head(self, node_id: NodeID, agent_id: str) -> FrameID | None:
        return self.store.get_head(node_id, agent_id)

    def get_all_heads_for_node(self, node_id: NodeID) -> list[tuple[str, FrameID]]:
        return self.store.heads.get_all_heads_for_node(node_id)

    def get_frame(self, frame_id: FrameID) -> Frame:
        return self.store.get_frame(frame_id)

    def _policy(self, policy: ViewPolicy | Mapping[str, Any] | None) -> ViewPolicy:
        if isinstance(policy, ViewPolicy):
            return policy
        options: dict[str, Any] = {
            "max_frames": self.view_defaults.max_frames,
            "ordering": self.view_defaults.ordering,
        }
        options.update(policy or {})
        try:
            return ViewPolicy.model_validate(options)
        except ValidationError as e:
            raise PolicyViolation(f"Invalid view policy: {e}") from e

    def select_view(self, node_id: NodeID, policy: ViewPolicy | Mapping[str, Any] | None = None) -> list[FrameID]:
        """
        Bounded, ordered frame selection for a node.

        ``policy`` may be a ViewPolicy or a mapping of its options; missing
        options fall back to the configured view defaults.

        Raises:
            NodeUnknown: If the node was never observed
            PolicyViolation: If the policy has unknown or invalid options
        """
        return self.views.select(node_id, self._policy(policy))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put_frame(
        self,
        node_id: NodeID,
        agent_id: str,
        content: bytes | str,
        metadata: Mapping[str, Any] | None = None,
    ) -> Frame:
        """
        Commit a frame directly, bypassing the queue.

        Raises:
            Conflict: If a generation for (node_id, agent_id) is in flight
        """
        if self.queue is not None and self.queue.in_flight(node_id, agent_id):
            raise Conflict(
                "Generation in flight for this node and agent",
                identity=f"{short_id(node_id)}/{agent_id}",
            )
        if isinstance(content, str):
            content = content.encode("utf-8")
        return self.store.commit_frame(node_id, agent_id, content, metadata=metadata)

    def _require_queue(self) -> GenerationQueue:
        if self.queue is None:
            raise PolicyViolation("Generation is not configured for this store")
        return self.queue

    async def enqueue_generation(
        self,
        node_id: NodeID,
        agent_id: str,
        options: GenerationOptions | None = None,
    ) -> RequestHandle:
        return await self._require_queue().enqueue(node_id, agent_id, options)

    async def await_result(self, handle: RequestHandle, timeout: float | None = None) -> GenerationOutcome:
        return await self._require_queue().await_result(handle, timeout)

    async def cancel(self, handle: RequestHandle) -> bool:
        return await self._require_queue().cancel(handle)

    async def generate_frame(
        self,
        node_id: NodeID,
        agent_id: str,
        options: GenerationOptions | None = None,
        timeout: float | None = None,
    ) -> FrameID:
        """
        Enqueue, wait, and return the resulting FrameID.

        Raises:
            ContextStoreError: The failure recorded on the outcome
            Timeout: If the outcome does not arrive in time
        """
        handle = await self.enqueue_generation(node_id, agent_id, options)
        outcome = await self.await_result(handle, timeout)
        if not outcome.succeeded:
            raise outcome.error
        return outcome.frame_id

    async def regenerate(
        self,
        previous: IngestReport,
        current: IngestReport,
        agents: list[str] | None = None,
        recursive: bool = True,
        options: GenerationOptions | None = None,
        timeout: float | None = None,
    ) -> RegenerationReport:
        """
        Regenerate frames for nodes that changed between two ingestions.

        Each changed node is generated for the agents that had a head on
        the node at the same path in the previous tree. New frames record
        the frame they replace under the ``previous_frame`` metadata key.

        Raises:
            Timeout: If an outcome does not arrive in time
        """
        queue = self._require_queue()
        started = time.monotonic()
        options = options or GenerationOptions()

        changes = await asyncio.to_thread(
            diff_trees, self.store.nodes, previous.root_id, current.root_id, recursive
        )
        tasks = await asyncio.to_thread(plan_regeneration, self.store.heads, changes, agents)
        report = RegenerationReport(previous.root_id, current.root_id, changed_nodes=len(changes))

        handles = []
        for task in tasks:
            metadata = {**options.metadata, "previous_frame": to_hex(task.previous_frame)}
            handles.append(
                await queue.enqueue(task.change.current_id, task.agent_id, replace(options, metadata=metadata))
            )
        outcomes = await asyncio.gather(*(queue.await_result(handle, timeout) for handle in handles))
        for task, outcome in zip(tasks, outcomes):
            report.record(task, outcome)

        report.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Regenerated {report.regenerated_count} frame(s) across {report.changed_nodes} changed node(s), "
            f"{len(report.failures)} failed"
        )
        return report

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.queue is not None:
            await self.queue.start()

    async def stop(self) -> None:
        if self.queue is not None:
            await self.queue.stop()

    async def __aenter__(self) -> "ContextApi":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
