"""
Generation Queue - produces frames asynchronously with single-flight.

Requests are identified by (node_id, agent_id). At most one request per
identity is pending or running at any time; later requests for the same
identity share its outcome. A request whose identity already has a head is
skipped unless ``force`` is set.

Workers pull from a priority heap (higher priority first, FIFO within a
priority), call the FrameGenerator without holding any queue lock, retry
``Transient`` failures, and commit through ``ContextStore.commit_frame``.

Usage:
    queue = GenerationQueue(store, generator, collector, config.generation)
    await queue.start()
    handle = await queue.enqueue(node_id, "summary")
    outcome = await queue.await_result(handle, timeout=30)
    await queue.stop()
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import TYPE_CHECKING

from ..config import GenerationConfig
from ..context import NodeContextCollector
from ..errors import (
    Cancelled,
    ContextStoreError,
    GenerationFailed,
    NotFound,
    PolicyViolation,
    QueueFull,
    Timeout,
    Transient,
)
from ..provider.generation import FrameGenerator
from ..types import FrameID, NodeID, short_id, to_hex
from .frame import Frame

if TYPE_CHECKING:
    from ..store import ContextStore

logger = logging.getLogger(__name__)

# Idle workers re-check the heap at least this often
POLL_INTERVAL_S = 0.1


class Priority(IntEnum):
    """Request priority. Higher runs first."""

    LOW = 0
    NORMAL = 1
    HIGH = 2
    URGENT = 3


class CompletionMode(str, Enum):
    """How a caller relates to in-flight work for the same identity."""

    SYNC = "sync"  # attach as a waiter
    ASYNC = "async"  # fire-and-forget; duplicates are coalesced


class RequestState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class GenerationOptions:
    """Per-request options."""

    force: bool = False
    mode: CompletionMode = CompletionMode.SYNC
    priority: Priority = Priority.NORMAL
    # Content source path relative to the workspace; defaults to the node's path
    source: str | None = None
    # Metadata attached to the produced frame
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class GenerationOutcome:
    """Terminal result of a generation request."""

    state: RequestState
    frame_id: FrameID | None = None
    skipped: bool = False
    attempts: int = 0
    error: ContextStoreError | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == RequestState.COMPLETED


@dataclass(eq=False)
class GenerationRequest:
    """A queued unit of work. Shared by every handle for its identity."""

    request_id: int
    node_id: NodeID
    agent_id: str
    options: GenerationOptions
    future: asyncio.Future
    state: RequestState = RequestState.PENDING
    attempts: int = 0
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    enqueued_at: float = field(default_factory=time.monotonic)

    @property
    def identity(self) -> tuple[NodeID, str]:
        return (self.node_id, self.agent_id)

    @property
    def label(self) -> str:
        return f"{short_id(self.node_id)}/{self.agent_id}"


@dataclass(frozen=True)
class RequestHandle:
    """What enqueue returns. Await it with GenerationQueue.await_result."""

    request_id: int
    node_id: NodeID
    agent_id: str
    coalesced: bool = False
    request: GenerationRequest = field(repr=False, compare=False, default=None)

    @property
    def done(self) -> bool:
        return self.request.future.done()


@dataclass
class QueueStats:
    """Counters since the queue was created."""

    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    coalesced: int = 0
    retries: int = 0


class AgentRateLimiter:
    """Caps concurrent provider calls for one agent and spaces them out."""

    def __init__(self, max_concurrent: int, min_delay_ms: int | None):
        self._semaphore = asyncio.Semaphore(max(1, max_concurrent))
        self._min_delay = (min_delay_ms or 0) / 1000
        self._spacing_lock = asyncio.Lock()
        self._last_call = 0.0

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[None]:
        async with self._semaphore:
            if self._min_delay > 0:
                async with self._spacing_lock:
                    loop = asyncio.get_running_loop()
                    wait = self._last_call + self._min_delay - loop.time()
                    if wait > 0:
                        await asyncio.sleep(wait)
                    self._last_call = loop.time()
            yield


class GenerationQueue:
    """
    Asyncio worker pool producing frames.

    The admission table maps each in-flight identity to its request. It is
    guarded by one asyncio.Lock, held only around admit and release, never
    across a provider call.
    """

    def __init__(
        self,
        store: ContextStore,
        generator: FrameGenerator,
        collector: NodeContextCollector,
        config: GenerationConfig | None = None,
    ):
        self.store = store
        self.generator = generator
        self.collector = collector
        self.config = config or GenerationConfig()

        self._lock = asyncio.Lock()
        self._inflight: dict[tuple[NodeID, str], GenerationRequest] = {}
        self._heap: list[tuple[int, int, GenerationRequest]] = []
        self._ids = itertools.count(1)
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._limiters: dict[str, AgentRateLimiter] = {}
        self._workers: list[asyncio.Task] = []
        self._running = False
        self._stats = QueueStats()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Spawn the worker tasks. Calling start twice is a no-op."""
        if self._running:
            return
        self._running = True
        loop = asyncio.get_running_loop()
        self._workers = [
            loop.create_task(self._worker(i), name=f"generation-worker-{i}") for i in range(max(1, self.config.workers))
        ]
        logger.info(f"Generation queue started with {len(self._workers)} workers")

    async def stop(self, timeout: float | None = None) -> None:
        """
        Stop the workers after their current request.

        Requests still pending fail with Cancelled. If workers do not finish
        within timeout they are cancelled.
        """
        if not self._running:
            return
        self._running = False
        self._wakeup.set()

        workers, self._workers = self._workers, []
        done, not_done = await asyncio.wait(workers, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            await asyncio.gather(*not_done, return_exceptions=True)

        async with self._lock:
            for request in list(self._inflight.values()):
                if request.state == RequestState.PENDING:
                    self._release(request, self._failed(request, Cancelled("Queue stopped", identity=request.label)))
            self._heap.clear()

        logger.info("Generation queue stopped")

    async def __aenter__(self) -> "GenerationQueue":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _validate_target(self, node_id: NodeID, agent_id: str, options: GenerationOptions) -> None:
        """Reject a request before any provider call is paid for. Touches disk."""
        if not isinstance(agent_id, str) or not agent_id.strip():
            raise PolicyViolation("Agent ID cannot be empty", identity=repr(agent_id))
        if not self.store.nodes.contains(node_id):
            raise NotFound("Cannot generate for unknown node", identity=to_hex(node_id))
        if self.store.agents is not None:
            self.store.agents.require_writer(agent_id)
        self.store.validator.validate(options.metadata)

    async def enqueue(
        self,
        node_id: NodeID,
        agent_id: str,
        options: GenerationOptions | None = None,
    ) -> RequestHandle:
        """
        Admit a generation request.

        Returns a handle immediately. If the identity is already in flight the
        handle shares that request's outcome. If a head exists and force is
        not set, the handle is already completed with ``skipped=True``.

        Raises:
            NotFound: If the node is unknown or the agent is not registered
            PolicyViolation: If the agent may not write or the metadata is rejected
            QueueFull: If max_queue_size pending requests are waiting
        """
        options = options or GenerationOptions()
        await asyncio.to_thread(self._validate_target, node_id, agent_id, options)
        loop = asyncio.get_running_loop()

        async with self._lock:
            existing = self._inflight.get((node_id, agent_id))
            if existing is not None:
                coalesced = options.mode == CompletionMode.ASYNC
                if coalesced:
                    self._stats.coalesced += 1
                logger.debug(f"Attached to in-flight request {existing.request_id} for {existing.label}")
                return RequestHandle(existing.request_id, node_id, agent_id, coalesced=coalesced, request=existing)

            request = GenerationRequest(
                request_id=next(self._ids),
                node_id=node_id,
                agent_id=agent_id,
                options=options,
                future=loop.create_future(),
            )

            # Off the loop: a commit thread may hold the head index lock while it fsyncs
            head = await asyncio.to_thread(self.store.get_head, node_id, agent_id)
            if head is not None and not options.force:
                request.state = RequestState.COMPLETED
                request.future.set_result(
                    GenerationOutcome(state=RequestState.COMPLETED, frame_id=head, skipped=True)
                )
                self._stats.skipped += 1
                logger.debug(f"Skipped {request.label}: head {short_id(head)} exists")
                return RequestHandle(request.request_id, node_id, agent_id, request=request)

            if self._stats.pending >= self.config.max_queue_size:
                raise QueueFull(
                    f"Generation queue is full ({self.config.max_queue_size} pending)",
                    identity=request.label,
                )

            self._inflight[request.identity] = request
            heapq.heappush(self._heap, (-int(options.priority), request.request_id, request))
            self._stats.pending += 1
            self._idle.clear()
            self._wakeup.set()

        logger.debug(f"Enqueued request {request.request_id} for {request.label} (priority {options.priority.name})")
        return RequestHandle(request.request_id, node_id, agent_id, request=request)

    async def enqueue_batch(
        self,
        items: Iterable[tuple[NodeID, str]],
        options: GenerationOptions | None = None,
    ) -> list[RequestHandle]:
        """Enqueue several (node_id, agent_id) pairs with shared options."""
        return [await self.enqueue(node_id, agent_id, options) for node_id, agent_id in items]

    # ------------------------------------------------------------------
    # Caller side
    # ------------------------------------------------------------------

    async def await_result(self, handle: RequestHandle, timeout: float | None = None) -> GenerationOutcome:
        """
        Wait for a request's outcome.

        A timeout abandons the wait only; the request keeps running.

        Raises:
            Timeout: If no outcome arrives within timeout seconds
        """
        if timeout is None:
            timeout = self.config.default_timeout_s
        try:
            return await asyncio.wait_for(asyncio.shield(handle.request.future), timeout)
        except asyncio.TimeoutError as e:
            raise Timeout(
                f"No outcome after {timeout}s",
                identity=handle.request.label,
            ) from e

    async def cancel(self, handle: RequestHandle) -> bool:
        """
        Cancel a request.

        A pending request fails immediately. A running one stops at its next
        checkpoint; a commit already under way is not interrupted.

        Returns:
            False if the request had already finished
        """
        request = handle.request
        async with self._lock:
            if request.state == RequestState.PENDING:
                self._release(request, self._failed(request, Cancelled("Request cancelled", identity=request.label)))
                logger.debug(f"Cancelled pending request {request.request_id} for {request.label}")
                return True
            if request.state == RequestState.RUNNING:
                request.cancel_event.set()
                logger.debug(f"Cancellation requested for running request {request.request_id}")
                return True
        return False

    def in_flight(self, node_id: NodeID, agent_id: str) -> bool:
        """True while a request for (node_id, agent_id) is pending or running."""
        return (node_id, agent_id) in self._inflight

    def stats(self) -> QueueStats:
        """Snapshot of queue counters."""
        return QueueStats(**vars(self._stats))

    async def wait_for_completion(self, timeout: float | None = None) -> bool:
        """
        Wait until nothing is pending or running.

        Returns:
            True if the queue drained, False on timeout
        """
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def _failed(self, request: GenerationRequest, error: ContextStoreError) -> GenerationOutcome:
        return GenerationOutcome(state=RequestState.FAILED, attempts=request.attempts, error=error)

    def _release(self, request: GenerationRequest, outcome: GenerationOutcome) -> None:
        """Record the outcome and free the identity. Caller holds the lock."""
        if request.state == RequestState.PENDING:
            self._stats.pending -= 1
        elif request.state == RequestState.RUNNING:
            self._stats.running -= 1

        request.state = outcome.state
        if outcome.succeeded:
            self._stats.completed += 1
        else:
            self._stats.failed += 1

        if self._inflight.get(request.identity) is request:
            del self._inflight[request.identity]
        if not request.future.done():
            request.future.set_result(outcome)
        if not self._inflight:
            self._idle.set()

    def _limiter(self, agent_id: str) -> AgentRateLimiter:
        limiter = self._limiters.get(agent_id)
        if limiter is None:
            limiter = AgentRateLimiter(self.config.max_concurrent_per_agent, self.config.rate_limit_ms)
            self._limiters[agent_id] = limiter
        return limiter

    async def _next_request(self) -> GenerationRequest | None:
        """Pop the next pending request and mark it running."""
        async with self._lock:
            while self._heap:
                _, _, request = heapq.heappop(self._heap)
                # Cancelled while queued
                if request.state != RequestState.PENDING:
                    continue
                request.state = RequestState.RUNNING
                self._stats.pending -= 1
                self._stats.running += 1
                return request
            self._wakeup.clear()

        try:
            await asyncio.wait_for(self._wakeup.wait(), POLL_INTERVAL_S)
        except asyncio.TimeoutError:
            pass
        return None

    async def _worker(self, worker_id: int) -> None:
        logger.debug(f"Worker {worker_id} started")
        while self._running:
            request = await self._next_request()
            if request is not None:
                await self._process(request)
        logger.debug(f"Worker {worker_id} stopped")

    def _checkpoint(self, request: GenerationRequest) -> None:
        if request.cancel_event.is_set():
            raise Cancelled("Request cancelled", identity=request.label)

    async def _race_cancel(self, request: GenerationRequest, coro) -> bytes:
        """Run coro unless the request is cancelled first."""
        work = asyncio.ensure_future(coro)
        cancel_wait = asyncio.ensure_future(request.cancel_event.wait())
        try:
            await asyncio.wait({work, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()
        if not work.done():
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
            raise Cancelled("Request cancelled during generation", identity=request.label)
        return work.result()

    async def _sleep_or_cancel(self, request: GenerationRequest, delay: float) -> None:
        try:
            await asyncio.wait_for(request.cancel_event.wait(), delay)
        except asyncio.TimeoutError:
            return
        raise Cancelled("Request cancelled while waiting to retry", identity=request.label)

    async def _generate(self, request: GenerationRequest) -> bytes:
        """Collect context and call the generator, retrying Transient errors."""
        max_retries = max(0, self.config.max_retry_attempts)
        delay = self.config.retry_delay_ms / 1000
        limiter = self._limiter(request.agent_id)

        attempt = 0
        while True:
            self._checkpoint(request)
            request.attempts = attempt + 1
            try:
                node_context = await asyncio.to_thread(
                    self.collector.collect, request.node_id, request.options.source
                )
                self._checkpoint(request)
                async with limiter.acquire():
                    # Cancellation may have arrived while waiting for a slot
                    self._checkpoint(request)
                    return await self._race_cancel(request, self.generator.generate(node_context, request.agent_id))
            except Transient as e:
                if attempt >= max_retries:
                    raise
                attempt += 1
                self._stats.retries += 1
                logger.warning(f"Generation for {request.label} failed (attempt {attempt}/{max_retries + 1}): {e}")
                await self._sleep_or_cancel(request, delay)

    def _error_outcome(self, request: GenerationRequest, error: BaseException) -> GenerationOutcome:
        if isinstance(error, Cancelled):
            logger.info(f"Request {request.request_id} for {request.label} cancelled")
            return self._failed(request, error)
        if isinstance(error, ContextStoreError):
            logger.error(f"Generation for {request.label} failed after {request.attempts} attempt(s): {error}")
            return self._failed(request, error)
        logger.error(f"Generator error for {request.label}: {error}", exc_info=error)
        wrapped = GenerationFailed(f"Generator raised {type(error).__name__}: {error}", identity=request.label)
        wrapped.__cause__ = error
        return self._failed(request, wrapped)

    def _committed(self, request: GenerationRequest, frame: Frame) -> GenerationOutcome:
        return GenerationOutcome(state=RequestState.COMPLETED, frame_id=frame.frame_id, attempts=request.attempts)

    async def _settle_commit(self, request: GenerationRequest, commit: asyncio.Future) -> GenerationOutcome:
        """Wait out a commit whose worker was cancelled and report what it did."""
        while not commit.done():
            try:
                await asyncio.wait({commit})
            except asyncio.CancelledError:
                continue
        error = commit.exception()
        if error is not None:
            return self._error_outcome(request, error)
        logger.info(f"Request {request.request_id} for {request.label} committed while the worker stopped")
        return self._committed(request, commit.result())

    async def _process(self, request: GenerationRequest) -> None:
        outcome: GenerationOutcome | None = None
        commit: asyncio.Future | None = None
        try:
            content = await self._generate(request)
            self._checkpoint(request)
            # Once started the commit runs to completion
            commit = asyncio.ensure_future(
                asyncio.to_thread(
                    self.store.commit_frame,
                    request.node_id,
                    request.agent_id,
                    content,
                    request.options.metadata,
                )
            )
            outcome = self._committed(request, await asyncio.shield(commit))
        except asyncio.CancelledError:
            if commit is not None:
                outcome = await self._settle_commit(request, commit)
            raise
        except Exception as e:
            outcome = self._error_outcome(request, e)
        finally:
            if outcome is None:
                outcome = self._failed(request, Cancelled("Worker stopped", identity=request.label))
            async with self._lock:
                self._release(request, outcome)
