"""Tests for GenerationQueue - single-flight frame generation."""

import asyncio
import threading
import time
from unittest.mock import patch

import pytest

from merkle_context.agents.presets import default_registry
from merkle_context.config import GenerationConfig
from merkle_context.errors import (
    Cancelled,
    GenerationFailed,
    NotFound,
    PolicyViolation,
    QueueFull,
    Timeout,
    Transient,
)
from merkle_context.frame.queue import (
    AgentRateLimiter,
    CompletionMode,
    GenerationOptions,
    GenerationQueue,
    Priority,
    RequestState,
)
from merkle_context.identity import compute_frame_id, compute_node_id
from merkle_context.store import ContextStore


class FakeGenerator:
    """FrameGenerator double recording every call."""

    def __init__(self, content=b"generated", delay=0.0, failures=None):
        self.content = content
        self.delay = delay
        self.failures = list(failures or [])
        self.calls = []

    async def generate(self, node_context, agent_id):
        self.calls.append((node_context.path, agent_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        return self.content


def _config(**overrides) -> GenerationConfig:
    values = dict(workers=2, retry_delay_ms=1, rate_limit_ms=None, default_timeout_s=5.0)
    values.update(overrides)
    return GenerationConfig(**values)


@pytest.fixture
def app_node(find_node):
    return find_node("src/app.py")


@pytest.fixture
def make_queue(store, collector):
    def _make(generator, **overrides):
        return GenerationQueue(store, generator, collector, _config(**overrides))

    return _make


async def _wait_for_state(handle, state, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while handle.request.state != state:
        assert loop.time() < deadline, f"request never reached {state}"
        await asyncio.sleep(0.01)


class TestGeneration:
    """Basic generation and commit."""

    @pytest.mark.asyncio
    async def test_generate_and_commit(self, store, make_queue, app_node):
        generator = FakeGenerator(content=b"Prints hello.")
        async with make_queue(generator) as queue:
            handle = await queue.enqueue(app_node, "docs", GenerationOptions(metadata={"model": "fake"}))
            outcome = await queue.await_result(handle)

        assert outcome.state == RequestState.COMPLETED
        assert not outcome.skipped
        assert outcome.attempts == 1
        assert outcome.frame_id == compute_frame_id(app_node, "docs", b"Prints hello.")
        assert store.get_head(app_node, "docs") == outcome.frame_id
        assert store.get_frame(outcome.frame_id).metadata == {"model": "fake"}
        assert generator.calls == [("src/app.py", "docs")]

    @pytest.mark.asyncio
    async def test_unknown_node_rejected(self, make_queue, ingested):
        queue = make_queue(FakeGenerator())
        with pytest.raises(NotFound):
            await queue.enqueue(compute_node_id("ghost", None, []), "docs")

    @pytest.mark.asyncio
    async def test_blank_agent_rejected(self, make_queue, app_node):
        with pytest.raises(PolicyViolation):
            await make_queue(FakeGenerator()).enqueue(app_node, "")

    @pytest.mark.asyncio
    async def test_reader_agent_rejected(self, tmp_path, workspace, collector, app_node):
        store = ContextStore(tmp_path / "guarded", agents=default_registry())
        store.ingest(workspace)
        queue = GenerationQueue(store, FakeGenerator(), collector, _config())
        with pytest.raises(PolicyViolation):
            await queue.enqueue(app_node, "viewer")


    @pytest.mark.asyncio
    async def test_metadata_rejected_at_admission(self, make_queue, app_node):
        generator = FakeGenerator()
        async with make_queue(generator) as queue:
            with pytest.raises(PolicyViolation):
                await queue.enqueue(app_node, "docs", GenerationOptions(metadata={"prompt": "Summarize src/app.py"}))
            assert not queue.in_flight(app_node, "docs")

        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_enqueue_does_not_block_loop_on_head_lock(self, store, make_queue, app_node):
        """A commit thread holding the head index lock must not stall the event loop."""
        queue = make_queue(FakeGenerator())
        held, release = threading.Event(), threading.Event()

        def hold_lock():
            with store.heads._lock:
                held.set()
                release.wait(2)

        holder = threading.Thread(target=hold_lock)
        holder.start()
        held.wait(1)

        admission = asyncio.create_task(queue.enqueue(app_node, "docs"))
        await asyncio.sleep(0.05)
        assert not admission.done()

        release.set()
        handle = await admission
        holder.join()
        assert handle.request.state == RequestState.PENDING


class TestSingleFlight:
    """At most one generation per (node, agent)."""

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_call(self, store, make_queue, app_node):
        generator = FakeGenerator(delay=0.05)
        async with make_queue(generator, workers=4) as queue:
            handles = await asyncio.gather(*(queue.enqueue(app_node, "docs") for _ in range(10)))
            outcomes = await asyncio.gather(*(queue.await_result(h) for h in handles))

        assert len(generator.calls) == 1
        assert len({h.request_id for h in handles}) == 1
        assert len({o.frame_id for o in outcomes}) == 1
        assert all(o.state == RequestState.COMPLETED for o in outcomes)
        assert store.frame_sets.members(app_node) == [outcomes[0].frame_id]

    @pytest.mark.asyncio
    async def test_parallel_double_enqueue_same_frame(self, store, make_queue, app_node):
        generator = FakeGenerator(delay=0.02)
        async with make_queue(generator) as queue:

            async def request():
                handle = await queue.enqueue(app_node, "docs")
                return await queue.await_result(handle)

            first, second = await asyncio.gather(request(), request())

        assert first.frame_id == second.frame_id
        assert len(generator.calls) == 1
        assert len(store.frame_sets.members(app_node)) == 1

    @pytest.mark.asyncio
    async def test_async_mode_coalesced(self, make_queue, app_node):
        queue = make_queue(FakeGenerator())
        first = await queue.enqueue(app_node, "docs")
        second = await queue.enqueue(app_node, "docs", GenerationOptions(mode=CompletionMode.ASYNC))
        assert not first.coalesced
        assert second.coalesced
        assert second.request_id == first.request_id
        assert queue.stats().coalesced == 1

    @pytest.mark.asyncio
    async def test_different_agents_run_independently(self, store, make_queue, app_node):
        generator = FakeGenerator()
        async with make_queue(generator) as queue:
            handles = await queue.enqueue_batch([(app_node, "docs"), (app_node, "api")])
            outcomes = [await queue.await_result(h) for h in handles]

        assert len(generator.calls) == 2
        assert store.get_head(app_node, "docs") == outcomes[0].frame_id
        assert store.get_head(app_node, "api") == outcomes[1].frame_id


class TestSkip:
    """Existing heads short-circuit generation unless forced."""

    @pytest.mark.asyncio
    async def test_existing_head_skips(self, store, make_queue, app_node):
        existing = store.commit_frame(app_node, "docs", b"already here")
        generator = FakeGenerator()
        queue = make_queue(generator)

        handle = await queue.enqueue(app_node, "docs")
        outcome = await queue.await_result(handle, timeout=1)

        assert outcome.skipped
        assert outcome.state == RequestState.COMPLETED
        assert outcome.frame_id == existing.frame_id
        assert generator.calls == []
        assert queue.stats().skipped == 1

    @pytest.mark.asyncio
    async def test_force_regenerates(self, store, make_queue, app_node):
        existing = store.commit_frame(app_node, "docs", b"stale")
        generator = FakeGenerator(content=b"fresh")
        async with make_queue(generator) as queue:
            handle = await queue.enqueue(app_node, "docs", GenerationOptions(force=True))
            outcome = await queue.await_result(handle)

        assert not outcome.skipped
        assert outcome.frame_id != existing.frame_id
        assert store.get_head(app_node, "docs") == outcome.frame_id
        assert len(store.frame_sets.members(app_node)) == 2


class TestRetry:
    """Transient failures retry; others fail fast."""

    @pytest.mark.asyncio
    async def test_transient_retried(self, make_queue, app_node):
        generator = FakeGenerator(failures=[Transient("timeout"), Transient("503")])
        async with make_queue(generator) as queue:
            outcome = await queue.await_result(await queue.enqueue(app_node, "docs"))

        assert outcome.state == RequestState.COMPLETED
        assert outcome.attempts == 3
        assert len(generator.calls) == 3
        assert queue.stats().retries == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, store, make_queue, app_node):
        generator = FakeGenerator(failures=[Transient(f"attempt {i}") for i in range(5)])
        async with make_queue(generator, max_retry_attempts=2) as queue:
            outcome = await queue.await_result(await queue.enqueue(app_node, "docs"))

        assert outcome.state == RequestState.FAILED
        assert isinstance(outcome.error, Transient)
        assert "attempt 2" in str(outcome.error)
        assert len(generator.calls) == 3
        assert store.get_head(app_node, "docs") is None

    @pytest.mark.asyncio
    async def test_policy_failure_not_retried(self, make_queue, app_node):
        generator = FakeGenerator(failures=[PolicyViolation("missing prompt")])
        async with make_queue(generator) as queue:
            outcome = await queue.await_result(await queue.enqueue(app_node, "docs"))

        assert outcome.state == RequestState.FAILED
        assert isinstance(outcome.error, PolicyViolation)
        assert len(generator.calls) == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_wrapped(self, make_queue, app_node):
        generator = FakeGenerator(failures=[RuntimeError("boom")])
        async with make_queue(generator) as queue:
            outcome = await queue.await_result(await queue.enqueue(app_node, "docs"))

        assert isinstance(outcome.error, GenerationFailed)
        assert isinstance(outcome.error.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_commit_failure_keeps_prior_head(self, store, make_queue, app_node):
        prior = store.commit_frame(app_node, "docs", b"prior")
        async with make_queue(FakeGenerator(content=b"next")) as queue:
            with patch("merkle_context.heads.atomic_write_json", side_effect=OSError("disk full")):
                outcome = await queue.await_result(
                    await queue.enqueue(app_node, "docs", GenerationOptions(force=True))
                )

        assert outcome.state == RequestState.FAILED
        assert isinstance(outcome.error, Transient)
        assert store.get_head(app_node, "docs") == prior.frame_id

    @pytest.mark.asyncio
    async def test_identity_released_after_failure(self, make_queue, app_node):
        generator = FakeGenerator(failures=[PolicyViolation("bad")])
        async with make_queue(generator) as queue:
            first = await queue.enqueue(app_node, "docs")
            await queue.await_result(first)
            second = await queue.enqueue(app_node, "docs")
            outcome = await queue.await_result(second)

        assert second.request_id != first.request_id
        assert outcome.state == RequestState.COMPLETED


class TestCancellation:
    """Cancel and caller timeouts."""

    @pytest.mark.asyncio
    async def test_cancel_pending(self, make_queue, app_node):
        generator = FakeGenerator()
        queue = make_queue(generator)
        handle = await queue.enqueue(app_node, "docs")

        assert await queue.cancel(handle)
        outcome = await queue.await_result(handle, timeout=1)
        assert outcome.state == RequestState.FAILED
        assert isinstance(outcome.error, Cancelled)

        # identity released; a started queue never runs the cancelled request
        async with queue:
            fresh = await queue.enqueue(app_node, "docs")
            assert fresh.request_id != handle.request_id
            await queue.await_result(fresh)
        assert len(generator.calls) == 1

    @pytest.mark.asyncio
    async def test_cancel_running(self, store, make_queue, app_node):
        generator = FakeGenerator(delay=10)
        async with make_queue(generator) as queue:
            handle = await queue.enqueue(app_node, "docs")
            await _wait_for_state(handle, RequestState.RUNNING)
            await asyncio.sleep(0.05)

            assert await queue.cancel(handle)
            outcome = await queue.await_result(handle, timeout=2)

        assert isinstance(outcome.error, Cancelled)
        assert store.get_head(app_node, "docs") is None

    @pytest.mark.asyncio
    async def test_cancel_finished_returns_false(self, store, make_queue, app_node):
        store.commit_frame(app_node, "docs", b"exists")
        queue = make_queue(FakeGenerator())
        handle = await queue.enqueue(app_node, "docs")
        assert not await queue.cancel(handle)

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_for_agent_slot(self, make_queue, find_node):
        generator = FakeGenerator(delay=0.3)
        async with make_queue(generator, max_concurrent_per_agent=1) as queue:
            first = await queue.enqueue(find_node("src/app.py"), "docs")
            while not generator.calls:
                await asyncio.sleep(0.01)

            blocked = await queue.enqueue(find_node("src/util.py"), "docs")
            await _wait_for_state(blocked, RequestState.RUNNING)
            await asyncio.sleep(0.05)
            assert await queue.cancel(blocked)

            assert (await queue.await_result(first)).succeeded
            outcome = await queue.await_result(blocked)

        assert isinstance(outcome.error, Cancelled)
        assert generator.calls == [("src/app.py", "docs")]

    @pytest.mark.asyncio
    async def test_stop_during_commit_reports_committed_frame(self, store, make_queue, app_node, monkeypatch):
        committing = threading.Event()
        commit_frame = store.commit_frame

        def slow_commit(*args, **kwargs):
            committing.set()
            time.sleep(0.3)
            return commit_frame(*args, **kwargs)

        monkeypatch.setattr(store, "commit_frame", slow_commit)
        queue = make_queue(FakeGenerator(), workers=1)
        await queue.start()
        handle = await queue.enqueue(app_node, "docs")
        assert await asyncio.to_thread(committing.wait, 2)

        await queue.stop(timeout=0.05)

        outcome = await queue.await_result(handle, timeout=1)
        assert outcome.state == RequestState.COMPLETED
        assert store.get_head(app_node, "docs") == outcome.frame_id

    @pytest.mark.asyncio
    async def test_stop_during_failing_commit_reports_failure(self, store, make_queue, app_node, monkeypatch):
        committing = threading.Event()

        def failing_commit(*args, **kwargs):
            committing.set()
            time.sleep(0.3)
            raise Transient("disk unavailable")

        monkeypatch.setattr(store, "commit_frame", failing_commit)
        queue = make_queue(FakeGenerator(), workers=1)
        await queue.start()
        handle = await queue.enqueue(app_node, "docs")
        assert await asyncio.to_thread(committing.wait, 2)

        await queue.stop(timeout=0.05)

        outcome = await queue.await_result(handle, timeout=1)
        assert outcome.state == RequestState.FAILED
        assert isinstance(outcome.error, Transient)
        assert store.get_head(app_node, "docs") is None

    @pytest.mark.asyncio
    async def test_timeout_does_not_cancel_work(self, store, make_queue, app_node):
        generator = FakeGenerator(delay=0.2)
        async with make_queue(generator) as queue:
            handle = await queue.enqueue(app_node, "docs")
            with pytest.raises(Timeout):
                await queue.await_result(handle, timeout=0.01)
            outcome = await queue.await_result(handle, timeout=5)

        assert outcome.state == RequestState.COMPLETED
        assert store.get_head(app_node, "docs") == outcome.frame_id


class TestScheduling:
    """Capacity, priority, stats and drain."""

    @pytest.mark.asyncio
    async def test_queue_full(self, make_queue, find_node):
        queue = make_queue(FakeGenerator(), max_queue_size=2)
        await queue.enqueue(find_node("src/app.py"), "docs")
        await queue.enqueue(find_node("src/util.py"), "docs")
        with pytest.raises(QueueFull) as exc_info:
            await queue.enqueue(find_node("README.md"), "docs")
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_priority_order(self, make_queue, find_node):
        generator = FakeGenerator()
        queue = make_queue(generator, workers=1)
        await queue.enqueue(find_node("src/app.py"), "docs", GenerationOptions(priority=Priority.LOW))
        await queue.enqueue(find_node("src/util.py"), "docs")
        await queue.enqueue(find_node("README.md"), "docs", GenerationOptions(priority=Priority.URGENT))

        async with queue:
            assert await queue.wait_for_completion(timeout=5)

        assert [path for path, _ in generator.calls] == ["README.md", "src/util.py", "src/app.py"]

    @pytest.mark.asyncio
    async def test_stats_and_drain(self, make_queue, find_node):
        queue = make_queue(FakeGenerator())
        nodes = [find_node(p) for p in ("src/app.py", "src/util.py", "README.md")]
        await queue.enqueue_batch([(n, "docs") for n in nodes])
        assert queue.stats().pending == 3

        async with queue:
            assert await queue.wait_for_completion(timeout=5)
            stats = queue.stats()

        assert stats.completed == 3
        assert stats.pending == 0
        assert stats.running == 0

    @pytest.mark.asyncio
    async def test_wait_for_completion_timeout(self, make_queue, app_node):
        queue = make_queue(FakeGenerator())
        await queue.enqueue(app_node, "docs")
        assert not await queue.wait_for_completion(timeout=0.05)

    @pytest.mark.asyncio
    async def test_stop_fails_pending(self, make_queue, find_node):
        generator = FakeGenerator(delay=0.2)
        queue = make_queue(generator, workers=1)
        await queue.start()
        running = await queue.enqueue(find_node("src/app.py"), "docs")
        await _wait_for_state(running, RequestState.RUNNING)
        waiting = await queue.enqueue(find_node("src/util.py"), "docs")

        await queue.stop()

        assert (await queue.await_result(running, timeout=1)).state == RequestState.COMPLETED
        outcome = await queue.await_result(waiting, timeout=1)
        assert isinstance(outcome.error, Cancelled)
        assert not queue.is_running


class TestAgentRateLimiter:
    """Per-agent concurrency and spacing."""

    @pytest.mark.asyncio
    async def test_concurrency_cap(self):
        limiter = AgentRateLimiter(max_concurrent=2, min_delay_ms=None)
        active = 0
        peak = 0

        async def call():
            nonlocal active, peak
            async with limiter.acquire():
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.02)
                active -= 1

        await asyncio.gather(*(call() for _ in range(6)))
        assert peak == 2

    @pytest.mark.asyncio
    async def test_min_delay(self):
        limiter = AgentRateLimiter(max_concurrent=3, min_delay_ms=50)
        loop = asyncio.get_running_loop()
        starts = []

        async def call():
            async with limiter.acquire():
                starts.append(loop.time())

        await asyncio.gather(call(), call(), call())
        gaps = [b - a for a, b in zip(starts, starts[1:])]
        assert all(gap >= 0.045 for gap in gaps)
