"""
Integration test for a trace shared across sessions and agents.

The flow:
1. Agent A opens a session from settings and does some work
2. The container is checkpointed, compacted and flushed to disk
3. Agent A pushes the container to a remote
4. Agent B pulls it, verifies it, and finds the work already done
5. Concurrent callers (threads and tasks) still execute each key once
"""
from __future__ import annotations

import asyncio
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from qmem import (
    Container,
    ContentHasher,
    CoordinationProtocol,
    InMemoryRemote,
    PersistenceEngine,
    Settings,
    StateSnapshot,
    SyncBridge,
    WorkOutcome,
    container_path,
    coordinate,
    load_container,
)
from qmem.errors import WriteFailure


class TestTraceLifecycle:
    """A trace moving from one agent to another."""

    @pytest.fixture
    def settings(self, tmp_path):
        return Settings(
            storage_dir=tmp_path / "containers",
            retain_count=2,
            fsync=False,
            agent_id="agent-a",
        )

    @pytest.fixture
    def session(self, settings):
        return CoordinationProtocol.from_settings(settings, trace_id="trace-42")

    def test_session_checkpoints_and_resumes(self, session, settings):
        session.coordinate("index:repo:core", lambda key: WorkOutcome.ok(b"indexed", token_cost=70))
        for n in range(3):
            report = session.checkpoint(
                StateSnapshot.build(
                    compressed_context=f"ctx-{n}".encode(),
                    token_count=100 + n,
                    message_count=n,
                    hasher=session.container.hasher,
                )
            )
        assert report.pruned_count == 1
        assert len(session.container.snapshots) == 2

        path = container_path(settings.storage_dir, "trace-42")
        assert path.exists()
        reloaded = load_container(path)
        assert [s.compressed_context for s in reloaded.snapshots] == [b"ctx-1", b"ctx-2"]
        assert reloaded.header.content_hash == session.container.header.content_hash

        resumed = CoordinationProtocol.from_settings(settings, trace_id="trace-42")
        calls = []

        def reindex(key):
            calls.append(key)
            return WorkOutcome.ok(b"reindexed")

        result = resumed.coordinate("index:repo:core", reindex)
        assert result.cached
        assert result.payload == b"indexed"
        assert calls == []
        assert resumed.metrics.tokens_saved == 70

    def test_second_agent_sees_first_agents_work(self, session):
        remote = InMemoryRemote()
        bridge = SyncBridge(session.container, remote)
        session.coordinate("fetch:docs:api", lambda key: WorkOutcome.ok(b"<html>"))
        session.coordinate("fetch:docs:guide", lambda key: WorkOutcome.failed("404"))
        ack = bridge.flush()
        assert ack is not None
        assert ack.content_hash == session.container.header.content_hash

        pulled = bridge.pull()
        bridge.close()
        agent_b = CoordinationProtocol(pulled, executor_id="agent-b")

        cached = agent_b.coordinate("fetch:docs:api", lambda key: WorkOutcome.ok(b"again"))
        assert cached.cached
        assert cached.payload == b"<html>"
        assert cached.receipt.owning_agent_id == "agent-a"

        # A recorded failure is retried, and the retry is attributed to agent B
        retried = agent_b.coordinate("fetch:docs:guide", lambda key: WorkOutcome.ok(b"guide"))
        assert retried.executed
        assert retried.receipt.owning_agent_id == "agent-b"
        assert pulled.get_coordinate("fetch:docs").preferred_executor == "agent-b"
        assert [r.owning_agent_id for r in pulled.receipts_by_agent("agent-b")] == ["agent-b"]

    def test_threads_execute_each_key_once(self):
        protocol = CoordinationProtocol(_fresh_container())
        runs = []
        guard = threading.Lock()

        def work(key):
            with guard:
                runs.append(key)
            time.sleep(0.01)
            return WorkOutcome.ok(key.encode())

        keys = ["build:pkg:a", "build:pkg:b"] * 8
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda k: protocol.coordinate(k, work), keys))

        assert sorted(runs) == ["build:pkg:a", "build:pkg:b"]
        assert {r.payload for r in results} == {b"build:pkg:a", b"build:pkg:b"}
        assert protocol.container.stats().receipt_count == 2
        assert protocol.metrics.executions == 2
        assert protocol.metrics.cache_hits == 14
        assert len(protocol._key_locks) == 0

    def test_thread_then_task_execute_once(self):
        protocol = CoordinationProtocol(_fresh_container())
        runs = []
        started = threading.Event()

        def work(key):
            runs.append("thread")
            started.set()
            time.sleep(0.05)
            return WorkOutcome.ok(b"from-thread")

        async def awork(key):
            runs.append("task")
            return WorkOutcome.ok(b"from-task")

        worker = threading.Thread(target=protocol.coordinate, args=("deploy:svc:api", work))
        worker.start()
        assert started.wait(5)
        result = asyncio.run(protocol.coordinate_async("deploy:svc:api", awork))
        worker.join()

        assert runs == ["thread"]
        assert result.cached
        assert result.payload == b"from-thread"
        assert protocol.container.stats().receipt_count == 1
        assert len(protocol._key_locks) == 0

    def test_task_then_thread_execute_once(self):
        protocol = CoordinationProtocol(_fresh_container())
        runs = []
        started = threading.Event()

        def work(key):
            runs.append("thread")
            return WorkOutcome.ok(b"from-thread")

        async def awork(key):
            runs.append("task")
            started.set()
            await asyncio.sleep(0.05)
            return WorkOutcome.ok(b"from-task")

        async def main():
            task = asyncio.ensure_future(protocol.coordinate_async("deploy:svc:web", awork))
            assert await asyncio.to_thread(started.wait, 5)
            from_thread = await asyncio.to_thread(protocol.coordinate, "deploy:svc:web", work)
            return await task, from_thread

        from_task, from_thread = asyncio.run(main())

        assert runs == ["task"]
        assert from_task.executed
        assert from_thread.cached
        assert from_thread.payload == b"from-task"
        assert protocol.container.stats().receipt_count == 1
        assert len(protocol._key_locks) == 0

    def test_async_callers_execute_each_key_once(self, tmp_path):
        destination = tmp_path / "async.qmem"
        protocol = CoordinationProtocol(_fresh_container(), destination, engine=PersistenceEngine(fsync=False))
        runs = []

        async def work(key):
            runs.append(key)
            await asyncio.sleep(0.01)
            return WorkOutcome.ok(b"summary", token_cost=9)

        async def main():
            return await asyncio.gather(
                *(protocol.coordinate_async("summarize:thread:7", work) for _ in range(5))
            )

        results = asyncio.run(main())
        assert runs == ["summarize:thread:7"]
        assert sum(1 for r in results if r.executed) == 1
        assert all(r.payload == b"summary" for r in results)
        assert len(load_container(destination).receipts) == 1

    def test_one_shot_coordinate_and_context_manager(self, tmp_path):
        container = _fresh_container(ContentHasher("blake2b"))
        destination = tmp_path / "oneshot.qmem"

        result = coordinate(
            container,
            "scan:deps:lockfile",
            lambda key: (True, "clean", None, 5, 2.0),
            destination,
            engine=PersistenceEngine(fsync=False),
        )
        assert result.executed
        assert result.payload == b"clean"
        assert result.receipt.latency == 2.0
        assert container.header.content_hash.startswith("blake2b:")
        assert load_container(destination).header == container.header

        with CoordinationProtocol(container, destination, engine=PersistenceEngine(fsync=False)) as protocol:
            protocol.coordinate("scan:deps:manifest", lambda key: WorkOutcome.ok(b"ok"))
        assert len(load_container(destination).receipts) == 2

    def test_failed_flush_keeps_receipt_in_memory(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        protocol = CoordinationProtocol(_fresh_container(), blocker / "t.qmem")

        with pytest.raises(WriteFailure):
            protocol.coordinate("emit:report:weekly", lambda key: WorkOutcome.ok(b"sent"))

        assert protocol.container.has_receipt("emit:report:weekly")
        prior = protocol.check_prior_work("emit:report:weekly")
        assert prior is not None
        assert prior.result_payload == b"sent"


def _fresh_container(hasher: ContentHasher | None = None) -> Container:
    return Container.create(owning_agent_id="agent-a", trace_id="trace-local", hasher=hasher)
