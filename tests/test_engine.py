"""Tests for GCEngine."""

import asyncio
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

import pytest
from kubernetes import client

from conftest import T0, make_pod, make_pool, make_wep
from ipam_gc.engine import GCEngine
from ipam_gc.store import TracingState
from ipam_gc.watcher import MODIFIED, PodEvent


async def wait_until(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def engine(context):
    return GCEngine(context)


@asynccontextmanager
async def running(engine):
    await engine.start()
    try:
        yield engine
    finally:
        await engine.stop()


def count_sweeps(engine, monkeypatch):
    runs = []

    async def fake_sweep():
        runs.append(1)

    monkeypatch.setattr(engine.sweeper, "sweep", fake_sweep)
    return runs


class TestLifecycle:
    """Test cases for starting and stopping the engine."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, engine):
        """Test that every loop runs until stopped."""
        await engine.start()
        await asyncio.sleep(0.02)

        assert engine.running
        assert {t.get_name() for t in engine._tasks} == {
            "leader-election",
            "election-listener",
            "pod-dispatcher",
            "tracer",
            "sweeper",
            "release-executor",
        }
        assert engine.health()

        await engine.stop()

        assert not engine.running
        assert not engine.health()

    @pytest.mark.asyncio
    async def test_disabled(self, engine, context):
        """Test that a disabled engine starts nothing and reports healthy."""
        context.settings.enable_gc_ip = False

        await engine.start()

        assert not engine.running
        assert engine._tasks == []
        assert engine.health()

    @pytest.mark.asyncio
    async def test_double_start(self, engine, caplog):
        """Test that a second start is ignored."""
        async with running(engine):
            tasks = list(engine._tasks)

            await engine.start()

            assert engine._tasks == tasks
        assert "already running" in caplog.text

    @pytest.mark.asyncio
    async def test_dead_loop_is_unhealthy(self, engine, monkeypatch):
        """Test that a crashed loop fails the health check."""

        async def crash():
            raise RuntimeError("boom")

        monkeypatch.setattr(engine.tracer, "run", crash)
        async with running(engine):
            await asyncio.sleep(0.02)

            assert not engine.health()

    @pytest.mark.asyncio
    async def test_health_waits_for_watch_sync(self, context, monkeypatch):
        """Test that the engine is unhealthy until the pod watch has synced."""
        engine = GCEngine(context, core_v1=MagicMock(spec=client.CoreV1Api))

        async def idle_watch():
            await asyncio.get_running_loop().create_future()

        monkeypatch.setattr(engine.watcher, "run", idle_watch)
        async with running(engine):
            await asyncio.sleep(0.02)
            assert "pod-watcher" in {t.get_name() for t in engine._tasks}
            assert not engine.health()

            engine.watcher.synced = True
            assert engine.health()


class TestTriggers:
    """Test cases for sweep triggers and diagnostics."""

    @pytest.mark.asyncio
    async def test_election_win_triggers_sweep(self, engine, leader, monkeypatch):
        """Test that each election win runs a sweep."""
        runs = count_sweeps(engine, monkeypatch)
        async with running(engine):
            await wait_until(lambda: len(runs) >= 2)
            await asyncio.sleep(0.02)
            before = len(runs)

            leader.set_leader(False)
            leader.set_leader(True)

            await wait_until(lambda: len(runs) == before + 1)

    @pytest.mark.asyncio
    async def test_trigger_sweep_now(self, engine, monkeypatch):
        """Test the manual sweep trigger."""
        runs = count_sweeps(engine, monkeypatch)
        async with running(engine):
            await wait_until(lambda: len(runs) >= 2)
            await asyncio.sleep(0.02)
            before = len(runs)

            engine.trigger_sweep_now()

            await wait_until(lambda: len(runs) == before + 1)

    def test_list_tracked_pods(self, engine, context):
        """Test the read-only store snapshot."""
        context.store.create(make_pod("p1"))

        pods = engine.list_tracked_pods()

        assert [(p.namespace, p.pod_name) for p in pods] == [("ns", "p1")]
        pods.clear()
        assert len(context.store) == 1


class TestGarbageCollection:
    """End-to-end runs over the in-memory cluster."""

    @pytest.mark.asyncio
    async def test_orphan_and_terminating_pod(self, engine, context, gateway, clock):
        """Test that the sweep and the trace path both release IPs."""
        gateway.pools["pool-a"] = make_pool("pool-a", {"10.0.0.5": ("ns", "p2", "c1")})
        pod = make_pod("p1", deletion_timestamp=T0, grace=30)
        gateway.pods[("ns", "p1")] = pod
        gateway.weps[("ns", "p1")] = make_wep("p1")

        def tracing():
            return ("ns", "p1") in context.store and (
                context.store.get("p1", "ns").state == TracingState.TRACING
            )

        async with running(engine):
            await wait_until(lambda: ("pool-a", "10.0.0.5") in gateway.released)

            engine.watcher.enqueue(PodEvent(MODIFIED, "ns", "p1", pod))
            await wait_until(tracing)
            assert gateway.finalizers_removed == []

            clock.advance(31)

            await wait_until(lambda: ("ns", "p1") in gateway.finalizers_removed)
            assert ("pool-a", "10.0.0.1") in gateway.released
            assert engine.list_tracked_pods() == []
