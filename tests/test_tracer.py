"""Tests for the Tracer."""

import asyncio
from datetime import timedelta

import pytest

from conftest import T0, make_pod, make_wep
from ipam_gc.errors import GatewayError
from ipam_gc.models import TracingReason
from ipam_gc.store import TracingPlan
from ipam_gc.tracer import Tracer
from ipam_gc.watcher import PodEventWatcher


def trace(context, name, grace=30, start=T0):
    plan = TracingPlan(
        reason=TracingReason.TERMINATING,
        start_time=start,
        graceful_time=timedelta(seconds=grace),
    )
    return context.store.apply(make_pod(name, deletion_timestamp=start, grace=grace), plan)


class TestTracer:
    """Test cases for Tracer."""

    @pytest.mark.asyncio
    async def test_deleted_pod_released_once(self, context, gateway, clock):
        """Test a pod deleted with a 30s grace period is released exactly once."""
        pod = make_pod("p1", deletion_timestamp=T0, grace=30)
        gateway.pods[("ns", "p1")] = pod
        gateway.weps[("ns", "p1")] = make_wep("p1")
        await PodEventWatcher(context).handle_pod(pod)
        assert context.store.get("p1", "ns").tracing_stop_time == T0 + timedelta(seconds=30)

        tracer = Tracer(context)
        clock.advance(31)
        assert await tracer.run_once() == 1

        request = context.release_queue.get_nowait()
        assert request.key == "ns/p1"
        assert request.reason == TracingReason.TERMINATING
        assert context.store.list() == []

        clock.advance(1)
        assert await tracer.run_once() == 0
        assert context.release_queue.empty()

    @pytest.mark.asyncio
    async def test_not_due(self, context, gateway, clock):
        """Test that entries before their deadline stay in the store."""
        gateway.pods[("ns", "p1")] = make_pod("p1", deletion_timestamp=T0, grace=30)
        trace(context, "p1")
        clock.advance(29)

        assert await Tracer(context).run_once() == 0
        assert len(context.store) == 1

    @pytest.mark.asyncio
    async def test_untracked_entries_are_skipped(self, context):
        """Test that entries not tracing yet are left alone."""
        context.store.create(make_pod("p1"))

        assert await Tracer(context).run_once(now=T0 + timedelta(days=1)) == 0
        assert len(context.store) == 1

    @pytest.mark.asyncio
    async def test_missing_deadline_is_skipped(self, context, caplog):
        """Test that a tracing entry without deadline is reported and skipped."""
        trace(context, "p1")
        entry = context.store._entries[("ns", "p1")]
        entry.tracing_stop_time = None

        assert await Tracer(context).run_once(now=T0 + timedelta(days=1)) == 0
        assert "without deadline" in caplog.text
        assert len(context.store) == 1

    @pytest.mark.asyncio
    async def test_not_leader(self, context, leader, clock):
        """Test that a non-leader never sends a release signal."""
        leader.set_leader(False)
        trace(context, "p1")
        clock.advance(60)

        assert await Tracer(context).run_once() == 0
        assert context.release_queue.empty()
        assert len(context.store) == 1

    @pytest.mark.asyncio
    async def test_pod_without_ips_is_dropped(self, context, gateway, clock):
        """Test that a pod whose IPs the CNI already released is forgotten."""
        gateway.pods[("ns", "p1")] = make_pod(
            "p1", deletion_timestamp=T0, grace=30, pod_ips=[]
        )
        trace(context, "p1")
        clock.advance(31)

        assert await Tracer(context).run_once() == 0
        assert context.release_queue.empty()
        assert context.store.list() == []

    @pytest.mark.asyncio
    async def test_pod_gone(self, context, clock):
        """Test that a pod object already deleted is still released."""
        trace(context, "p1")
        clock.advance(31)

        assert await Tracer(context).run_once() == 1
        assert context.release_queue.qsize() == 1

    @pytest.mark.asyncio
    async def test_pod_lookup_error_retries_next_round(self, context, gateway, clock):
        """Test that a failed lookup keeps the entry for the next pass."""
        gateway.errors["get_pod"] = GatewayError("boom", status=500)
        trace(context, "p1")
        clock.advance(31)

        assert await Tracer(context).run_once() == 0
        assert len(context.store) == 1

    @pytest.mark.asyncio
    async def test_full_queue_drops_signal(self, context, clock, caplog):
        """Test that a signal which cannot be queued in time is dropped."""
        for _ in range(context.settings.release_queue_size):
            context.release_queue.put_nowait(object())
        trace(context, "p1")
        clock.advance(31)

        assert await Tracer(context).run_once() == 0
        assert "Failed to send release signal" in caplog.text
        assert len(context.store) == 1

    @pytest.mark.asyncio
    async def test_run_loop(self, context, clock):
        """Test that the loop keeps tracing until cancelled."""
        trace(context, "p1")
        clock.advance(31)

        task = asyncio.create_task(Tracer(context).run())
        request = await asyncio.wait_for(context.release_queue.get(), timeout=1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert request.key == "ns/p1"
