"""Tests for PodLivenessStore."""

from datetime import timedelta

import pytest

from conftest import T0, make_pod
from ipam_gc.errors import (
    InvalidTransitionError,
    PodEntryExistsError,
    PodEntryNotFoundError,
    StoreCapacityError,
)
from ipam_gc.models import PodPhase, TracingReason
from ipam_gc.store import PodLivenessStore, TracingPlan, TracingState


def terminating_plan(start=T0, grace=30):
    return TracingPlan(
        reason=TracingReason.TERMINATING,
        start_time=start,
        graceful_time=timedelta(seconds=grace),
    )


class TestPodLivenessStore:
    """Test cases for PodLivenessStore."""

    def test_create_and_get(self, clock):
        """Test creating an entry and reading it back."""
        store = PodLivenessStore(clock=clock)
        store.create(make_pod("p1"))

        entry = store.get("p1", "ns")
        assert entry.pod_name == "p1"
        assert entry.namespace == "ns"
        assert entry.uid == "uid-p1"
        assert entry.entry_create_time == T0
        assert entry.state == TracingState.UNTRACKED
        assert entry.tracing_stop_time is None

    def test_get_missing(self):
        """Test getting an untracked pod."""
        store = PodLivenessStore()
        with pytest.raises(PodEntryNotFoundError):
            store.get("missing", "ns")

    def test_create_duplicate(self):
        """Test creating an entry twice."""
        store = PodLivenessStore()
        store.create(make_pod("p1"))
        with pytest.raises(PodEntryExistsError):
            store.create(make_pod("p1"))

    def test_capacity(self):
        """Test that the store refuses entries beyond its capacity."""
        store = PodLivenessStore(max_capacity=2)
        store.create(make_pod("p1"))
        store.create(make_pod("p2"))
        with pytest.raises(StoreCapacityError):
            store.create(make_pod("p3"))
        assert len(store) == 2

    def test_update_missing(self):
        """Test updating an untracked pod."""
        store = PodLivenessStore()
        with pytest.raises(PodEntryNotFoundError):
            store.update(make_pod("p1"))

    def test_update_starts_tracing(self):
        """Test that a plan starts the grace-period clock."""
        store = PodLivenessStore()
        store.create(make_pod("p1"))

        entry = store.update(
            make_pod("p1", deletion_timestamp=T0, grace=30),
            terminating_plan(),
            [("pool-a", "10.0.0.1")],
        )

        assert entry.state == TracingState.TRACING
        assert entry.tracing_reason == TracingReason.TERMINATING
        assert entry.terminating_start_time == T0
        assert entry.pod_graceful_time == timedelta(seconds=30)
        assert entry.tracing_stop_time == T0 + timedelta(seconds=30)
        assert entry.traced_ips == [("pool-a", "10.0.0.1")]

    def test_deadline_is_idempotent(self):
        """Test that repeated updates never move an established deadline."""
        store = PodLivenessStore()
        store.create(make_pod("p1"))
        store.update(make_pod("p1"), terminating_plan())

        for offset in (5, 60, 3600):
            later = terminating_plan(start=T0 + timedelta(seconds=offset), grace=offset)
            store.update(make_pod("p1", phase=PodPhase.FAILED), later)
            entry = store.get("p1", "ns")
            assert entry.terminating_start_time == T0
            assert entry.pod_graceful_time == timedelta(seconds=30)
            assert entry.tracing_stop_time == T0 + timedelta(seconds=30)
            assert entry.tracing_reason == TracingReason.TERMINATING

        assert store.get("p1", "ns").pod_phase == PodPhase.FAILED

    def test_tracing_entry_keeps_its_incarnation(self):
        """Test that a recreated pod with the same name never takes over a tracing entry."""
        store = PodLivenessStore()
        store.apply(
            make_pod("p1", uid="uid-old", deletion_timestamp=T0, grace=30), terminating_plan()
        )

        entry = store.update(make_pod("p1", uid="uid-new", node_name="node-2"))

        assert entry.uid == "uid-old"
        assert entry.node_name == "node-1"
        assert store.get("p1", "ns").uid == "uid-old"

    def test_apply_creates_then_updates(self):
        """Test that apply upserts."""
        store = PodLivenessStore()
        store.apply(make_pod("p1"), terminating_plan())
        store.apply(make_pod("p1"), terminating_plan(grace=90))

        assert len(store) == 1
        assert store.get("p1", "ns").tracing_stop_time == T0 + timedelta(seconds=30)

    def test_release_removes_entry(self):
        """Test that a released entry no longer appears in list()."""
        store = PodLivenessStore()
        store.apply(make_pod("p1"), terminating_plan())

        released = store.release("p1", "ns")

        assert released.state == TracingState.RELEASED
        assert store.list() == []
        assert ("ns", "p1") not in store

    def test_release_requires_tracing(self):
        """Test that an untracked entry cannot be released."""
        store = PodLivenessStore()
        store.create(make_pod("p1"))
        with pytest.raises(InvalidTransitionError):
            store.release("p1", "ns")
        assert ("ns", "p1") in store

    def test_delete_is_noop_when_absent(self):
        """Test deleting an untracked pod."""
        store = PodLivenessStore()
        store.delete("missing", "ns")
        assert len(store) == 0

    def test_returned_entries_are_copies(self):
        """Test that callers cannot mutate the stored entry."""
        store = PodLivenessStore()
        store.apply(make_pod("p1"), terminating_plan())

        entry = store.get("p1", "ns")
        entry.tracing_stop_time = None
        store.list()[0].traced_ips.append(("pool-x", "1.1.1.1"))

        stored = store.get("p1", "ns")
        assert stored.tracing_stop_time == T0 + timedelta(seconds=30)
        assert stored.traced_ips == []


class TestPodEntry:
    """Test cases for the PodEntry state machine."""

    def test_begin_tracing_after_release(self):
        """Test that a released entry cannot trace again."""
        store = PodLivenessStore()
        store.apply(make_pod("p1"), terminating_plan())
        entry = store.release("p1", "ns")

        with pytest.raises(InvalidTransitionError):
            entry.begin_tracing(terminating_plan())

    def test_is_due(self):
        """Test deadline comparison."""
        store = PodLivenessStore()
        entry = store.apply(make_pod("p1"), terminating_plan())

        assert not entry.is_due(T0 + timedelta(seconds=29))
        assert entry.is_due(T0 + timedelta(seconds=30))
        assert entry.is_due(T0 + timedelta(seconds=31))
