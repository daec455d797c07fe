"""In-memory Pod liveness store."""

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from threading import RLock
from typing import Callable, Iterable, Optional

from .errors import (
    InvalidTransitionError,
    PodEntryExistsError,
    PodEntryNotFoundError,
    StoreCapacityError,
)
from .models import PodPhase, PodSnapshot, TracingReason

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TracingState(str, Enum):
    """Lifecycle of a tracked Pod."""

    UNTRACKED = "untracked"
    TRACING = "tracing"
    RELEASED = "released"


@dataclass(frozen=True)
class TracingPlan:
    """Deadline computed for a Pod that became a GC candidate."""

    reason: TracingReason
    start_time: datetime
    graceful_time: timedelta

    @property
    def stop_time(self) -> datetime:
        return self.start_time + self.graceful_time


@dataclass
class PodEntry:
    """Tracked lifecycle state of one Pod."""

    pod_name: str
    namespace: str
    node_name: str = ""
    uid: str = ""
    entry_create_time: datetime = field(default_factory=utcnow)
    pod_phase: PodPhase = PodPhase.UNKNOWN
    terminating_start_time: Optional[datetime] = None
    pod_graceful_time: Optional[timedelta] = None
    tracing_stop_time: Optional[datetime] = None
    tracing_reason: Optional[TracingReason] = None
    state: TracingState = TracingState.UNTRACKED
    traced_ips: list[tuple[str, str]] = field(default_factory=list)

    @property
    def key(self) -> tuple[str, str]:
        return self.namespace, self.pod_name

    def begin_tracing(self, plan: TracingPlan) -> bool:
        """
        Start the grace-period clock.

        The first plan wins: an entry already tracing keeps its deadline.

        Returns:
            True if the deadline was set by this call

        Raises:
            InvalidTransitionError: If the entry was already released
        """
        if self.state == TracingState.RELEASED:
            raise InvalidTransitionError(
                f"pod entry {self.namespace}/{self.pod_name} already released"
            )
        if self.state == TracingState.TRACING:
            return False

        self.terminating_start_time = plan.start_time
        self.pod_graceful_time = plan.graceful_time
        self.tracing_stop_time = plan.stop_time
        self.tracing_reason = plan.reason
        self.state = TracingState.TRACING
        return True

    def mark_released(self) -> None:
        if self.state != TracingState.TRACING:
            raise InvalidTransitionError(
                f"pod entry {self.namespace}/{self.pod_name} is {self.state.value}, "
                "only tracing entries can be released"
            )
        self.state = TracingState.RELEASED

    def is_due(self, now: datetime) -> bool:
        return self.tracing_stop_time is not None and now >= self.tracing_stop_time


class PodLivenessStore:
    """
    Concurrent table of tracked Pods keyed by (namespace, name).

    Thread-safe. The lock only guards map access and is never held across
    cluster API calls. Every entry handed out is a copy.
    """

    def __init__(
        self,
        max_capacity: int = 100000,
        clock: Clock = utcnow,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the store.

        Args:
            max_capacity: Maximum number of entries retained
            clock: Source of the current time
            logger: Logger for debug output
        """
        self._entries: dict[tuple[str, str], PodEntry] = {}
        self._lock = RLock()
        self.max_capacity = max_capacity
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)

    def get(self, name: str, namespace: str) -> PodEntry:
        with self._lock:
            entry = self._entries.get((namespace, name))
            if entry is None:
                raise PodEntryNotFoundError(f"pod entry {namespace}/{name} not found")
            return copy.deepcopy(entry)

    def create(self, pod: PodSnapshot) -> PodEntry:
        """
        Start tracking a Pod.

        Raises:
            PodEntryExistsError: If the Pod is already tracked
            StoreCapacityError: If the store is full
        """
        key = (pod.namespace, pod.name)
        with self._lock:
            if key in self._entries:
                raise PodEntryExistsError(f"pod entry {pod.namespace}/{pod.name} already exists")
            if len(self._entries) >= self.max_capacity:
                raise StoreCapacityError(
                    f"pod entry store is out of capacity ({self.max_capacity}), "
                    f"discard {pod.namespace}/{pod.name}"
                )

            entry = PodEntry(
                pod_name=pod.name,
                namespace=pod.namespace,
                node_name=pod.node_name,
                uid=pod.uid,
                entry_create_time=self.clock(),
                pod_phase=pod.phase,
            )
            self._entries[key] = entry
            self.logger.debug(f"Created pod entry {pod.namespace}/{pod.name}")
            return copy.deepcopy(entry)

    def update(
        self,
        pod: PodSnapshot,
        plan: Optional[TracingPlan] = None,
        ips: Iterable[tuple[str, str]] = (),
    ) -> PodEntry:
        """
        Refresh a tracked Pod.

        The phase is always refreshed; a tracing plan is only applied to an
        entry that is not tracing yet, so an established deadline never moves.

        Args:
            pod: Latest observation of the Pod
            plan: Tracing plan derived from the observation, if any
            ips: (pool, ip) pairs the Pod held, recorded for diagnostics

        Raises:
            PodEntryNotFoundError: If the Pod is not tracked
        """
        with self._lock:
            entry = self._entries.get((pod.namespace, pod.name))
            if entry is None:
                raise PodEntryNotFoundError(f"pod entry {pod.namespace}/{pod.name} not found")

            if (
                entry.state == TracingState.TRACING
                and entry.uid
                and pod.uid
                and pod.uid != entry.uid
            ):
                # a new Pod took the name, the traced incarnation stays as is
                self.logger.debug(
                    f"Pod entry {pod.namespace}/{pod.name} traces UID {entry.uid}, "
                    f"ignore observation of UID {pod.uid}"
                )
                return copy.deepcopy(entry)

            entry.pod_phase = pod.phase
            if pod.node_name:
                entry.node_name = pod.node_name
            if pod.uid:
                entry.uid = pod.uid
            if plan is not None and entry.begin_tracing(plan):
                self.logger.debug(
                    f"Pod entry {pod.namespace}/{pod.name} tracing "
                    f"({plan.reason.value}) until {plan.stop_time.isoformat()}"
                )
            for pair in ips:
                if pair not in entry.traced_ips:
                    entry.traced_ips.append(pair)
            return copy.deepcopy(entry)

    def apply(
        self,
        pod: PodSnapshot,
        plan: Optional[TracingPlan] = None,
        ips: Iterable[tuple[str, str]] = (),
    ) -> PodEntry:
        """Create the entry if needed, then update it."""
        with self._lock:
            if (pod.namespace, pod.name) not in self._entries:
                self.create(pod)
            return self.update(pod, plan, ips)

    def release(self, name: str, namespace: str) -> PodEntry:
        """
        Mark a tracing entry released and stop tracking it.

        Raises:
            PodEntryNotFoundError: If the Pod is not tracked
            InvalidTransitionError: If the entry is not tracing
        """
        with self._lock:
            entry = self._entries.get((namespace, name))
            if entry is None:
                raise PodEntryNotFoundError(f"pod entry {namespace}/{name} not found")
            entry.mark_released()
            del self._entries[(namespace, name)]
        self.logger.debug(f"Released pod entry {namespace}/{name}")
        return entry

    def delete(self, name: str, namespace: str) -> None:
        with self._lock:
            if self._entries.pop((namespace, name), None) is None:
                return
        self.logger.debug(f"Deleted pod entry {namespace}/{name}")

    def list(self) -> list[PodEntry]:
        """Snapshot of every entry, safe to iterate while the store changes."""
        with self._lock:
            return [copy.deepcopy(e) for e in self._entries.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: tuple[str, str]) -> bool:
        with self._lock:
            return key in self._entries
