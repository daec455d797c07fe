"""Tracer: turns elapsed grace periods into release requests."""

import asyncio
from datetime import datetime
from typing import Optional

from .context import EngineContext
from .errors import (
    InvalidTransitionError,
    IPAMGCError,
    NotFoundError,
    PodEntryNotFoundError,
)
from .models import ReleaseRequest
from .store import PodEntry, TracingState


class Tracer:
    """
    Periodically scans the liveness store for entries past their deadline.

    A due entry is turned into exactly one release request: the entry leaves
    the store once the request is queued. A request that cannot be queued in
    time is dropped; the next sweep rediscovers the stale allocation.
    """

    def __init__(self, context: EngineContext):
        self.context = context
        self.store = context.store
        self.gateway = context.gateway
        self.leader = context.leader
        self.queue = context.release_queue
        self.clock = context.clock
        self.interval = context.settings.trace_pod_gap_seconds
        self.signal_timeout = context.settings.gc_signal_timeout_seconds
        self.logger = context.logger.getChild("tracer")

    async def run(self) -> None:
        self.logger.info("Starting trace pod worker")
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Error tracing pod entries: {e}", exc_info=True)
            await asyncio.sleep(self.interval)

    async def run_once(self, now: Optional[datetime] = None) -> int:
        """
        One pass over the store.

        Args:
            now: Reference time, the context clock by default

        Returns:
            Number of release requests queued
        """
        now = now or self.clock()
        sent = 0
        for entry in self.store.list():
            key = f"{entry.namespace}/{entry.pod_name}"
            if entry.state != TracingState.TRACING:
                continue
            if entry.tracing_stop_time is None:
                self.logger.warning(f"Unknown pod entry {key} without deadline, skip: {entry}")
                continue
            if not entry.is_due(now):
                continue
            if not self.leader.is_leader():
                self.logger.debug(f"Not the leader, keep tracing pod {key}")
                continue

            holds_ips = await self._still_holds_ips(entry)
            if holds_ips is None:
                continue
            if not holds_ips:
                self.logger.info(
                    f"IPs of pod {key} whose grace period is over were already "
                    "released by the CNI, ignore it"
                )
                self.store.delete(entry.pod_name, entry.namespace)
                continue

            self.logger.info(
                f"The grace period of pod {key} is over "
                f"({entry.tracing_reason.value}), try to release its IPs"
            )
            if await self._dispatch(entry):
                sent += 1
        return sent

    async def _still_holds_ips(self, entry: PodEntry) -> Optional[bool]:
        """Whether the Pod object, if still present, reports IPs. None on lookup failure."""
        try:
            pod = await self.gateway.get_pod(entry.namespace, entry.pod_name)
        except NotFoundError:
            return True
        except IPAMGCError as e:
            self.logger.error(
                f"Failed to get pod {entry.namespace}/{entry.pod_name}, "
                f"retry next round: {e}"
            )
            return None
        if entry.uid and pod.uid and pod.uid != entry.uid:
            # the traced Pod is gone and a new one took its name
            return True
        return bool(pod.pod_ips)

    async def _dispatch(self, entry: PodEntry) -> bool:
        key = f"{entry.namespace}/{entry.pod_name}"
        request = ReleaseRequest(
            pod_name=entry.pod_name,
            namespace=entry.namespace,
            uid=entry.uid,
            reason=entry.tracing_reason,
        )
        try:
            await asyncio.wait_for(self.queue.put(request), timeout=self.signal_timeout)
        except asyncio.TimeoutError:
            self.logger.error(
                f"Failed to send release signal, queue len={self.queue.qsize()}, "
                f"pod {key} will be dropped"
            )
            return False

        self.logger.debug(f"Sent release signal for pod {key}")
        try:
            self.store.release(entry.pod_name, entry.namespace)
        except (PodEntryNotFoundError, InvalidTransitionError) as e:
            self.logger.debug(f"Pod entry {key} changed while dispatching: {e}")
        return True
