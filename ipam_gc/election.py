"""Leader election gating every mutating GC action."""

import asyncio
import logging
import socket
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Optional
from uuid import uuid4

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from .store import Clock, utcnow


class LeaderGate(ABC):
    """Reports whether this replica is the cluster-wide active mutator."""

    def __init__(self):
        self._subscribers: list[asyncio.Queue] = []

    @abstractmethod
    def is_leader(self) -> bool:
        """Whether this replica currently holds leadership."""

    def elected(self) -> asyncio.Queue:
        """
        Subscribe to election wins.

        Returns:
            Queue receiving one item per win; wins not yet consumed collapse
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._subscribers.append(queue)
        return queue

    def _notify_elected(self) -> None:
        for queue in self._subscribers:
            if not queue.full():
                queue.put_nowait(None)

    async def run(self) -> None:
        """Keep leadership state current until cancelled."""


class StaticLeaderGate(LeaderGate):
    """Leadership fixed by configuration, for single-replica deployments."""

    def __init__(self, leader: bool = True):
        super().__init__()
        self._leader = leader

    def is_leader(self) -> bool:
        return self._leader

    def set_leader(self, leader: bool) -> None:
        if leader and not self._leader:
            self._leader = True
            self._notify_elected()
        else:
            self._leader = leader

    async def run(self) -> None:
        if self._leader:
            self._notify_elected()
        await asyncio.get_running_loop().create_future()


class LeaseLeaderElector(LeaderGate):
    """
    Leader election over a coordination.k8s.io/v1 Lease.

    A replica holds leadership while it keeps renewing the Lease. It gives
    leadership up as soon as another holder is observed, or when it could not
    renew for longer than the renew deadline.
    """

    def __init__(
        self,
        coordination_v1: CoordinationV1Api,
        lease_name: str,
        lease_namespace: str,
        identity: Optional[str] = None,
        lease_duration_seconds: float = 15,
        renew_deadline_seconds: float = 10,
        retry_period_seconds: float = 2,
        clock: Clock = utcnow,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the elector.

        Args:
            coordination_v1: Coordination API client
            lease_name: Name of the Lease object
            lease_namespace: Namespace of the Lease object
            identity: Unique holder identity, hostname plus UUID when unset
            lease_duration_seconds: How long a non-renewed Lease stays valid
            renew_deadline_seconds: How long renewal may fail before stepping down
            retry_period_seconds: Interval between acquire/renew attempts
            clock: Source of the current time written to the Lease
            logger: Logger
        """
        super().__init__()
        self.coordination_v1 = coordination_v1
        self.lease_name = lease_name
        self.lease_namespace = lease_namespace
        self.identity = identity or f"{socket.gethostname()}_{uuid4()}"
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)

        self._leader = False
        self._last_renew: Optional[float] = None

    def is_leader(self) -> bool:
        return self._leader

    async def run(self) -> None:
        self.logger.info(
            f"Starting lease election {self.lease_namespace}/{self.lease_name} "
            f"as {self.identity}"
        )
        try:
            while True:
                await self.step()
                await asyncio.sleep(self.retry_period_seconds)
        finally:
            if self._leader:
                self.logger.info("Lease election stopped, giving up leadership")
            self._leader = False

    async def step(self) -> None:
        """One acquire-or-renew round."""
        try:
            held = await asyncio.to_thread(self._try_acquire_or_renew)
        except ApiException as e:
            self.logger.error(f"Failed to acquire or renew lease: {e.status} {e.reason}")
            if self._leader and self._renew_expired():
                self._step_down("renew deadline exceeded")
            return

        if held:
            self._last_renew = time.monotonic()
            if not self._leader:
                self._leader = True
                self.logger.info(f"Elected leader as {self.identity}")
                self._notify_elected()
        elif self._leader:
            self._step_down("lease is held by another replica")

    def _renew_expired(self) -> bool:
        if self._last_renew is None:
            return True
        return time.monotonic() - self._last_renew > self.renew_deadline_seconds

    def _step_down(self, reason: str) -> None:
        self._leader = False
        self.logger.warning(f"Lost leadership: {reason}")

    def _try_acquire_or_renew(self) -> bool:
        now = self.clock()
        duration = int(self.lease_duration_seconds)

        try:
            lease = self.coordination_v1.read_namespaced_lease(
                self.lease_name, self.lease_namespace
            )
        except ApiException as e:
            if e.status != 404:
                raise
            body = V1Lease(
                metadata=V1ObjectMeta(name=self.lease_name, namespace=self.lease_namespace),
                spec=V1LeaseSpec(
                    holder_identity=self.identity,
                    lease_duration_seconds=duration,
                    acquire_time=now,
                    renew_time=now,
                    lease_transitions=0,
                ),
            )
            try:
                self.coordination_v1.create_namespaced_lease(self.lease_namespace, body)
            except ApiException as create_error:
                if create_error.status == 409:
                    return False
                raise
            return True

        spec = lease.spec or V1LeaseSpec()
        holder = spec.holder_identity
        if holder and holder != self.identity:
            last = spec.renew_time or spec.acquire_time
            valid_for = timedelta(seconds=spec.lease_duration_seconds or duration)
            if last is not None and now < last + valid_for:
                return False
            self.logger.info(f"Lease held by {holder} expired, taking over")

        if holder != self.identity:
            spec.acquire_time = now
            spec.lease_transitions = (spec.lease_transitions or 0) + 1
        spec.holder_identity = self.identity
        spec.lease_duration_seconds = duration
        spec.renew_time = now
        lease.spec = spec

        try:
            self.coordination_v1.replace_namespaced_lease(
                self.lease_name, self.lease_namespace, lease
            )
        except ApiException as e:
            if e.status == 409:
                return False
            raise
        return True
