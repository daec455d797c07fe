"""Decide whether a Pod is a GC candidate and when its IPs fall due."""

import logging
from datetime import timedelta
from typing import Optional

from .config import Settings
from .gateway import ClusterResourceGateway
from .models import PodSnapshot, TracingReason
from .store import Clock, TracingPlan, utcnow
from .workloads import OwnerKind, StaticIdentityPolicy


class PodEntryBuilder:
    """
    Builds tracing plans from Pod observations.

    Shared by the watch path and the sweep so both compute identical deadlines.
    """

    def __init__(
        self,
        settings: Settings,
        gateway: ClusterResourceGateway,
        identity_policy: StaticIdentityPolicy,
        clock: Clock = utcnow,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings
        self.gateway = gateway
        self.identity_policy = identity_policy
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)

    @property
    def additional_delay(self) -> timedelta:
        return timedelta(seconds=self.settings.additional_grace_delay_seconds)

    async def build(self, pod: PodSnapshot) -> Optional[TracingPlan]:
        """
        Compute the tracing plan for a Pod.

        Args:
            pod: Current Pod observation

        Returns:
            TracingPlan, or None if the Pod's IPs must be kept

        Raises:
            GatewayError: If an owner or Node lookup fails
            PodEntryBuildError: If the Pod name contradicts its owner kind
        """
        if pod.host_network:
            self.logger.debug(f"Discard tracing HostNetwork pod {pod.namespace}/{pod.name}")
            return None

        if not pod.is_terminating and not pod.is_terminal:
            return None

        if await self._pending_recreation(pod):
            return None

        if pod.is_terminating:
            if not await self._terminating_gc_enabled(pod):
                return None
            return self.terminating_plan(pod)

        reason = TracingReason(pod.phase.value)
        return TracingPlan(
            reason=reason, start_time=self.clock(), graceful_time=self.additional_delay
        )

    def terminating_plan(self, pod: PodSnapshot) -> TracingPlan:
        grace_seconds = pod.deletion_grace_period_seconds
        if grace_seconds is None:
            grace_seconds = pod.termination_grace_period_seconds or 0
        return TracingPlan(
            reason=TracingReason.TERMINATING,
            start_time=pod.deletion_timestamp,
            graceful_time=timedelta(seconds=grace_seconds),
        )

    async def build_deleted(self, pod: PodSnapshot) -> Optional[TracingPlan]:
        """
        Compute the tracing plan for a Pod whose object is gone.

        Args:
            pod: Last observation of the Pod

        Returns:
            TracingPlan, or None if the Pod's IPs must be kept

        Raises:
            GatewayError: If an owner lookup fails
            PodEntryBuildError: If the Pod name contradicts its owner kind
        """
        if pod.host_network:
            return None
        if await self._pending_recreation(pod):
            return None
        return self.deleted_plan()

    async def _pending_recreation(self, pod: PodSnapshot) -> bool:
        if pod.owner is None:
            return False
        kind = OwnerKind.parse(pod.owner.kind)
        if await self.identity_policy.is_pending_recreation(
            kind, pod.namespace, pod.name, pod.owner.name
        ):
            self.logger.debug(
                f"The {kind.value} pod {pod.namespace}/{pod.name} just restarts, keep its IPs"
            )
            return True
        return False

    def deleted_plan(self) -> TracingPlan:
        """Plan for a Pod whose object is already gone."""
        return TracingPlan(
            reason=TracingReason.DELETED,
            start_time=self.clock(),
            graceful_time=self.additional_delay,
        )

    async def _terminating_gc_enabled(self, pod: PodSnapshot) -> bool:
        ready_on = self.settings.gc_terminating_pod_on_ready_node
        not_ready_on = self.settings.gc_terminating_pod_on_not_ready_node
        if ready_on and not_ready_on:
            return True
        if not ready_on and not not_ready_on:
            return False

        ready = bool(pod.node_name) and await self.gateway.is_node_ready(
            pod.node_name
        )
        enabled = ready_on if ready else not_ready_on
        if not enabled:
            self.logger.debug(
                f"GC of terminating pods on {'Ready' if ready else 'NotReady'} nodes "
                f"is off, discard tracing pod {pod.namespace}/{pod.name}"
            )
        return enabled
