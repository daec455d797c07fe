"""Shared dependencies handed to every engine component."""

import asyncio
import logging
from dataclasses import dataclass, field

from .config import Settings
from .election import LeaderGate
from .gateway import ClusterResourceGateway
from .models import ReleaseRequest
from .podentry import PodEntryBuilder
from .store import Clock, PodLivenessStore, utcnow
from .workloads import StaticIdentityPolicy


@dataclass
class EngineContext:
    """Settings, collaborators and shared state of one GC engine instance."""

    settings: Settings
    gateway: ClusterResourceGateway
    leader: LeaderGate
    store: PodLivenessStore
    builder: PodEntryBuilder
    identity_policy: StaticIdentityPolicy
    release_queue: "asyncio.Queue[ReleaseRequest]"
    logger: logging.Logger
    clock: Clock = field(default=utcnow)

    @classmethod
    def create(
        cls,
        settings: Settings,
        gateway: ClusterResourceGateway,
        leader: LeaderGate,
        logger: logging.Logger | None = None,
        clock: Clock = utcnow,
    ) -> "EngineContext":
        """
        Build a context with a fresh store and release queue.

        Args:
            settings: Engine settings
            gateway: Cluster resource gateway
            leader: Leader gate
            logger: Root logger of the engine
            clock: Source of the current time

        Returns:
            EngineContext
        """
        logger = logger or logging.getLogger("ipam_gc")
        identity_policy = StaticIdentityPolicy(
            gateway,
            enable_statefulset=settings.enable_statefulset,
            enable_kubevirt=settings.enable_kubevirt_static_ip,
        )
        return cls(
            settings=settings,
            gateway=gateway,
            leader=leader,
            store=PodLivenessStore(
                max_capacity=settings.max_pod_entry_capacity,
                clock=clock,
                logger=logger.getChild("store"),
            ),
            builder=PodEntryBuilder(
                settings,
                gateway,
                identity_policy,
                clock=clock,
                logger=logger.getChild("podentry"),
            ),
            identity_policy=identity_policy,
            release_queue=asyncio.Queue(maxsize=settings.release_queue_size),
            logger=logger,
            clock=clock,
        )
