"""Pytest configuration and fixtures for IP GC engine tests."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import MagicMock

import pytest
from kubernetes import client

from ipam_gc.config import Settings
from ipam_gc.context import EngineContext
from ipam_gc.election import StaticLeaderGate
from ipam_gc.errors import NotFoundError
from ipam_gc.gateway import ClusterResourceGateway
from ipam_gc.models import (
    IPAllocation,
    IPAllocationDetail,
    IPPool,
    OwnerReference,
    PodIPAllocation,
    PodPhase,
    PodSnapshot,
    WorkloadEndpoint,
)

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeGateway(ClusterResourceGateway):
    """In-memory cluster recording every mutating call."""

    def __init__(self):
        self.pods: dict[tuple[str, str], PodSnapshot] = {}
        self.pools: dict[str, IPPool] = {}
        self.weps: dict[tuple[str, str], WorkloadEndpoint] = {}
        self.statefulsets: dict[tuple[str, str], int] = {}
        self.vms: set[tuple[str, str]] = set()
        self.ready_nodes: set[str] = set()
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple[str, ...]] = []

    def _maybe_fail(self, method: str) -> None:
        error = self.errors.get(method)
        if error is not None:
            raise error

    @property
    def released(self) -> list[tuple[str, str]]:
        return [(c[1], c[2]) for c in self.calls if c[0] == "release_ip"]

    @property
    def finalizers_removed(self) -> list[tuple[str, str]]:
        return [(c[1], c[2]) for c in self.calls if c[0] == "remove_finalizer"]

    @property
    def weps_deleted(self) -> list[tuple[str, str]]:
        return [(c[1], c[2]) for c in self.calls if c[0] == "delete_wep"]

    async def get_pod(self, namespace: str, name: str) -> PodSnapshot:
        self._maybe_fail("get_pod")
        try:
            return self.pods[(namespace, name)]
        except KeyError:
            raise NotFoundError("Pod", name, namespace) from None

    async def list_ip_pools(self) -> list[IPPool]:
        self._maybe_fail("list_ip_pools")
        return list(self.pools.values())

    async def release_ip(self, pool_name: str, ip: str, container_id: str = "") -> bool:
        self._maybe_fail("release_ip")
        self.calls.append(("release_ip", pool_name, ip))
        pool = self.pools.get(pool_name)
        if pool is None or ip not in pool.allocated_ips:
            return False
        del pool.allocated_ips[ip]
        return True

    async def get_wep(self, namespace: str, name: str) -> WorkloadEndpoint:
        self._maybe_fail("get_wep")
        try:
            return self.weps[(namespace, name)]
        except KeyError:
            raise NotFoundError("WorkloadEndpoint", name, namespace) from None

    async def remove_finalizer(self, wep: WorkloadEndpoint) -> None:
        self._maybe_fail("remove_finalizer")
        self.calls.append(("remove_finalizer", wep.namespace, wep.name))
        self.weps.pop((wep.namespace, wep.name), None)

    async def delete_wep(self, wep: WorkloadEndpoint) -> None:
        self._maybe_fail("delete_wep")
        self.calls.append(("delete_wep", wep.namespace, wep.name))

    async def check_current_container_id(
        self, namespace: str, name: str, container_id: str
    ) -> bool:
        wep = await self.get_wep(namespace, name)
        return wep.current_container_id == container_id

    async def get_statefulset_replicas(self, namespace: str, name: str) -> int:
        try:
            return self.statefulsets[(namespace, name)]
        except KeyError:
            raise NotFoundError("StatefulSet", name, namespace) from None

    async def vm_exists(self, namespace: str, name: str) -> bool:
        return (namespace, name) in self.vms

    async def is_node_ready(self, name: str) -> bool:
        return name in self.ready_nodes


def make_pod(
    name: str,
    namespace: str = "ns",
    phase: PodPhase = PodPhase.RUNNING,
    uid: Optional[str] = None,
    deletion_timestamp: Optional[datetime] = None,
    grace: Optional[int] = None,
    owner: Optional[tuple[str, str]] = None,
    pod_ips: Optional[list[str]] = None,
    node_name: str = "node-1",
    host_network: bool = False,
) -> PodSnapshot:
    return PodSnapshot(
        name=name,
        namespace=namespace,
        uid=uid or f"uid-{name}",
        node_name=node_name,
        phase=phase,
        deletion_timestamp=deletion_timestamp,
        deletion_grace_period_seconds=grace,
        host_network=host_network,
        owner=OwnerReference(kind=owner[0], name=owner[1]) if owner else None,
        pod_ips=["10.0.0.1"] if pod_ips is None else pod_ips,
    )


def make_wep(
    name: str,
    namespace: str = "ns",
    ips: tuple[tuple[str, str], ...] = (("pool-a", "10.0.0.1/24"),),
    container_id: str = "c1",
    uid: Optional[str] = None,
    owner_type: str = "",
    owner_name: str = "",
    history: tuple[PodIPAllocation, ...] = (),
) -> WorkloadEndpoint:
    current = PodIPAllocation(
        container_id=container_id,
        uid=uid or f"uid-{name}",
        node="node-1",
        ips=[
            IPAllocationDetail(nic=f"eth{i}", ipv4=ip, ipv4_pool=pool)
            for i, (pool, ip) in enumerate(ips)
        ],
    )
    return WorkloadEndpoint(
        name=name,
        namespace=namespace,
        finalizers=["spiderpool.spidernet.io"],
        current=current,
        history=[current, *history],
        owner_controller_type=owner_type,
        owner_controller_name=owner_name,
    )


def make_pool(
    name: str, allocations: dict[str, tuple[str, str, str]], ip_version: int = 4
) -> IPPool:
    """Pool whose allocations map IP to (namespace, pod name, container ID)."""
    return IPPool(
        name=name,
        ip_version=ip_version,
        allocated_ips={
            ip: IPAllocation(
                pod_name=pod, namespace=ns, container_id=cid, pod_uid=f"uid-{pod}"
            )
            for ip, (ns, pod, cid) in allocations.items()
        },
    )


@pytest.fixture
def clock():
    """Controllable clock starting at T0."""
    return FakeClock()


@pytest.fixture
def gateway():
    """In-memory gateway."""
    return FakeGateway()


@pytest.fixture
def leader():
    """Leader gate holding leadership."""
    return StaticLeaderGate(leader=True)


@pytest.fixture
def settings():
    """Engine settings tuned for fast tests."""
    return Settings(
        _env_file=None,
        leader_election_enabled=False,
        trace_pod_gap_seconds=0.01,
        gc_signal_timeout_seconds=0.05,
        gc_signal_gap_seconds=0,
        reconcile_retry_delay_seconds=0,
        watch_retry_seconds=0.01,
        release_ip_worker_num=2,
    )


@pytest.fixture
def context(settings, gateway, leader, clock):
    """Engine context wired to the fakes."""
    return EngineContext.create(
        settings, gateway, leader, logger=logging.getLogger("ipam_gc.test"), clock=clock
    )


@pytest.fixture
def mock_cluster_connection():
    """Mock cluster connection for testing."""
    mock_conn = MagicMock()
    mock_conn.core_v1 = MagicMock(spec=client.CoreV1Api)
    mock_conn.apps_v1 = MagicMock(spec=client.AppsV1Api)
    mock_conn.custom_objects = MagicMock(spec=client.CustomObjectsApi)
    mock_conn.coordination_v1 = MagicMock(spec=client.CoordinationV1Api)
    return mock_conn
