"""Typed access to the cluster resources the engine reads and writes."""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, TypeVar

from kubernetes.client.exceptions import ApiException
from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from .cluster import ClusterConnection
from .errors import NotFoundError, translate_api_exception
from .models import (
    CRD_GROUP,
    CRD_VERSION,
    ENDPOINT_PLURAL,
    GC_FINALIZER,
    IPPOOL_PLURAL,
    HistoricalIP,
    IPAllocation,
    IPPool,
    PodSnapshot,
    WorkloadEndpoint,
)

T = TypeVar("T")

KUBEVIRT_GROUP = "kubevirt.io"
KUBEVIRT_VERSION = "v1"
KUBEVIRT_VM_PLURAL = "virtualmachines"


class ClusterResourceGateway(ABC):
    """
    Contract the GC engine depends on for cluster state.

    Every method raises NotFoundError when the addressed resource is gone and
    GatewayError on any other API failure, except where noted.
    """

    @abstractmethod
    async def get_pod(self, namespace: str, name: str) -> PodSnapshot:
        """Fetch a Pod."""

    @abstractmethod
    async def list_ip_pools(self) -> list[IPPool]:
        """List every IPPool."""

    def list_ips_allocated_in_pool(self, pool: IPPool) -> dict[str, IPAllocation]:
        """Allocation records of a pool, keyed by IP."""
        return dict(pool.allocated_ips)

    @abstractmethod
    async def release_ip(self, pool_name: str, ip: str, container_id: str = "") -> bool:
        """
        Remove an IP's allocation record from a pool.

        A missing pool or record is not an error.

        Returns:
            True if a record was removed
        """

    @abstractmethod
    async def get_wep(self, namespace: str, name: str) -> WorkloadEndpoint:
        """Fetch a WorkloadEndpoint."""

    def list_historical_ips(self, wep: WorkloadEndpoint) -> dict[str, list[HistoricalIP]]:
        """Every IP the workload held, grouped by pool."""
        return wep.historical_ips()

    @abstractmethod
    async def remove_finalizer(self, wep: WorkloadEndpoint) -> None:
        """Remove the GC finalizer from a WorkloadEndpoint. A missing WEP is not an error."""

    @abstractmethod
    async def delete_wep(self, wep: WorkloadEndpoint) -> None:
        """Delete a WorkloadEndpoint. A missing WEP is not an error."""

    @abstractmethod
    async def check_current_container_id(
        self, namespace: str, name: str, container_id: str
    ) -> bool:
        """Whether the Pod's WEP currently records the given container ID."""

    @abstractmethod
    async def get_statefulset_replicas(self, namespace: str, name: str) -> int:
        """Desired replica count of a StatefulSet."""

    @abstractmethod
    async def vm_exists(self, namespace: str, name: str) -> bool:
        """Whether a KubeVirt VirtualMachine exists."""

    @abstractmethod
    async def is_node_ready(self, name: str) -> bool:
        """Whether a Node reports the Ready condition. A missing Node is not ready."""


def _is_conflict(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 409


class KubernetesGateway(ClusterResourceGateway):
    """ClusterResourceGateway backed by the official kubernetes client."""

    def __init__(
        self,
        cluster: ClusterConnection,
        max_conflict_retries: int = 3,
        conflict_retry_unit_seconds: float = 0.1,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the gateway.

        Args:
            cluster: Cluster connection
            max_conflict_retries: Retries of a write rejected with 409 Conflict
            conflict_retry_unit_seconds: Base unit of the randomized retry wait
            logger: Logger
        """
        self.cluster = cluster
        self.core_v1 = cluster.core_v1
        self.apps_v1 = cluster.apps_v1
        self.custom_objects = cluster.custom_objects
        self.max_conflict_retries = max_conflict_retries
        self.conflict_retry_unit_seconds = conflict_retry_unit_seconds
        self.logger = logger or logging.getLogger(__name__)

    def _conflict_retrying(self) -> Retrying:
        return Retrying(
            retry=retry_if_exception(_is_conflict),
            stop=stop_after_attempt(self.max_conflict_retries + 1),
            wait=wait_random_exponential(
                multiplier=self.conflict_retry_unit_seconds,
                max=self.conflict_retry_unit_seconds * 2 ** (self.max_conflict_retries + 1),
            ),
            reraise=True,
        )

    async def _call(
        self,
        kind: str,
        name: str,
        namespace: Optional[str],
        fn: Callable[..., T],
        *args: Any,
    ) -> T:
        """Run a blocking client call in a worker thread and translate its errors."""
        try:
            return await asyncio.to_thread(fn, *args)
        except ApiException as e:
            raise translate_api_exception(e, kind, name, namespace) from e

    async def get_pod(self, namespace: str, name: str) -> PodSnapshot:
        pod = await self._call(
            "Pod", name, namespace, self.core_v1.read_namespaced_pod, name, namespace
        )
        return PodSnapshot.from_k8s(pod)

    async def list_ip_pools(self) -> list[IPPool]:
        result = await self._call(
            "IPPool",
            "*",
            None,
            self.custom_objects.list_cluster_custom_object,
            CRD_GROUP,
            CRD_VERSION,
            IPPOOL_PLURAL,
        )
        pools = []
        for item in result.get("items", []):
            try:
                pools.append(IPPool.from_k8s(item))
            except (ValueError, KeyError) as e:
                name = (item.get("metadata") or {}).get("name")
                self.logger.error(f"Failed to parse IPPool '{name}' allocated IPs: {e}")
        return pools

    async def release_ip(self, pool_name: str, ip: str, container_id: str = "") -> bool:
        try:
            return await self._call(
                "IPPool", pool_name, None, self._release_ip, pool_name, ip, container_id
            )
        except NotFoundError:
            return False

    def _release_ip(self, pool_name: str, ip: str, container_id: str) -> bool:
        for attempt in self._conflict_retrying():
            with attempt:
                pool = self.custom_objects.get_cluster_custom_object(
                    CRD_GROUP, CRD_VERSION, IPPOOL_PLURAL, pool_name
                )
                status = pool.setdefault("status", {})
                raw = status.get("allocatedIPs")
                encoded = isinstance(raw, str)
                allocations = json.loads(raw) if encoded and raw else dict(raw or {})

                record = allocations.get(ip)
                if record is None:
                    return False
                recorded_id = record.get("containerID")
                if container_id and recorded_id and recorded_id != container_id:
                    # the IP was handed to another container meanwhile
                    return False

                del allocations[ip]
                status["allocatedIPs"] = json.dumps(allocations) if encoded else allocations
                if status.get("allocatedIPCount"):
                    status["allocatedIPCount"] = max(0, status["allocatedIPCount"] - 1)

                self.custom_objects.replace_cluster_custom_object_status(
                    CRD_GROUP, CRD_VERSION, IPPOOL_PLURAL, pool_name, pool
                )
                return True
        return False

    async def get_wep(self, namespace: str, name: str) -> WorkloadEndpoint:
        obj = await self._call(
            "WorkloadEndpoint",
            name,
            namespace,
            self.custom_objects.get_namespaced_custom_object,
            CRD_GROUP,
            CRD_VERSION,
            namespace,
            ENDPOINT_PLURAL,
            name,
        )
        return WorkloadEndpoint.from_k8s(obj)

    async def remove_finalizer(self, wep: WorkloadEndpoint) -> None:
        try:
            await self._call(
                "WorkloadEndpoint",
                wep.name,
                wep.namespace,
                self._remove_finalizer,
                wep.namespace,
                wep.name,
            )
        except NotFoundError:
            self.logger.debug(f"WorkloadEndpoint {wep.namespace}/{wep.name} already gone")

    def _remove_finalizer(self, namespace: str, name: str) -> None:
        for attempt in self._conflict_retrying():
            with attempt:
                obj = self.custom_objects.get_namespaced_custom_object(
                    CRD_GROUP, CRD_VERSION, namespace, ENDPOINT_PLURAL, name
                )
                finalizers = obj.get("metadata", {}).get("finalizers") or []
                if GC_FINALIZER not in finalizers:
                    return
                obj["metadata"]["finalizers"] = [f for f in finalizers if f != GC_FINALIZER]
                self.custom_objects.replace_namespaced_custom_object(
                    CRD_GROUP, CRD_VERSION, namespace, ENDPOINT_PLURAL, name, obj
                )

    async def delete_wep(self, wep: WorkloadEndpoint) -> None:
        try:
            await self._call(
                "WorkloadEndpoint",
                wep.name,
                wep.namespace,
                self.custom_objects.delete_namespaced_custom_object,
                CRD_GROUP,
                CRD_VERSION,
                wep.namespace,
                ENDPOINT_PLURAL,
                wep.name,
            )
        except NotFoundError:
            self.logger.debug(f"WorkloadEndpoint {wep.namespace}/{wep.name} already gone")

    async def check_current_container_id(
        self, namespace: str, name: str, container_id: str
    ) -> bool:
        wep = await self.get_wep(namespace, name)
        return wep.current is not None and wep.current.container_id == container_id

    async def get_statefulset_replicas(self, namespace: str, name: str) -> int:
        sts = await self._call(
            "StatefulSet",
            name,
            namespace,
            self.apps_v1.read_namespaced_stateful_set,
            name,
            namespace,
        )
        replicas = sts.spec.replicas
        # the API server defaults an unset replica count to 1
        return 1 if replicas is None else replicas

    async def vm_exists(self, namespace: str, name: str) -> bool:
        try:
            await self._call(
                "VirtualMachine",
                name,
                namespace,
                self.custom_objects.get_namespaced_custom_object,
                KUBEVIRT_GROUP,
                KUBEVIRT_VERSION,
                namespace,
                KUBEVIRT_VM_PLURAL,
                name,
            )
        except NotFoundError:
            return False
        return True

    async def is_node_ready(self, name: str) -> bool:
        try:
            node = await self._call("Node", name, None, self.core_v1.read_node, name)
        except NotFoundError:
            return False

        for condition in (node.status.conditions if node.status else None) or []:
            if condition.type == "Ready":
                return condition.status == "True"
        return False
