"""Resource models read and written by the IP garbage collection engine."""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from kubernetes.client import V1Pod
from pydantic import BaseModel, ConfigDict, Field, field_validator

CRD_GROUP = "spiderpool.spidernet.io"
CRD_VERSION = "v2beta1"
IPPOOL_PLURAL = "spiderippools"
ENDPOINT_PLURAL = "spiderendpoints"
GC_FINALIZER = "spiderpool.spidernet.io"


class PodPhase(str, Enum):
    """Kubernetes Pod phase."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "PodPhase":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class TracingReason(str, Enum):
    """Why a Pod is being traced for IP release."""

    TERMINATING = "Terminating"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"
    DELETED = "Deleted"


class OwnerReference(BaseModel):
    """Controller owner of a Pod."""

    kind: str
    name: str
    api_version: str = ""


class PodSnapshot(BaseModel):
    """The subset of a Pod object the engine reasons about."""

    model_config = ConfigDict(frozen=True)

    name: str
    namespace: str
    uid: str = ""
    node_name: str = ""
    phase: PodPhase = PodPhase.UNKNOWN
    deletion_timestamp: Optional[datetime] = None
    deletion_grace_period_seconds: Optional[int] = None
    termination_grace_period_seconds: Optional[int] = None
    host_network: bool = False
    owner: Optional[OwnerReference] = None
    pod_ips: list[str] = Field(default_factory=list)

    @property
    def is_terminating(self) -> bool:
        return self.deletion_timestamp is not None

    @property
    def is_terminal(self) -> bool:
        return self.phase in (PodPhase.SUCCEEDED, PodPhase.FAILED)

    @classmethod
    def from_k8s(cls, pod: V1Pod) -> "PodSnapshot":
        """
        Build a snapshot from a kubernetes client Pod.

        Args:
            pod: V1Pod returned by CoreV1Api or a watch stream

        Returns:
            PodSnapshot
        """
        metadata = pod.metadata
        spec = pod.spec
        status = pod.status

        owner = None
        for ref in metadata.owner_references or []:
            if ref.controller:
                owner = OwnerReference(
                    kind=ref.kind, name=ref.name, api_version=ref.api_version or ""
                )
                break

        pod_ips = [p.ip for p in (status.pod_i_ps or [])] if status else []

        return cls(
            name=metadata.name,
            namespace=metadata.namespace,
            uid=metadata.uid or "",
            node_name=(spec.node_name or "") if spec else "",
            phase=PodPhase.parse(status.phase if status else None),
            deletion_timestamp=metadata.deletion_timestamp,
            deletion_grace_period_seconds=metadata.deletion_grace_period_seconds,
            termination_grace_period_seconds=(
                spec.termination_grace_period_seconds if spec else None
            ),
            host_network=bool(spec.host_network) if spec else False,
            owner=owner,
            pod_ips=pod_ips,
        )


class IPAllocation(BaseModel):
    """Allocation record of a single IP inside an IPPool."""

    model_config = ConfigDict(populate_by_name=True)

    pod_name: str = Field(default="", alias="pod")
    namespace: str = ""
    pod_uid: str = Field(default="", alias="podUID")
    container_id: str = Field(default="", alias="containerID")
    nic: str = ""
    owner_controller_type: str = Field(default="", alias="ownerControllerType")

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "IPAllocation":
        data = dict(raw)
        # v2beta1 records the owner as "namespace/name"
        if "namespacedName" in data:
            ns, _, name = data.pop("namespacedName").partition("/")
            data.setdefault("namespace", ns)
            data.setdefault("pod", name)
        return cls.model_validate(data)


class IPPool(BaseModel):
    """IPPool custom resource."""

    name: str
    ip_version: Optional[int] = None
    allocated_ips: dict[str, IPAllocation] = Field(default_factory=dict)

    @field_validator("allocated_ips", mode="before")
    @classmethod
    def parse_allocated_ips(cls, v: Any) -> dict[str, IPAllocation]:
        if v is None or v == "":
            return {}
        if isinstance(v, str):
            v = json.loads(v)
        return {
            ip: a if isinstance(a, IPAllocation) else IPAllocation.from_raw(a)
            for ip, a in v.items()
        }

    @classmethod
    def from_k8s(cls, obj: dict[str, Any]) -> "IPPool":
        spec = obj.get("spec") or {}
        status = obj.get("status") or {}
        return cls(
            name=obj["metadata"]["name"],
            ip_version=spec.get("ipVersion"),
            allocated_ips=status.get("allocatedIPs"),
        )


def strip_prefix(address: Optional[str]) -> Optional[str]:
    """Drop the '/prefix' suffix a WEP records with its IPs."""
    if address is None:
        return None
    return address.split("/", 1)[0]


class IPAllocationDetail(BaseModel):
    """IPs assigned to one interface of a Pod."""

    model_config = ConfigDict(populate_by_name=True)

    nic: str = Field(default="", alias="interface")
    ipv4: Optional[str] = None
    ipv6: Optional[str] = None
    ipv4_pool: Optional[str] = Field(default=None, alias="ipv4Pool")
    ipv6_pool: Optional[str] = Field(default=None, alias="ipv6Pool")


class PodIPAllocation(BaseModel):
    """One allocation round of a Pod (one container ID)."""

    model_config = ConfigDict(populate_by_name=True)

    container_id: str = Field(default="", alias="containerID")
    uid: str = ""
    node: str = ""
    ips: list[IPAllocationDetail] = Field(default_factory=list)


class HistoricalIP(BaseModel):
    """An IP a workload held at some point, with the container it was bound to."""

    model_config = ConfigDict(frozen=True)

    ip: str
    container_id: str = ""


class WorkloadEndpoint(BaseModel):
    """WorkloadEndpoint custom resource."""

    name: str
    namespace: str
    resource_version: Optional[str] = None
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: Optional[str] = None
    current: Optional[PodIPAllocation] = None
    history: list[PodIPAllocation] = Field(default_factory=list)
    owner_controller_type: str = ""
    owner_controller_name: str = ""

    @property
    def current_uid(self) -> str:
        return self.current.uid if self.current else ""

    @property
    def current_container_id(self) -> str:
        return self.current.container_id if self.current else ""

    def historical_ips(self) -> dict[str, list[HistoricalIP]]:
        """
        Group every IP the workload ever held by pool.

        Returns:
            Mapping of pool name to IPs, in allocation order, without duplicates
        """
        rounds = list(self.history)
        if self.current and self.current not in rounds:
            rounds.insert(0, self.current)

        grouped: dict[str, list[HistoricalIP]] = {}
        for allocation in rounds:
            for detail in allocation.ips:
                for pool, address in (
                    (detail.ipv4_pool, detail.ipv4),
                    (detail.ipv6_pool, detail.ipv6),
                ):
                    if not pool or not address:
                        continue
                    record = HistoricalIP(
                        ip=strip_prefix(address), container_id=allocation.container_id
                    )
                    ips = grouped.setdefault(pool, [])
                    if record not in ips:
                        ips.append(record)
        return grouped

    @classmethod
    def from_k8s(cls, obj: dict[str, Any]) -> "WorkloadEndpoint":
        metadata = obj.get("metadata") or {}
        status = obj.get("status") or {}
        current = status.get("current")
        return cls(
            name=metadata["name"],
            namespace=metadata["namespace"],
            resource_version=metadata.get("resourceVersion"),
            finalizers=metadata.get("finalizers") or [],
            deletion_timestamp=metadata.get("deletionTimestamp"),
            current=PodIPAllocation.model_validate(current) if current else None,
            history=[PodIPAllocation.model_validate(h) for h in status.get("history") or []],
            owner_controller_type=status.get("ownerControllerType") or "",
            owner_controller_name=status.get("ownerControllerName") or "",
        )


class ReleaseRequest(BaseModel):
    """Signal asking the executor pool to release a workload's IPs."""

    model_config = ConfigDict(frozen=True)

    pod_name: str
    namespace: str
    uid: str = ""
    reason: TracingReason = TracingReason.UNKNOWN
    pool: Optional[str] = None
    ip: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.pod_name}"
