"""Workload kinds whose Pods keep their identity, and IPs, across recreation."""

from enum import Enum
from typing import Awaitable, Callable, Optional

from .errors import NotFoundError, PodEntryBuildError
from .gateway import ClusterResourceGateway


class OwnerKind(str, Enum):
    """Controller kinds the engine distinguishes."""

    STATEFULSET = "StatefulSet"
    KUBEVIRT_VMI = "VirtualMachineInstance"
    OTHER = "Other"

    @classmethod
    def parse(cls, kind: Optional[str]) -> "OwnerKind":
        try:
            return cls(kind)
        except ValueError:
            return cls.OTHER


# (gateway, namespace, pod name, owner name) -> still a valid identity
IdentityCheck = Callable[[ClusterResourceGateway, str, str, str], Awaitable[bool]]


def statefulset_ordinal(pod_name: str) -> tuple[str, int]:
    """
    Split a StatefulSet Pod name into the set name and the Pod ordinal.

    Raises:
        PodEntryBuildError: If the name does not end with an ordinal
    """
    parent, sep, ordinal = pod_name.rpartition("-")
    if not sep or not parent or not ordinal.isdigit():
        raise PodEntryBuildError(f"pod '{pod_name}' has no StatefulSet ordinal")
    return parent, int(ordinal)


async def _check_statefulset(
    gateway: ClusterResourceGateway, namespace: str, pod_name: str, owner_name: str
) -> bool:
    sts_name, ordinal = statefulset_ordinal(pod_name)
    try:
        replicas = await gateway.get_statefulset_replicas(namespace, sts_name)
    except NotFoundError:
        # StatefulSet deleted
        return False
    # scaled down below this ordinal
    return ordinal < replicas


async def _check_kubevirt_vmi(
    gateway: ClusterResourceGateway, namespace: str, pod_name: str, owner_name: str
) -> bool:
    if not owner_name:
        return False
    return await gateway.vm_exists(namespace, owner_name)


IDENTITY_CHECKS: dict[OwnerKind, IdentityCheck] = {
    OwnerKind.STATEFULSET: _check_statefulset,
    OwnerKind.KUBEVIRT_VMI: _check_kubevirt_vmi,
}


class StaticIdentityPolicy:
    """Decides whether an absent or terminating Pod is only being recreated."""

    def __init__(
        self,
        gateway: ClusterResourceGateway,
        enable_statefulset: bool = True,
        enable_kubevirt: bool = True,
    ):
        self.gateway = gateway
        self.enabled = {
            OwnerKind.STATEFULSET: enable_statefulset,
            OwnerKind.KUBEVIRT_VMI: enable_kubevirt,
        }

    def handles(self, kind: OwnerKind) -> bool:
        return self.enabled.get(kind, False) and kind in IDENTITY_CHECKS

    async def is_pending_recreation(
        self, kind: OwnerKind, namespace: str, pod_name: str, owner_name: str = ""
    ) -> bool:
        """
        Whether the identity is expected to come back with the same IPs.

        Args:
            kind: Owner controller kind
            namespace: Pod namespace
            pod_name: Pod name
            owner_name: Owner controller name

        Returns:
            True if the IPs must be kept
        """
        if not self.handles(kind):
            return False
        return await IDENTITY_CHECKS[kind](self.gateway, namespace, pod_name, owner_name)
