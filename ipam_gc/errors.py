"""Exceptions raised by the IP garbage collection engine."""

from kubernetes.client.exceptions import ApiException


class IPAMGCError(Exception):
    """Base class for all engine errors."""


class NotFoundError(IPAMGCError):
    """A cluster resource expected to exist is gone."""

    def __init__(self, kind: str, name: str, namespace: str | None = None):
        self.kind = kind
        self.name = name
        self.namespace = namespace
        key = f"{namespace}/{name}" if namespace else name
        super().__init__(f"{kind} '{key}' not found")


class GatewayError(IPAMGCError):
    """A cluster API call failed for a reason other than NotFound."""

    def __init__(self, message: str, status: int | None = None):
        self.status = status
        super().__init__(message)


class PodEntryNotFoundError(IPAMGCError):
    """No liveness entry is tracked for the Pod."""


class PodEntryExistsError(IPAMGCError):
    """A liveness entry is already tracked for the Pod."""


class StoreCapacityError(IPAMGCError):
    """The liveness store holds its maximum number of entries."""


class InvalidTransitionError(IPAMGCError):
    """A tracing state transition would regress the entry."""


class PodEntryBuildError(IPAMGCError):
    """The Pod does not carry enough information to compute a deadline."""


class LeadershipLostError(IPAMGCError):
    """This replica stopped being the leader while mutating."""


def translate_api_exception(
    exc: ApiException, kind: str, name: str, namespace: str | None = None
) -> IPAMGCError:
    """
    Map a Kubernetes ApiException onto the engine's error taxonomy.

    Args:
        exc: Exception raised by the kubernetes client
        kind: Resource kind, used in messages
        name: Resource name
        namespace: Resource namespace, None for cluster scoped resources

    Returns:
        NotFoundError for HTTP 404, GatewayError otherwise
    """
    if exc.status == 404:
        return NotFoundError(kind, name, namespace)
    key = f"{namespace}/{name}" if namespace else name
    return GatewayError(f"{kind} '{key}': {exc.status} {exc.reason}", status=exc.status)
