"""IPAM IP garbage collection engine - reclaims IPs leaked by Pod lifecycles."""

from .cluster import ClusterConnection
from .config import Settings, get_settings
from .context import EngineContext
from .election import LeaderGate, LeaseLeaderElector, StaticLeaderGate
from .engine import GCEngine
from .errors import (
    GatewayError,
    InvalidTransitionError,
    IPAMGCError,
    LeadershipLostError,
    NotFoundError,
    PodEntryBuildError,
    PodEntryExistsError,
    PodEntryNotFoundError,
    StoreCapacityError,
)
from .executor import ReleaseExecutorPool, ReleaseStats
from .gateway import ClusterResourceGateway, KubernetesGateway
from .models import (
    HistoricalIP,
    IPAllocation,
    IPPool,
    PodPhase,
    PodSnapshot,
    ReleaseRequest,
    TracingReason,
    WorkloadEndpoint,
)
from .podentry import PodEntryBuilder
from .store import PodEntry, PodLivenessStore, TracingPlan, TracingState
from .sweeper import ClusterSweeper, SweepReport
from .tracer import Tracer
from .watcher import PodEvent, PodEventWatcher
from .workloads import OwnerKind, StaticIdentityPolicy

__version__ = "0.1.0"

__all__ = [
    # Engine
    "GCEngine",
    "EngineContext",
    "Settings",
    "get_settings",
    # Components
    "PodLivenessStore",
    "PodEntryBuilder",
    "PodEventWatcher",
    "Tracer",
    "ClusterSweeper",
    "ReleaseExecutorPool",
    "StaticIdentityPolicy",
    # Cluster access
    "ClusterConnection",
    "ClusterResourceGateway",
    "KubernetesGateway",
    # Leader election
    "LeaderGate",
    "LeaseLeaderElector",
    "StaticLeaderGate",
    # Models
    "PodEntry",
    "PodEvent",
    "TracingPlan",
    "TracingState",
    "TracingReason",
    "PodPhase",
    "PodSnapshot",
    "IPPool",
    "IPAllocation",
    "WorkloadEndpoint",
    "HistoricalIP",
    "ReleaseRequest",
    "ReleaseStats",
    "SweepReport",
    "OwnerKind",
    # Errors
    "IPAMGCError",
    "NotFoundError",
    "GatewayError",
    "PodEntryNotFoundError",
    "PodEntryExistsError",
    "StoreCapacityError",
    "InvalidTransitionError",
    "PodEntryBuildError",
    "LeadershipLostError",
]
