"""Configuration management for the IP garbage collection engine."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="IPAM_GC_",
        case_sensitive=False,
        extra="ignore",
    )

    # Service Settings
    service_name: str = "ipam-gc"
    version: str = "0.1.0"
    log_level: str = "INFO"

    # Kubernetes Settings
    kubeconfig_path: Optional[str] = Field(
        default=None,
        description="Path to kubeconfig file, in-cluster config when unset",
    )
    kube_context: Optional[str] = None

    # Feature Gates
    enable_gc_ip: bool = True
    enable_statefulset: bool = True
    enable_kubevirt_static_ip: bool = True
    gc_terminating_pod_on_ready_node: bool = True
    gc_terminating_pod_on_not_ready_node: bool = True

    # Worker and Queue Settings
    release_ip_worker_num: int = Field(default=3, ge=1)
    release_queue_size: int = Field(default=5000, ge=1)
    pod_event_queue_size: int = Field(default=1024, ge=1)
    max_pod_entry_capacity: int = Field(default=100000, ge=1)

    # Timing Settings (seconds)
    default_gc_interval_seconds: float = Field(default=600, gt=0)
    trace_pod_gap_seconds: float = Field(default=5, gt=0)
    gc_signal_timeout_seconds: float = Field(default=3, gt=0)
    gc_signal_gap_seconds: float = Field(default=1, ge=0)
    additional_grace_delay_seconds: float = Field(
        default=0,
        ge=0,
        description="Extra delay before Succeeded/Failed or deleted Pods are released",
    )
    watch_retry_seconds: float = Field(default=5, gt=0)
    watch_timeout_seconds: int = Field(
        default=60,
        gt=0,
        description="Server side timeout of one pod watch stream, bounds shutdown time",
    )

    # Reconcile Settings
    reconcile_max_retries: int = Field(default=3, ge=0)
    reconcile_retry_delay_seconds: float = Field(default=1, ge=0)

    # Optimistic concurrency on IPPool / WEP writes
    max_conflict_retries: int = Field(default=3, ge=0)
    conflict_retry_unit_seconds: float = Field(default=0.1, ge=0)

    # Leader Election Settings
    leader_election_enabled: bool = True
    lease_name: str = "ipam-gc-leader"
    lease_namespace: str = "kube-system"
    lease_duration_seconds: float = Field(default=15, gt=0)
    lease_renew_deadline_seconds: float = Field(default=10, gt=0)
    lease_retry_period_seconds: float = Field(default=2, gt=0)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
