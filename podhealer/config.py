"""
Pod Healer - Configuration
==========================

Settings are read once at startup from the environment (and an optional
.env file) and are immutable for the lifetime of the process.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings

from podhealer.constants import ActionMode, NotifierKind, DEFAULT_ROLLOUT_ANNOTATION


class Settings(BaseSettings):
    """Application settings."""

    service_name: str = Field(default="pod-healer")
    service_version: str = Field(default="0.1.0")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8006)
    debug: bool = Field(default=False)

    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True)

    # Kubernetes
    k8s_in_cluster: bool = Field(
        default=True,
        description="Use in-cluster config"
    )
    k8s_kubeconfig: str = Field(
        default="",
        description="Path to kubeconfig file"
    )
    k8s_request_timeout_seconds: float = Field(default=10.0, gt=0)

    # Selection
    watch_namespace: str = Field(
        default="",
        description="Namespace to scan, empty for all namespaces"
    )
    label_selector: str = Field(default="")
    excluded_namespaces: list[str] = Field(
        default_factory=lambda: ["kube-system"],
        description="Namespaces never remediated"
    )

    # Loop timing
    scan_interval_seconds: float = Field(default=30.0, gt=0)
    cycle_deadline_seconds: float = Field(
        default=25.0,
        gt=0,
        description="Upper bound on a single scan cycle"
    )

    # Heuristics
    restart_threshold: int = Field(default=5, ge=1)
    crashloop_reasons: list[str] = Field(default_factory=lambda: ["CrashLoopBackOff"])
    oom_reasons: list[str] = Field(default_factory=lambda: ["OOMKilled"])
    image_pull_reasons: list[str] = Field(
        default_factory=lambda: ["ImagePullBackOff", "ErrImagePull"]
    )
    image_pull_grace_seconds: float = Field(default=300.0, ge=0)
    not_ready_seconds: float = Field(default=600.0, ge=0)

    # Actions
    action_mode: ActionMode = Field(
        default=ActionMode.DELETE,
        description="delete the pod or roll out its owning controller"
    )
    rollout_annotation: str = Field(default=DEFAULT_ROLLOUT_ANNOTATION)
    grace_period_seconds: int = Field(default=30, ge=0)
    max_pods_per_action: int = Field(
        default=1,
        ge=1,
        description="Max pods of one workload deleted by a single action"
    )
    max_concurrent_actions: int = Field(default=10, ge=1)
    dry_run: bool = Field(
        default=False,
        description="If true, only log the actions that would be taken"
    )

    # Cooldown and circuit breaker
    cooldown_seconds: float = Field(default=300.0, ge=0)
    failure_threshold: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=60.0, gt=0)
    backoff_max_seconds: float = Field(default=3600.0, gt=0)
    stale_entry_cycles: int = Field(
        default=120,
        ge=1,
        description="Evict workload state unseen for this many cycles"
    )
    max_store_entries: int = Field(default=10000, ge=1)

    # Retry within a single action
    action_retry_attempts: int = Field(default=3, ge=1)
    action_retry_base_delay: float = Field(default=0.5, ge=0)
    action_retry_max_delay: float = Field(default=5.0, ge=0)

    history_size: int = Field(default=200, ge=1)

    # Notifications
    notifier: NotifierKind = Field(default=NotifierKind.NOOP)
    webhook_url: str = Field(default="")
    webhook_timeout_seconds: float = Field(default=5.0, gt=0)
    smtp_host: str = Field(default="")
    smtp_port: int = Field(default=587)
    smtp_username: str = Field(default="")
    smtp_password: Optional[SecretStr] = Field(default=None)
    smtp_use_tls: bool = Field(default=True)
    email_from: str = Field(default="pod-healer@localhost")
    email_to: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_consistency(self) -> "Settings":
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds")
        if self.cycle_deadline_seconds > self.scan_interval_seconds:
            raise ValueError("cycle_deadline_seconds must be <= scan_interval_seconds")
        if self.notifier == NotifierKind.WEBHOOK and not self.webhook_url:
            raise ValueError("webhook_url is required when notifier=webhook")
        if self.notifier == NotifierKind.EMAIL and (not self.smtp_host or not self.email_to):
            raise ValueError("smtp_host and email_to are required when notifier=email")
        return self

    class Config:
        env_prefix = ""
        case_sensitive = False
        env_file = ".env"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
