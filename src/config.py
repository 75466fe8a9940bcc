"""
Configuration module for the Volume Replicator.

Loads configuration from environment variables. The CLI entry point may
override individual values before the configuration is validated.
"""

import os
import socket
from dataclasses import dataclass, field
from typing import Optional

# Annotation and label keys understood by the controller
VRC_VALUE_ANNOTATION = "replication.superphenix.net/class"
VRC_SELECTOR_ANNOTATION = "replication.superphenix.net/classSelector"
STORAGE_CLASS_GROUP_LABEL = "replication.superphenix.net/storageClassGroup"
PARENT_LABEL = "replication.superphenix.net/parent"
STORAGE_PROVISIONER_ANNOTATION = "volume.kubernetes.io/storage-provisioner"
DEPRECATED_STORAGE_PROVISIONER_ANNOTATION = (
    "volume.beta.kubernetes.io/storage-provisioner"
)
LOCK_NAME = "spx-volume-replicator-leader-election"


@dataclass
class KubernetesConfig:
    """Cluster connection configuration."""

    kubeconfig: str = ""  # empty = in-cluster configuration
    namespace: str = ""  # namespace the controller is deployed in

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            kubeconfig=os.getenv("KUBECONFIG", ""),
            namespace=os.getenv("NAMESPACE", ""),
        )


@dataclass
class ReplicationConfig:
    """Keys and filters that drive replication decisions."""

    exclusion_regex: str = ""
    value_annotation: str = VRC_VALUE_ANNOTATION
    selector_annotation: str = VRC_SELECTOR_ANNOTATION
    storage_class_group_label: str = STORAGE_CLASS_GROUP_LABEL
    provisioner_annotation: str = STORAGE_PROVISIONER_ANNOTATION
    deprecated_provisioner_annotation: str = DEPRECATED_STORAGE_PROVISIONER_ANNOTATION
    parent_label: str = PARENT_LABEL

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            exclusion_regex=os.getenv("EXCLUSION_REGEX", ""),
            value_annotation=os.getenv("VRC_VALUE_ANNOTATION", VRC_VALUE_ANNOTATION),
            selector_annotation=os.getenv(
                "VRC_SELECTOR_ANNOTATION", VRC_SELECTOR_ANNOTATION
            ),
            storage_class_group_label=os.getenv(
                "STORAGE_CLASS_GROUP_LABEL", STORAGE_CLASS_GROUP_LABEL
            ),
            provisioner_annotation=os.getenv(
                "STORAGE_PROVISIONER_ANNOTATION", STORAGE_PROVISIONER_ANNOTATION
            ),
            deprecated_provisioner_annotation=os.getenv(
                "DEPRECATED_STORAGE_PROVISIONER_ANNOTATION",
                DEPRECATED_STORAGE_PROVISIONER_ANNOTATION,
            ),
            parent_label=os.getenv("PARENT_LABEL", PARENT_LABEL),
        )


@dataclass
class ControllerConfig:
    """Work queue and worker configuration."""

    workers: int = 1
    resync_period: int = 1800  # seconds (30 minutes)

    # Per-key exponential backoff for failed reconciles
    backoff_base_delay: float = 0.5  # seconds
    backoff_max_delay: float = 300.0  # seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            workers=int(os.getenv("WORKERS", "1")),
            resync_period=int(os.getenv("RESYNC_PERIOD", "1800")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "0.5")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "300")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class LeaderElectionConfig:
    """Lease based leader election configuration."""

    lease_name: str = LOCK_NAME
    identity: str = field(default_factory=socket.gethostname)
    lease_duration: int = 15  # seconds
    renew_deadline: int = 10  # seconds
    retry_period: int = 2  # seconds

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            lease_name=os.getenv("LEASE_NAME", LOCK_NAME),
            identity=os.getenv("POD_NAME") or socket.gethostname(),
            lease_duration=int(os.getenv("LEASE_DURATION", "15")),
            renew_deadline=int(os.getenv("RENEW_DEADLINE", "10")),
            retry_period=int(os.getenv("RETRY_PERIOD", "2")),
        )


@dataclass
class APIConfig:
    """Health API server configuration."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            enabled=os.getenv("API_ENABLED", "true").lower() == "true",
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8080")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class Config:
    """Main configuration object."""

    kubernetes: KubernetesConfig
    replication: ReplicationConfig
    controller: ControllerConfig
    leader_election: LeaderElectionConfig
    api: APIConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            kubernetes=KubernetesConfig.from_env(),
            replication=ReplicationConfig.from_env(),
            controller=ControllerConfig.from_env(),
            leader_election=LeaderElectionConfig.from_env(),
            api=APIConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            kubernetes=KubernetesConfig(),
            replication=ReplicationConfig(),
            controller=ControllerConfig(),
            leader_election=LeaderElectionConfig(),
            api=APIConfig(),
        )

    def validate(self) -> None:
        """
        Check settings that cannot be defaulted.

        Raises:
            ValueError: If the namespace is missing or a numeric setting is
                out of range
        """
        if not self.kubernetes.namespace:
            raise ValueError(
                "must provide the namespace in which the controller is running "
                "through --namespace or the NAMESPACE environment variable"
            )
        if self.controller.workers < 1:
            raise ValueError("WORKERS must be at least 1")
        if self.controller.resync_period <= 0:
            raise ValueError("RESYNC_PERIOD must be positive")
        election = self.leader_election
        if not election.retry_period < election.renew_deadline < election.lease_duration:
            raise ValueError(
                "leader election requires RETRY_PERIOD < RENEW_DEADLINE "
                "< LEASE_DURATION"
            )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
