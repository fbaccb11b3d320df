"""
Configuration module for the OpenSearch cluster operator.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass
from typing import Optional

from retry import RetryBackoff


@dataclass
class KubernetesConfig:
    """Kubernetes API access and watched custom resource."""

    in_cluster: bool = True
    kubeconfig: Optional[str] = None
    group: str = "opensearch.opster.io"
    version: str = "v1"
    plural: str = "opensearchclusters"
    kind: str = "OpenSearchCluster"
    namespace: str = ""  # empty = all namespaces

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            in_cluster=os.getenv("K8S_IN_CLUSTER", "true").lower() == "true",
            kubeconfig=os.getenv("KUBECONFIG") or None,
            group=os.getenv("CRD_GROUP", "opensearch.opster.io"),
            version=os.getenv("CRD_VERSION", "v1"),
            plural=os.getenv("CRD_PLURAL", "opensearchclusters"),
            kind=os.getenv("CRD_KIND", "OpenSearchCluster"),
            namespace=os.getenv("WATCH_NAMESPACE", ""),
        )


@dataclass
class ControllerConfig:
    """Reconciliation scheduling configuration."""

    resync_interval: int = 300  # seconds between full re-lists
    max_concurrent_reconciles: int = 1
    requeue_after: float = 30  # steady-state periodic re-sync in seconds

    # Change notifications for clusters and their owned children
    watch_enabled: bool = True
    watch_timeout: int = 30  # seconds before a watch stream is restarted

    # Exponential backoff for failed reconciliations
    backoff_base_delay: float = 1  # base delay in seconds
    backoff_max_delay: float = 300  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    # Optimistic concurrency retries for status and finalizer writes
    conflict_retry_steps: int = 5
    conflict_retry_duration: float = 0.01  # seconds
    conflict_retry_factor: float = 1.0
    conflict_retry_jitter: float = 0.1

    @property
    def conflict_backoff(self) -> RetryBackoff:
        return RetryBackoff(
            steps=self.conflict_retry_steps,
            duration=self.conflict_retry_duration,
            factor=self.conflict_retry_factor,
            jitter=self.conflict_retry_jitter,
        )

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            resync_interval=int(os.getenv("RESYNC_INTERVAL", "300")),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "1")),
            requeue_after=float(os.getenv("REQUEUE_AFTER", "30")),
            watch_enabled=os.getenv("WATCH_ENABLED", "true").lower() == "true",
            watch_timeout=int(os.getenv("WATCH_TIMEOUT", "30")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "1")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "300")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
            conflict_retry_steps=int(os.getenv("CONFLICT_RETRY_STEPS", "5")),
            conflict_retry_duration=float(
                os.getenv("CONFLICT_RETRY_DURATION", "0.01")
            ),
            conflict_retry_factor=float(os.getenv("CONFLICT_RETRY_FACTOR", "1.0")),
            conflict_retry_jitter=float(os.getenv("CONFLICT_RETRY_JITTER", "0.1")),
        )


@dataclass
class APIConfig:
    """Health and observation API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8080")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class Config:
    """Main configuration object."""

    kubernetes: KubernetesConfig
    controller: ControllerConfig
    api: APIConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            kubernetes=KubernetesConfig.from_env(),
            controller=ControllerConfig.from_env(),
            api=APIConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            kubernetes=KubernetesConfig(),
            controller=ControllerConfig(),
            api=APIConfig(),
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
