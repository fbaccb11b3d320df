"""Unit tests for config.py - Configuration management."""

import os
from unittest.mock import patch

import config
from config import (
    APIConfig,
    Config,
    ControllerConfig,
    KubernetesConfig,
    get_config,
    load_config,
    reset_config,
)
from retry import RetryBackoff


class TestKubernetesConfig:
    """Tests for KubernetesConfig class."""

    def test_default_values(self):
        """Test default configuration values."""
        cfg = KubernetesConfig()
        assert cfg.in_cluster is True
        assert cfg.kubeconfig is None
        assert cfg.group == "opensearch.opster.io"
        assert cfg.version == "v1"
        assert cfg.plural == "opensearchclusters"
        assert cfg.kind == "OpenSearchCluster"
        assert cfg.namespace == ""

    def test_api_version(self):
        assert KubernetesConfig().api_version == "opensearch.opster.io/v1"

    def test_from_env(self):
        """Test loading configuration from environment variables."""
        env_vars = {
            "K8S_IN_CLUSTER": "false",
            "KUBECONFIG": "/home/ops/.kube/config",
            "CRD_GROUP": "search.example.com",
            "CRD_VERSION": "v2",
            "CRD_PLURAL": "searchclusters",
            "CRD_KIND": "SearchCluster",
            "WATCH_NAMESPACE": "search",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = KubernetesConfig.from_env()
            assert cfg.in_cluster is False
            assert cfg.kubeconfig == "/home/ops/.kube/config"
            assert cfg.api_version == "search.example.com/v2"
            assert cfg.plural == "searchclusters"
            assert cfg.kind == "SearchCluster"
            assert cfg.namespace == "search"

    def test_from_env_defaults(self):
        """Test that defaults are used when env vars not set."""
        with patch.dict(os.environ, {}, clear=True):
            cfg = KubernetesConfig.from_env()
            assert cfg.in_cluster is True
            assert cfg.kubeconfig is None
            assert cfg.namespace == ""


class TestControllerConfig:
    """Tests for ControllerConfig class."""

    def test_default_values(self):
        """Test default configuration values."""
        cfg = ControllerConfig()
        assert cfg.resync_interval == 300
        assert cfg.max_concurrent_reconciles == 1
        assert cfg.requeue_after == 30
        assert cfg.backoff_base_delay == 1
        assert cfg.backoff_max_delay == 300
        assert cfg.backoff_jitter_factor == 0.1
        assert cfg.conflict_retry_steps == 5
        assert cfg.watch_enabled is True
        assert cfg.watch_timeout == 30

    def test_conflict_backoff(self):
        cfg = ControllerConfig(conflict_retry_steps=3, conflict_retry_duration=0.5)
        assert cfg.conflict_backoff == RetryBackoff(
            steps=3, duration=0.5, factor=1.0, jitter=0.1
        )

    def test_from_env(self):
        """Test loading configuration from environment variables."""
        env_vars = {
            "RESYNC_INTERVAL": "600",
            "MAX_CONCURRENT_RECONCILES": "4",
            "REQUEUE_AFTER": "45",
            "BACKOFF_BASE_DELAY": "2",
            "BACKOFF_MAX_DELAY": "120",
            "BACKOFF_JITTER_FACTOR": "0.2",
            "CONFLICT_RETRY_STEPS": "8",
            "CONFLICT_RETRY_DURATION": "0.05",
            "CONFLICT_RETRY_FACTOR": "2",
            "CONFLICT_RETRY_JITTER": "0",
            "WATCH_ENABLED": "False",
            "WATCH_TIMEOUT": "60",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = ControllerConfig.from_env()
            assert cfg.resync_interval == 600
            assert cfg.max_concurrent_reconciles == 4
            assert cfg.requeue_after == 45
            assert cfg.backoff_base_delay == 2
            assert cfg.backoff_max_delay == 120
            assert cfg.backoff_jitter_factor == 0.2
            assert cfg.conflict_retry_steps == 8
            assert cfg.conflict_retry_duration == 0.05
            assert cfg.conflict_retry_factor == 2
            assert cfg.conflict_retry_jitter == 0
            assert cfg.watch_enabled is False
            assert cfg.watch_timeout == 60

    def test_from_env_defaults(self):
        """Test that defaults are used when env vars not set."""
        with patch.dict(os.environ, {}, clear=True):
            cfg = ControllerConfig.from_env()
            assert cfg == ControllerConfig()


class TestAPIConfig:
    """Tests for APIConfig class."""

    def test_default_values(self):
        cfg = APIConfig()
        assert cfg.host == "0.0.0.0"
        assert cfg.port == 8080
        assert cfg.log_level == "INFO"

    def test_from_env(self):
        """Test loading configuration from environment variables."""
        env_vars = {
            "API_HOST": "127.0.0.1",
            "API_PORT": "9090",
            "LOG_LEVEL": "DEBUG",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = APIConfig.from_env()
            assert cfg.host == "127.0.0.1"
            assert cfg.port == 9090
            assert cfg.log_level == "DEBUG"


class TestConfig:
    """Tests for main Config class."""

    def test_default(self):
        cfg = Config.default()
        assert isinstance(cfg.kubernetes, KubernetesConfig)
        assert isinstance(cfg.controller, ControllerConfig)
        assert isinstance(cfg.api, APIConfig)

    def test_from_env(self):
        """Test loading full configuration from environment."""
        env_vars = {
            "WATCH_NAMESPACE": "search",
            "REQUEUE_AFTER": "60",
            "API_PORT": "9000",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = Config.from_env()
            assert cfg.kubernetes.namespace == "search"
            assert cfg.controller.requeue_after == 60
            assert cfg.api.port == 9000


class TestConfigSingleton:
    """Tests for config singleton functions."""

    def setup_method(self):
        reset_config()

    def teardown_method(self):
        reset_config()

    def test_get_config_loads_if_none(self):
        cfg = get_config()
        assert isinstance(cfg, Config)

    def test_singleton_returns_same_instance(self):
        cfg1 = load_config()
        cfg2 = get_config()
        assert cfg1 is cfg2

    def test_reset_config(self):
        """Test reset_config clears the singleton."""
        cfg1 = load_config()
        reset_config()
        assert config.config is None
        cfg2 = load_config()
        # After reset, should be a new instance
        assert cfg1 is not cfg2
