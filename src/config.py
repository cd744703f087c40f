"""
Configuration module for the membership operator.

Loads configuration from environment variables. A missing pool id is not
a load-time error; the reconciler reports it as a fatal result so that the
operator stays up and visible while it waits for configuration.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

SERVICE_ACCOUNT_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"


@dataclass
class KubernetesConfig:
    """Machine API connection configuration."""

    api_server: str = "https://kubernetes.default.svc"
    token_file: str = f"{SERVICE_ACCOUNT_DIR}/token"
    ca_file: str = f"{SERVICE_ACCOUNT_DIR}/ca.crt"
    namespace: str = "openshift-machine-api"
    api_group_version: str = "machine.openshift.io/v1beta1"
    role_label: str = "machine.openshift.io/cluster-api-machine-type"
    page_size: int = 500
    request_timeout: int = 30  # seconds

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            api_server=os.getenv("KUBE_API_SERVER", "https://kubernetes.default.svc"),
            token_file=os.getenv("KUBE_TOKEN_FILE", f"{SERVICE_ACCOUNT_DIR}/token"),
            ca_file=os.getenv("KUBE_CA_FILE", f"{SERVICE_ACCOUNT_DIR}/ca.crt"),
            namespace=os.getenv("MACHINE_NAMESPACE", "openshift-machine-api"),
            api_group_version=os.getenv(
                "MACHINE_API_GROUP_VERSION", "machine.openshift.io/v1beta1"
            ),
            role_label=os.getenv(
                "MACHINE_ROLE_LABEL", "machine.openshift.io/cluster-api-machine-type"
            ),
            page_size=int(os.getenv("KUBE_PAGE_SIZE", "500")),
            request_timeout=int(os.getenv("KUBE_REQUEST_TIMEOUT", "30")),
        )


@dataclass
class LoadBalancerConfig:
    """Load balancer provider configuration."""

    provider: str = "aws_elb"
    pool_id: str = ""
    region: str = ""
    connect_timeout: int = 5  # seconds
    read_timeout: int = 20  # seconds
    max_attempts: int = 3

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            provider=os.getenv("LB_PROVIDER", "aws_elb"),
            pool_id=os.getenv("LB_POOL_ID", "").strip(),
            region=os.getenv("AWS_REGION", ""),
            connect_timeout=int(os.getenv("LB_CONNECT_TIMEOUT", "5")),
            read_timeout=int(os.getenv("LB_READ_TIMEOUT", "20")),
            max_attempts=int(os.getenv("LB_MAX_ATTEMPTS", "3")),
        )


@dataclass
class ControllerConfig:
    """Reconciliation loop configuration."""

    control_plane_label: str = "master"
    resync_interval: int = 60  # seconds
    max_concurrent_reconciles: int = 2
    call_timeout: float = 30  # per external call, seconds
    pass_timeout: float = 120  # whole pass, seconds
    missing_instance_grace: float = 600  # seconds

    # Exponential backoff configuration
    backoff_base_delay: float = 5  # base delay in seconds
    backoff_max_delay: float = 300  # max delay in seconds (5 minutes)
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            control_plane_label=os.getenv("CONTROL_PLANE_LABEL", "master"),
            resync_interval=int(os.getenv("RESYNC_INTERVAL", "60")),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "2")),
            call_timeout=float(os.getenv("CALL_TIMEOUT", "30")),
            pass_timeout=float(os.getenv("PASS_TIMEOUT", "120")),
            missing_instance_grace=float(os.getenv("MISSING_INSTANCE_GRACE", "600")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "5")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "300")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class APIConfig:
    """API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@dataclass
class PluginConfig:
    """Plugin system configuration."""

    # List of enabled input plugin names (empty = use all registered plugins)
    enabled_input_plugins: List[str] = field(default_factory=list)

    # Plugin-specific configurations keyed by plugin name
    plugin_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        enabled_inputs_str = os.getenv("ENABLED_INPUT_PLUGINS", "")
        enabled_inputs = [p.strip() for p in enabled_inputs_str.split(",") if p.strip()]

        # Load plugin configs from JSON environment variable
        plugin_configs = {}
        if os.getenv("PLUGIN_CONFIGS"):
            try:
                plugin_configs = json.loads(os.getenv("PLUGIN_CONFIGS"))
            except json.JSONDecodeError as e:
                raise ValueError(f"PLUGIN_CONFIGS is not valid JSON: {e}") from e

        return cls(
            enabled_input_plugins=enabled_inputs,
            plugin_configs=plugin_configs,
        )

    def get_plugin_config(self, plugin_name: str) -> Dict[str, Any]:
        """Get configuration for a specific plugin."""
        return self.plugin_configs.get(plugin_name, {})


@dataclass
class Config:
    """Main configuration object."""

    kubernetes: KubernetesConfig
    load_balancer: LoadBalancerConfig
    controller: ControllerConfig
    api: APIConfig
    plugins: PluginConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            kubernetes=KubernetesConfig.from_env(),
            load_balancer=LoadBalancerConfig.from_env(),
            controller=ControllerConfig.from_env(),
            api=APIConfig.from_env(),
            plugins=PluginConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            kubernetes=KubernetesConfig(),
            load_balancer=LoadBalancerConfig(),
            controller=ControllerConfig(),
            api=APIConfig(),
            plugins=PluginConfig(),
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
