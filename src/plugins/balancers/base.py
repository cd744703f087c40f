"""
Balancer Plugin Base - Abstract interface for load balancer membership.

Balancer plugins are thin adapters over a cloud provider's load balancer
API. They list, register, and deregister backend instances for one pool.
"""

from abc import ABC, abstractmethod
from typing import AbstractSet, Any, Dict, FrozenSet


class MembershipClient(ABC):
    """
    Abstract base class for balancer plugins.

    Register and deregister must be idempotent: registering an already
    registered instance, or deregistering an absent one, succeeds as a
    no-op. Concurrent reconciliation passes rely on this.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this plugin (e.g., 'aws_elb')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Plugin version string."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the plugin with configuration.

        Args:
            config: Plugin-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def list_members(self, pool_id: str) -> FrozenSet[str]:
        """
        List instance ids currently registered with a pool.

        Raises:
            ProviderUnavailable: If the provider cannot be reached
            PoolNotFound: If the pool does not exist
        """
        pass

    @abstractmethod
    async def register_instances(
        self, pool_id: str, instance_ids: AbstractSet[str]
    ) -> FrozenSet[str]:
        """
        Register instances with a pool.

        Args:
            pool_id: The backend pool identifier
            instance_ids: Instance ids to register

        Returns:
            The instance ids the provider rejected. Empty on full success.

        Raises:
            ProviderUnavailable: If the provider cannot be reached
            InvalidInstance: If ids were rejected and the client cannot tell
                which ones
        """
        pass

    @abstractmethod
    async def deregister_instances(
        self, pool_id: str, instance_ids: AbstractSet[str]
    ) -> None:
        """
        Deregister instances from a pool. Absent ids are a no-op.

        Raises:
            ProviderUnavailable: If the provider cannot be reached
        """
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load plugin-specific configuration from environment variables.

        Returns:
            Dictionary of configuration values for this plugin.
        """
        return {}
