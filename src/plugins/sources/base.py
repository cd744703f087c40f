"""
Source Plugin Base - Abstract interface for machine record sources.

Source plugins read the current set of machine objects for a scope and
decode them into MachineRecord snapshots. Provider-specific payloads are
decoded here, so the reconciler only ever sees clean records.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List

from machines import MachineRecord


class MachineSource(ABC):
    """
    Abstract base class for machine source plugins.

    Implementations must return a complete snapshot or raise
    SourceUnavailable; partial snapshots are never returned.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this plugin (e.g., 'kubernetes')."""
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
    async def list_machines(self, scope_key: str) -> List[MachineRecord]:
        """
        List all machines in a scope.

        Args:
            scope_key: Grouping key for the machines (e.g. a namespace)

        Returns:
            The complete list of machine records in the scope

        Raises:
            SourceUnavailable: On transport, auth, or decode failures
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
