"""
Input Plugin Base - Abstract interface for trigger sources.

Input plugins deliver reconciliation triggers to the controller:
- HTTP API: machine event webhooks and manual triggers
- Watch: Machine API watch streams
- Queue listener: cloud event queues (SQS, EventBridge, etc.)
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict

from reconciler import Trigger

# Callback for delivering a trigger to the controller
# (trigger: Trigger) -> accepted: bool
TriggerCallback = Callable[[Trigger], Awaitable[bool]]


class InputPlugin(ABC):
    """
    Abstract base class for input plugins.

    Input plugins receive machine events from external sources and turn
    them into triggers for the controller. Triggers never carry state;
    every pass recomputes from fresh reads.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this plugin (e.g., 'http')."""
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

        Called once when the plugin is loaded.

        Args:
            config: Plugin-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def start(self, on_trigger: TriggerCallback) -> None:
        """
        Start the input plugin.

        Args:
            on_trigger: Callback to invoke with each trigger. Returns whether
                        the controller accepted it.
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the input plugin gracefully."""
        pass

    @abstractmethod
    async def health_check(self) -> tuple[bool, str]:
        """
        Check if the input plugin is healthy.

        Returns:
            Tuple of (is_healthy, status_message).
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

    def set_controller(self, controller: Any) -> None:
        """
        Set the controller for plugins that report status or resume scopes.

        Args:
            controller: The Controller instance
        """
        pass

    def set_event_bus(self, event_bus: Any) -> None:
        """
        Set the event bus for plugins that stream events.

        Args:
            event_bus: The EventBus instance
        """
        pass
