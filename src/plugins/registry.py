"""
Plugin Registry - Discovery and registration of plugins.

This module provides the central registry for all plugins, handling
discovery, registration, and instantiation.
"""

from importlib.metadata import entry_points
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from plugins.balancers.base import MembershipClient
from plugins.base import logger
from plugins.inputs.base import InputPlugin
from plugins.sources.base import MachineSource

# Entry point groups for externally installed plugins
SOURCE_ENTRY_POINT_GROUP = "lb_membership.sources"
BALANCER_ENTRY_POINT_GROUP = "lb_membership.balancers"

P = TypeVar("P")


class _PluginKind(Generic[P]):
    """Registered classes, cached metadata, configs and instances of one kind."""

    def __init__(self, label: str):
        self.label = label
        # Registered plugin classes (not instantiated)
        self.classes: Dict[str, Type[P]] = {}
        # Cached plugin metadata (name, version) to avoid repeated instantiation
        self.info: Dict[str, Dict[str, str]] = {}
        # Plugin configurations loaded from environment
        self.configs: Dict[str, Dict[str, Any]] = {}
        # Instantiated and initialized plugin instances
        self.instances: Dict[str, P] = {}

    def register(self, plugin_class: Type[P]) -> None:
        # Create temporary instance to get name/version (only once at registration)
        temp_instance = plugin_class()
        name = temp_instance.name
        version = temp_instance.version

        if name in self.classes:
            logger.warning(f"Overwriting existing {self.label} plugin: {name}")

        self.classes[name] = plugin_class
        self.info[name] = {"name": name, "version": version}
        self.configs[name] = plugin_class.load_config_from_env()
        logger.info(f"Registered {self.label} plugin: {name} v{version}")

    async def get(self, name: str, config: Optional[Dict[str, Any]] = None) -> P:
        if name not in self.classes:
            available = ", ".join(self.classes.keys()) or "none"
            raise ValueError(
                f"Unknown {self.label} plugin: {name}. Available plugins: {available}"
            )

        if name not in self.instances:
            plugin = self.classes[name]()
            await plugin.initialize(config or {})
            self.instances[name] = plugin
            logger.info(f"Initialized {self.label} plugin: {name}")

        return self.instances[name]


class PluginRegistry:
    """
    Central registry for all plugins.

    Handles discovery, registration, and instantiation of machine source,
    balancer, and input plugins.
    """

    def __init__(self):
        self._sources: _PluginKind[MachineSource] = _PluginKind("source")
        self._balancers: _PluginKind[MembershipClient] = _PluginKind("balancer")
        self._inputs: _PluginKind[InputPlugin] = _PluginKind("input")

    # Registration methods

    def register_source_plugin(self, plugin_class: Type[MachineSource]) -> None:
        """
        Register a machine source plugin class.

        Args:
            plugin_class: The MachineSource subclass to register
        """
        self._sources.register(plugin_class)

    def register_balancer_plugin(self, plugin_class: Type[MembershipClient]) -> None:
        """
        Register a balancer plugin class.

        Args:
            plugin_class: The MembershipClient subclass to register
        """
        self._balancers.register(plugin_class)

    def register_input_plugin(self, plugin_class: Type[InputPlugin]) -> None:
        """
        Register an input plugin class.

        Args:
            plugin_class: The InputPlugin subclass to register
        """
        self._inputs.register(plugin_class)

    # Instantiation methods

    async def get_source_plugin(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> MachineSource:
        """
        Get an initialized machine source plugin instance.

        Args:
            name: The plugin name to retrieve
            config: Optional configuration to pass to initialize()

        Returns:
            An initialized MachineSource instance

        Raises:
            ValueError: If the plugin name is not registered
        """
        return await self._sources.get(name, config)

    async def get_balancer_plugin(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> MembershipClient:
        """
        Get an initialized balancer plugin instance.

        Raises:
            ValueError: If the plugin name is not registered
        """
        return await self._balancers.get(name, config)

    async def get_input_plugin(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> InputPlugin:
        """
        Get an initialized input plugin instance.

        Raises:
            ValueError: If the plugin name is not registered
        """
        return await self._inputs.get(name, config)

    # Discovery methods

    def list_source_plugins(self) -> List[str]:
        """List all registered source plugin names."""
        return list(self._sources.classes.keys())

    def list_balancer_plugins(self) -> List[str]:
        """List all registered balancer plugin names."""
        return list(self._balancers.classes.keys())

    def list_input_plugins(self) -> List[str]:
        """List all registered input plugin names."""
        return list(self._inputs.classes.keys())

    def has_source_plugin(self, name: str) -> bool:
        return name in self._sources.classes

    def has_balancer_plugin(self, name: str) -> bool:
        return name in self._balancers.classes

    def has_input_plugin(self, name: str) -> bool:
        """Check if an input plugin is registered."""
        return name in self._inputs.classes

    def get_source_plugin_info(self, name: str) -> Optional[Dict[str, str]]:
        """
        Get information about a registered source plugin.

        Returns:
            Dictionary with 'name' and 'version', or None if not found
        """
        return self._sources.info.get(name)

    def get_balancer_plugin_info(self, name: str) -> Optional[Dict[str, str]]:
        return self._balancers.info.get(name)

    def get_input_plugin_info(self, name: str) -> Optional[Dict[str, str]]:
        return self._inputs.info.get(name)

    def get_source_plugin_config(self, name: str) -> Dict[str, Any]:
        """
        Get configuration for a source plugin.

        Returns:
            Dictionary of configuration values, or empty dict if not found
        """
        return dict(self._sources.configs.get(name, {}))

    def get_balancer_plugin_config(self, name: str) -> Dict[str, Any]:
        return dict(self._balancers.configs.get(name, {}))

    def get_input_plugin_config(self, name: str) -> Dict[str, Any]:
        return dict(self._inputs.configs.get(name, {}))


# Global registry instance
_registry: Optional[PluginRegistry] = None


def get_registry() -> PluginRegistry:
    """Get the global plugin registry singleton."""
    global _registry
    if _registry is None:
        _registry = PluginRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_plugins() -> None:
    """
    Register all built-in plugins and discover external source and
    balancer plugins via entry points.

    This function is called during application startup.
    """
    from plugins.balancers.aws import (
        ClassicELBMembershipClient,
        TargetGroupMembershipClient,
    )
    from plugins.inputs.http import HTTPInputPlugin
    from plugins.sources.kubernetes import KubernetesMachineSource

    registry = get_registry()

    registry.register_source_plugin(KubernetesMachineSource)
    registry.register_balancer_plugin(ClassicELBMembershipClient)
    registry.register_balancer_plugin(TargetGroupMembershipClient)
    registry.register_input_plugin(HTTPInputPlugin)

    for ep in entry_points(group=SOURCE_ENTRY_POINT_GROUP):
        try:
            registry.register_source_plugin(ep.load())
        except Exception as e:
            logger.warning(f"Could not load source plugin {ep.name}: {e}")

    for ep in entry_points(group=BALANCER_ENTRY_POINT_GROUP):
        try:
            registry.register_balancer_plugin(ep.load())
        except Exception as e:
            logger.warning(f"Could not load balancer plugin {ep.name}: {e}")
