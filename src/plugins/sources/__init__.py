"""Machine record source plugins."""

from plugins.sources.base import MachineSource

__all__ = ["MachineSource"]
