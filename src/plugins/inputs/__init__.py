"""Trigger input plugins."""

from plugins.inputs.base import InputPlugin, TriggerCallback

__all__ = ["InputPlugin", "TriggerCallback"]
