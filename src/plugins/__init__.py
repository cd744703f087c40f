"""
Plugin system for the membership operator.

This package provides the plugin architecture for machine sources, load
balancer membership clients, and trigger inputs.
"""

from plugins.base import (
    InvalidInstance,
    PluginError,
    PoolNotFound,
    ProviderError,
    ProviderUnavailable,
    SourceUnavailable,
)

__all__ = [
    "PluginError",
    "SourceUnavailable",
    "ProviderError",
    "ProviderUnavailable",
    "PoolNotFound",
    "InvalidInstance",
]
