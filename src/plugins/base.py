"""
Core plugin types and exceptions.

This module contains the errors shared across the plugin system. Source
plugins raise SourceUnavailable; balancer plugins raise ProviderError
subclasses. The reconciler classifies them into result kinds.
"""

import logging
from typing import FrozenSet, Iterable, Optional

logger = logging.getLogger(__name__)


class PluginError(Exception):
    """Base class for errors raised by plugins."""


class SourceUnavailable(PluginError):
    """The machine record source could not return a complete snapshot."""


class ProviderError(PluginError):
    """Base class for load balancer provider errors."""


class ProviderUnavailable(ProviderError):
    """The provider API was unreachable, throttled, or returned an error."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class PoolNotFound(ProviderError):
    """The configured backend pool does not exist on the provider."""

    def __init__(self, pool_id: str):
        super().__init__(f"Backend pool not found: {pool_id}")
        self.pool_id = pool_id


class InvalidInstance(ProviderError):
    """
    The provider rejected instance identifiers as unregisterable.

    Raised by clients that cannot tell which ids of a batch were rejected,
    in which case instance_ids is the whole batch.
    """

    def __init__(self, instance_ids: Iterable[str], message: str = ""):
        self.instance_ids: FrozenSet[str] = frozenset(instance_ids)
        super().__init__(
            message or f"Invalid instances: {', '.join(sorted(self.instance_ids))}"
        )
