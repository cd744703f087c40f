"""Load balancer membership plugins."""

from plugins.balancers.base import MembershipClient

__all__ = ["MembershipClient"]
