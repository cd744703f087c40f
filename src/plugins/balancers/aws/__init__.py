"""AWS load balancer membership plugins."""

from plugins.balancers.aws.classic import ClassicELBMembershipClient
from plugins.balancers.aws.target_group import TargetGroupMembershipClient

__all__ = ["ClassicELBMembershipClient", "TargetGroupMembershipClient"]
