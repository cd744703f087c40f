"""
Target Group Balancer Plugin - MembershipClient for ELBv2 target groups.

The pool id is the target group ARN. Targets in the draining state are
on their way out and are not counted as members.
"""

import logging
from typing import FrozenSet, List

from plugins.balancers.aws._common import BotoMembershipClient, instance_targets

logger = logging.getLogger(__name__)

DRAINING = "draining"


class TargetGroupMembershipClient(BotoMembershipClient):
    """Registers EC2 instances as targets of an ELBv2 target group."""

    service_name = "elbv2"
    not_found_codes = frozenset({"TargetGroupNotFound"})
    invalid_codes = frozenset({"InvalidTarget"})

    @property
    def name(self) -> str:
        return "aws_target_group"

    async def _describe(self, pool_id: str) -> FrozenSet[str]:
        response = await self._call("describe_target_health", TargetGroupArn=pool_id)
        members = set()
        for description in response.get("TargetHealthDescriptions", []):
            state = description.get("TargetHealth", {}).get("State")
            if state == DRAINING:
                continue
            members.add(description["Target"]["Id"])
        return frozenset(members)

    async def _register(self, pool_id: str, instance_ids: List[str]) -> None:
        await self._call(
            "register_targets",
            TargetGroupArn=pool_id,
            Targets=instance_targets(instance_ids),
        )

    async def _deregister(self, pool_id: str, instance_ids: List[str]) -> None:
        await self._call(
            "deregister_targets",
            TargetGroupArn=pool_id,
            Targets=instance_targets(instance_ids),
        )
