"""
Classic ELB Balancer Plugin - MembershipClient for AWS Classic Load Balancers.

The pool id is the load balancer name.
"""

import logging
from typing import FrozenSet, List

from plugins.balancers.aws._common import BotoMembershipClient
from plugins.base import PoolNotFound

logger = logging.getLogger(__name__)


class ClassicELBMembershipClient(BotoMembershipClient):
    """Registers EC2 instances with a classic Elastic Load Balancer."""

    service_name = "elb"
    not_found_codes = frozenset({"LoadBalancerNotFound", "AccessPointNotFound"})
    invalid_codes = frozenset({"InvalidInstance"})

    @property
    def name(self) -> str:
        return "aws_elb"

    async def _describe(self, pool_id: str) -> FrozenSet[str]:
        response = await self._call(
            "describe_load_balancers", LoadBalancerNames=[pool_id]
        )
        descriptions = response.get("LoadBalancerDescriptions", [])
        if not descriptions:
            raise PoolNotFound(pool_id)
        return frozenset(
            instance["InstanceId"] for instance in descriptions[0].get("Instances", [])
        )

    async def _register(self, pool_id: str, instance_ids: List[str]) -> None:
        await self._call(
            "register_instances_with_load_balancer",
            LoadBalancerName=pool_id,
            Instances=[{"InstanceId": i} for i in instance_ids],
        )

    async def _deregister(self, pool_id: str, instance_ids: List[str]) -> None:
        await self._call(
            "deregister_instances_from_load_balancer",
            LoadBalancerName=pool_id,
            Instances=[{"InstanceId": i} for i in instance_ids],
        )
