"""
Shared boto3 plumbing for the AWS balancer plugins.

boto3 is blocking, so every API call runs in a worker thread. ClientError
is left to the caller for code inspection; transport errors are mapped to
ProviderUnavailable here.
"""

import asyncio
import logging
from abc import abstractmethod
from dataclasses import asdict
from typing import AbstractSet, Any, Dict, FrozenSet, Iterable, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from config import LoadBalancerConfig
from plugins.balancers.base import MembershipClient
from plugins.base import PoolNotFound, ProviderError, ProviderUnavailable

logger = logging.getLogger(__name__)

THROTTLING_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "TooManyRequestsException",
    }
)
THROTTLE_RETRY_AFTER = 30.0  # seconds


def build_client(
    service_name: str,
    region: Optional[str] = None,
    connect_timeout: int = 5,
    read_timeout: int = 20,
    max_attempts: int = 3,
) -> Any:
    """Create a boto3 client with explicit timeouts and standard retries."""
    boto_config = BotoConfig(
        connect_timeout=connect_timeout,
        read_timeout=read_timeout,
        retries={"max_attempts": max_attempts, "mode": "standard"},
    )
    kwargs: Dict[str, Any] = {"config": boto_config}
    if region:
        kwargs["region_name"] = region
    return boto3.client(service_name, **kwargs)


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def to_provider_unavailable(error: Exception, operation: str) -> ProviderUnavailable:
    """Map a botocore error to ProviderUnavailable, with a hint when throttled."""
    if isinstance(error, ClientError):
        code = error_code(error)
        retry_after = THROTTLE_RETRY_AFTER if code in THROTTLING_CODES else None
        return ProviderUnavailable(
            f"{operation} failed: {code or error}", retry_after=retry_after
        )
    return ProviderUnavailable(f"{operation} failed: {error}")


class BotoMembershipClient(MembershipClient):
    """
    Base class for membership clients backed by a boto3 client.

    Subclasses supply the service name, the provider error codes that mean
    "pool missing" and "instance invalid", and the three raw API calls.
    Batch registration that is rejected for invalid instances is retried one
    id at a time to find out which ids were rejected.
    """

    service_name: str = ""
    not_found_codes: FrozenSet[str] = frozenset()
    invalid_codes: FrozenSet[str] = frozenset()

    def __init__(self, client: Any = None):
        self._client = client
        self.region: Optional[str] = None
        self.connect_timeout: int = 5
        self.read_timeout: int = 20
        self.max_attempts: int = 3

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load AWS client configuration from environment variables."""
        lb_config = asdict(LoadBalancerConfig.from_env())
        return {
            "region": lb_config["region"],
            "connect_timeout": lb_config["connect_timeout"],
            "read_timeout": lb_config["read_timeout"],
            "max_attempts": lb_config["max_attempts"],
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the plugin with configuration."""
        self.region = config.get("region") or self.region
        self.connect_timeout = int(config.get("connect_timeout", self.connect_timeout))
        self.read_timeout = int(config.get("read_timeout", self.read_timeout))
        self.max_attempts = int(config.get("max_attempts", self.max_attempts))

        if self._client is None:
            self._client = build_client(
                self.service_name,
                region=self.region,
                connect_timeout=self.connect_timeout,
                read_timeout=self.read_timeout,
                max_attempts=self.max_attempts,
            )

        logger.debug(
            f"{self.name} plugin initialized: region={self.region or 'default'}, "
            f"connect_timeout={self.connect_timeout}s, "
            f"read_timeout={self.read_timeout}s"
        )

    # Raw API calls, implemented per service

    @abstractmethod
    async def _describe(self, pool_id: str) -> FrozenSet[str]:
        pass

    @abstractmethod
    async def _register(self, pool_id: str, instance_ids: List[str]) -> None:
        pass

    @abstractmethod
    async def _deregister(self, pool_id: str, instance_ids: List[str]) -> None:
        pass

    # MembershipClient implementation

    async def list_members(self, pool_id: str) -> FrozenSet[str]:
        try:
            return await self._describe(pool_id)
        except ClientError as e:
            raise self._translate(e, pool_id, "list members") from e

    async def register_instances(
        self, pool_id: str, instance_ids: AbstractSet[str]
    ) -> FrozenSet[str]:
        if not instance_ids:
            return frozenset()

        try:
            await self._register(pool_id, sorted(instance_ids))
            return frozenset()
        except ClientError as e:
            if error_code(e) not in self.invalid_codes:
                raise self._translate(e, pool_id, "register") from e
            logger.info(
                f"Batch registration with {pool_id} rejected ({error_code(e)}); "
                f"retrying instances individually"
            )

        rejected = set()
        for instance_id in sorted(instance_ids):
            try:
                await self._register(pool_id, [instance_id])
            except ClientError as e:
                if error_code(e) in self.invalid_codes:
                    rejected.add(instance_id)
                else:
                    raise self._translate(e, pool_id, "register") from e
        return frozenset(rejected)

    async def deregister_instances(
        self, pool_id: str, instance_ids: AbstractSet[str]
    ) -> None:
        if not instance_ids:
            return

        try:
            await self._deregister(pool_id, sorted(instance_ids))
            return
        except ClientError as e:
            if error_code(e) not in self.invalid_codes:
                raise self._translate(e, pool_id, "deregister") from e

        # One absent id fails the whole batch; absent ids are a no-op
        for instance_id in sorted(instance_ids):
            try:
                await self._deregister(pool_id, [instance_id])
            except ClientError as e:
                if error_code(e) in self.invalid_codes:
                    logger.debug(f"Instance {instance_id} not in {pool_id}, skipping")
                else:
                    raise self._translate(e, pool_id, "deregister") from e

    # Private helper methods

    async def _call(self, operation: str, **kwargs: Any) -> Dict[str, Any]:
        """Run a boto3 client method in a worker thread."""
        if self._client is None:
            raise ProviderUnavailable(f"{self.name} client not initialized")
        method = getattr(self._client, operation)
        try:
            return await asyncio.to_thread(method, **kwargs)
        except BotoCoreError as e:
            raise to_provider_unavailable(e, operation) from e

    def _translate(
        self, error: ClientError, pool_id: str, operation: str
    ) -> ProviderError:
        if error_code(error) in self.not_found_codes:
            return PoolNotFound(pool_id)
        return to_provider_unavailable(error, operation)


def instance_targets(instance_ids: Iterable[str]) -> List[Dict[str, str]]:
    return [{"Id": instance_id} for instance_id in instance_ids]
