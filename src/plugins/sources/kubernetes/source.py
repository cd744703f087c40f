"""
Kubernetes Machine Source - Implements MachineSource for the Machine API.

Lists Machine objects in a namespace through the Kubernetes REST API and
decodes them into MachineRecord snapshots.
"""

import asyncio
import logging
import os
import ssl
from dataclasses import asdict
from typing import Any, Dict, List, Optional, Union

import aiohttp
from pydantic import ValidationError

from config import KubernetesConfig
from machines import MachineRecord
from plugins.base import SourceUnavailable
from plugins.sources.base import MachineSource
from plugins.sources.kubernetes.models import MachineList, decode_machine

logger = logging.getLogger(__name__)


class KubernetesMachineSource(MachineSource):
    """
    Source plugin that reads Machine objects from the Kubernetes API.

    Authenticates with the service-account token when one is mounted and
    follows list continuation tokens so the returned snapshot is complete.
    """

    def __init__(self):
        self.api_server: str = "https://kubernetes.default.svc"
        self.token_file: Optional[str] = None
        self.ca_file: Optional[str] = None
        self.api_group_version: str = "machine.openshift.io/v1beta1"
        self.role_label: str = "machine.openshift.io/cluster-api-machine-type"
        self.page_size: int = 500
        self.request_timeout: int = 30

    @property
    def name(self) -> str:
        return "kubernetes"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load Kubernetes source configuration from environment variables."""
        return asdict(KubernetesConfig.from_env())

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the plugin with configuration."""
        self.api_server = config.get("api_server", self.api_server).rstrip("/")
        self.token_file = config.get("token_file", self.token_file)
        self.ca_file = config.get("ca_file", self.ca_file)
        self.api_group_version = config.get(
            "api_group_version", self.api_group_version
        )
        self.role_label = config.get("role_label", self.role_label)
        self.page_size = int(config.get("page_size", self.page_size))
        self.request_timeout = int(config.get("request_timeout", self.request_timeout))

        if not self.token_file or not os.path.exists(self.token_file):
            logger.warning(
                "No service-account token found; Machine API requests will be "
                "unauthenticated"
            )

        logger.debug(
            f"Kubernetes machine source initialized: api_server={self.api_server}, "
            f"group_version={self.api_group_version}, role_label={self.role_label}"
        )

    async def list_machines(self, scope_key: str) -> List[MachineRecord]:
        """List and decode all machines in the namespace scope_key."""
        url = self._machines_url(scope_key)
        records: List[MachineRecord] = []
        continue_token: Optional[str] = None
        pages = 0

        try:
            # Token and CA are read once per snapshot, off the event loop
            headers = await asyncio.to_thread(self._get_headers)
            ssl_context = await asyncio.to_thread(self._get_ssl)
            timeout = aiohttp.ClientTimeout(total=self.request_timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                while True:
                    params = {"limit": str(self.page_size)}
                    if continue_token:
                        params["continue"] = continue_token

                    async with session.get(
                        url,
                        headers=headers,
                        params=params,
                        ssl=ssl_context,
                    ) as response:
                        if response.status != 200:
                            error_text = await response.text()
                            raise SourceUnavailable(
                                f"Machine list failed: {response.status} - "
                                f"{error_text[:200]}"
                            )
                        payload = await response.json()

                    page = MachineList.model_validate(payload)
                    records.extend(self._decode_items(page.items or []))
                    pages += 1

                    continue_token = page.metadata.continue_token
                    if not continue_token:
                        break

        except SourceUnavailable:
            raise
        except ValidationError as e:
            raise SourceUnavailable(f"Malformed machine list: {e}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
            raise SourceUnavailable(f"Machine API request failed: {e}") from e

        logger.debug(f"Listed {len(records)} machines in {scope_key} ({pages} pages)")
        return records

    # Private helper methods

    def _machines_url(self, namespace: str) -> str:
        return (
            f"{self.api_server}/apis/{self.api_group_version}"
            f"/namespaces/{namespace}/machines"
        )

    def _get_headers(self) -> Dict[str, str]:
        """Get HTTP headers for Machine API requests."""
        headers = {"Accept": "application/json"}
        if self.token_file and os.path.exists(self.token_file):
            # Re-read per listing, projected tokens rotate
            with open(self.token_file, "r") as f:
                token = f.read().strip()
            if token:
                headers["Authorization"] = f"Bearer {token}"
        return headers

    def _get_ssl(self) -> Union[ssl.SSLContext, bool]:
        if self.ca_file and os.path.exists(self.ca_file):
            return ssl.create_default_context(cafile=self.ca_file)
        return True

    def _decode_items(self, items: List[Dict[str, Any]]) -> List[MachineRecord]:
        records = []
        for raw in items:
            try:
                records.append(decode_machine(raw, self.role_label))
            except ValidationError as e:
                metadata = raw.get("metadata") if isinstance(raw, dict) else None
                name = "<unknown>"
                if isinstance(metadata, dict):
                    name = metadata.get("name", name)
                logger.warning(f"Skipping undecodable machine {name}: {e}")
        return records
