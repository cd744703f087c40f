"""
Machine API models.

Typed views of the Machine API list payload and the AWS provider status
blob. Decoding happens here once, producing MachineRecord values.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from machines import MachineRecord, resolve_phase

logger = logging.getLogger(__name__)


class AWSProviderStatus(BaseModel):
    """AWS machine provider status (awsproviderconfig/v1beta1)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    instance_id: Optional[str] = Field(None, alias="instanceId")
    instance_state: Optional[str] = Field(None, alias="instanceState")


class ObjectMeta(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str
    namespace: str = ""
    labels: Optional[Dict[str, str]] = None
    creation_timestamp: Optional[datetime] = Field(None, alias="creationTimestamp")
    deletion_timestamp: Optional[datetime] = Field(None, alias="deletionTimestamp")


class MachineStatus(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    phase: Optional[str] = None
    # Decoded separately so a bad provider blob does not drop the machine
    provider_status: Optional[Dict[str, Any]] = Field(None, alias="providerStatus")


class Machine(BaseModel):
    model_config = ConfigDict(extra="ignore")

    metadata: ObjectMeta
    status: Optional[MachineStatus] = None


class ListMeta(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    continue_token: Optional[str] = Field(None, alias="continue")


class MachineList(BaseModel):
    """List envelope. Items stay raw so one bad item can be skipped."""

    model_config = ConfigDict(extra="ignore")

    items: Optional[List[Dict[str, Any]]] = None
    metadata: ListMeta = Field(default_factory=ListMeta)


def decode_provider_status(
    raw: Optional[Dict[str, Any]], machine_name: str = ""
) -> AWSProviderStatus:
    """
    Decode a provider status blob.

    A missing or malformed blob decodes to an empty status (no instance id,
    unknown state) rather than failing.
    """
    if not raw:
        return AWSProviderStatus()
    try:
        return AWSProviderStatus.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Malformed provider status on machine {machine_name}: {e}")
        return AWSProviderStatus()


def decode_machine(raw: Dict[str, Any], role_label_key: str) -> MachineRecord:
    """
    Decode a raw Machine object into a MachineRecord.

    Args:
        raw: Machine object as returned by the Machine API
        role_label_key: Label key holding the machine role

    Returns:
        The decoded MachineRecord

    Raises:
        ValidationError: If the object has no usable metadata
    """
    machine = Machine.model_validate(raw)
    meta = machine.metadata
    status = machine.status or MachineStatus()
    provider = decode_provider_status(status.provider_status, meta.name)

    instance_id = (provider.instance_id or "").strip() or None

    return MachineRecord(
        name=meta.name,
        namespace=meta.namespace,
        role_label=(meta.labels or {}).get(role_label_key),
        phase=resolve_phase(
            provider.instance_state,
            machine_phase=status.phase,
            deleting=meta.deletion_timestamp is not None,
        ),
        instance_id=instance_id,
        created_at=meta.creation_timestamp,
    )
