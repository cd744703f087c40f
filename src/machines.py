"""
Machine records and role classification.

Machine records are clean snapshots produced by a machine source plugin.
Classification and eligibility are pure functions over them.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

DEFAULT_CONTROL_PLANE_LABEL = "master"


class MachinePhase(Enum):
    """Lifecycle phase of a machine."""

    PENDING = "Pending"
    RUNNING = "Running"
    TERMINATED = "Terminated"
    UNKNOWN = "Unknown"


class Role(Enum):
    """Role category derived from a machine's role label."""

    CONTROL_PLANE = "control-plane"
    OTHER = "other"


# Provider instance states (EC2 naming) mapped to lifecycle phases
_INSTANCE_STATE_PHASES = {
    "pending": MachinePhase.PENDING,
    "running": MachinePhase.RUNNING,
    "shutting-down": MachinePhase.TERMINATED,
    "terminated": MachinePhase.TERMINATED,
    "stopping": MachinePhase.TERMINATED,
    "stopped": MachinePhase.TERMINATED,
}

# Machine API phases that mean the machine is going away
_TERMINAL_MACHINE_PHASES = {"Deleting", "Failed"}


@dataclass(frozen=True)
class MachineRecord:
    """Snapshot of a single machine as seen by the reconciler."""

    name: str
    namespace: str
    role_label: Optional[str] = None
    phase: MachinePhase = MachinePhase.UNKNOWN
    instance_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def has_instance_id(self) -> bool:
        return bool(self.instance_id and self.instance_id.strip())


def phase_from_instance_state(instance_state: Optional[str]) -> MachinePhase:
    """Map a provider instance state string to a MachinePhase."""
    if not instance_state:
        return MachinePhase.UNKNOWN
    return _INSTANCE_STATE_PHASES.get(
        instance_state.strip().lower(), MachinePhase.UNKNOWN
    )


def resolve_phase(
    instance_state: Optional[str],
    machine_phase: Optional[str] = None,
    deleting: bool = False,
) -> MachinePhase:
    """
    Resolve the lifecycle phase of a machine.

    A machine that is being deleted, or whose Machine API phase is terminal,
    is TERMINATED regardless of what the provider reports for the instance.

    Args:
        instance_state: Provider-reported instance state (e.g. 'running')
        machine_phase: Machine API status phase (e.g. 'Running', 'Deleting')
        deleting: Whether the machine object carries a deletion timestamp

    Returns:
        The resolved MachinePhase
    """
    if deleting or machine_phase in _TERMINAL_MACHINE_PHASES:
        return MachinePhase.TERMINATED
    return phase_from_instance_state(instance_state)


def classify(
    record: MachineRecord, control_plane_label: str = DEFAULT_CONTROL_PLANE_LABEL
) -> Role:
    """
    Classify a machine record by its role label.

    Exact, case-sensitive match against the configured control-plane label.
    Missing or unknown labels classify as OTHER.
    """
    if record.role_label is not None and record.role_label == control_plane_label:
        return Role.CONTROL_PLANE
    return Role.OTHER


def eligible(record: MachineRecord) -> bool:
    """True iff the machine is running and has a provider instance id."""
    return record.phase == MachinePhase.RUNNING and record.has_instance_id
