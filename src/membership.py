"""
Desired membership and diffing.

Builds the set of instance ids that should be registered with the backend
pool from a machine snapshot, and diffs it against observed membership.
Everything here is pure.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from machines import (
    DEFAULT_CONTROL_PLANE_LABEL,
    MachineRecord,
    Role,
    classify,
    eligible,
)


@dataclass(frozen=True)
class DataIntegrityWarning:
    """Non-fatal inconsistency found in a machine snapshot."""

    kind: str
    message: str
    machines: Tuple[str, ...] = ()
    instance_id: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "kind": self.kind,
            "message": self.message,
            "machines": list(self.machines),
            "instance_id": self.instance_id,
        }


@dataclass(frozen=True)
class DesiredState:
    """Desired pool membership computed from one snapshot."""

    instance_ids: FrozenSet[str] = frozenset()
    warnings: Tuple[DataIntegrityWarning, ...] = ()


@dataclass(frozen=True)
class MembershipDiff:
    """Changes needed to move observed membership to desired membership."""

    to_register: FrozenSet[str] = field(default_factory=frozenset)
    to_deregister: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_empty(self) -> bool:
        return not self.to_register and not self.to_deregister


def _age_seconds(created_at: Optional[datetime], now: datetime) -> Optional[float]:
    if created_at is None:
        return None
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return (now - created_at).total_seconds()


def build_desired(
    records: Iterable[MachineRecord],
    control_plane_label: str = DEFAULT_CONTROL_PLANE_LABEL,
    now: Optional[datetime] = None,
    missing_instance_grace: Optional[float] = None,
) -> DesiredState:
    """
    Compute the desired membership from a machine snapshot.

    Keeps running control-plane machines with an instance id. Duplicate
    instance ids across distinct machines are reported as warnings and the
    union is kept. Control-plane machines that have gone without an instance
    id for longer than missing_instance_grace seconds are also reported.

    Args:
        records: Machine snapshot
        control_plane_label: Role label value that marks control-plane machines
        now: Reference time for age checks (defaults to current UTC time)
        missing_instance_grace: Seconds a control-plane machine may lack an
            instance id before a warning is raised. None disables the check.

    Returns:
        DesiredState with the instance ids and any warnings
    """
    if now is None:
        now = datetime.now(timezone.utc)

    owners: Dict[str, List[str]] = defaultdict(list)
    warnings: List[DataIntegrityWarning] = []

    for record in records:
        if classify(record, control_plane_label) != Role.CONTROL_PLANE:
            continue

        if eligible(record):
            owners[record.instance_id.strip()].append(record.name)
            continue

        if missing_instance_grace is not None and not record.has_instance_id:
            age = _age_seconds(record.created_at, now)
            if age is not None and age > missing_instance_grace:
                warnings.append(
                    DataIntegrityWarning(
                        kind="missing_instance_id",
                        message=(
                            f"Control-plane machine {record.name} has no instance "
                            f"id after {int(age)}s"
                        ),
                        machines=(record.name,),
                    )
                )

    for instance_id, names in sorted(owners.items()):
        if len(set(names)) > 1:
            warnings.append(
                DataIntegrityWarning(
                    kind="duplicate_instance_id",
                    message=(
                        f"Instance {instance_id} is claimed by machines: "
                        f"{', '.join(sorted(set(names)))}"
                    ),
                    machines=tuple(sorted(set(names))),
                    instance_id=instance_id,
                )
            )

    return DesiredState(instance_ids=frozenset(owners), warnings=tuple(warnings))


def diff(desired: Iterable[str], observed: Iterable[str]) -> MembershipDiff:
    """Diff desired against observed membership."""
    desired_set: Set[str] = set(desired)
    observed_set: Set[str] = set(observed)
    return MembershipDiff(
        to_register=frozenset(desired_set - observed_set),
        to_deregister=frozenset(observed_set - desired_set),
    )
