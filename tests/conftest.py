"""Pytest configuration and fixtures."""

from datetime import datetime, timezone

import pytest
from unittest.mock import AsyncMock, MagicMock

from machines import MachinePhase, MachineRecord
from reconciler import MembershipReconciler, ReconcilerSettings

NAMESPACE = "default"
POOL_ID = "test-load-balancer"
ROLE_LABEL_KEY = "machine.openshift.io/cluster-api-machine-type"


def make_record(
    name,
    role="master",
    instance_id=None,
    phase=MachinePhase.RUNNING,
    created_at=None,
):
    """Build a MachineRecord; instance_id defaults to '<name>-instance'."""
    return MachineRecord(
        name=name,
        namespace=NAMESPACE,
        role_label=role,
        phase=phase,
        instance_id=f"{name}-instance" if instance_id is None else instance_id,
        created_at=created_at or datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


def make_raw_machine(
    name,
    role="master",
    instance_id=None,
    instance_state="running",
    phase="Running",
    deletion_timestamp=None,
):
    """Build a Machine API object as returned by the list endpoint."""
    provider_status = {
        "apiVersion": "awsproviderconfig.openshift.io/v1beta1",
        "kind": "AWSMachineProviderStatus",
        "instanceId": f"{name}-instance" if instance_id is None else instance_id,
        "instanceState": instance_state,
    }
    metadata = {
        "name": name,
        "namespace": NAMESPACE,
        "labels": {ROLE_LABEL_KEY: role},
        "creationTimestamp": "2024-01-01T00:00:00Z",
    }
    if deletion_timestamp:
        metadata["deletionTimestamp"] = deletion_timestamp
    return {
        "apiVersion": "machine.openshift.io/v1beta1",
        "kind": "Machine",
        "metadata": metadata,
        "status": {"phase": phase, "providerStatus": provider_status},
    }


@pytest.fixture
def cluster_records():
    """One worker, one infra and three running masters."""
    return [
        make_record("worker001", role="worker"),
        make_record("infra001", role="infra"),
        make_record("master001"),
        make_record("master002"),
        make_record("master003"),
    ]


@pytest.fixture
def mock_source(cluster_records):
    """Machine source returning the cluster_records snapshot."""
    source = MagicMock()
    source.list_machines = AsyncMock(return_value=cluster_records)
    return source


@pytest.fixture
def mock_membership():
    """Membership client with an empty pool that accepts every id."""
    membership = MagicMock()
    membership.list_members = AsyncMock(return_value=frozenset())
    membership.register_instances = AsyncMock(return_value=frozenset())
    membership.deregister_instances = AsyncMock(return_value=None)
    return membership


@pytest.fixture
def settings():
    return ReconcilerSettings(
        scope_key=NAMESPACE,
        pool_id=POOL_ID,
        call_timeout=1.0,
        pass_timeout=5.0,
    )


@pytest.fixture
def reconciler(mock_source, mock_membership, settings):
    return MembershipReconciler(mock_source, mock_membership, settings)
