"""
Membership Reconciler - Converges load balancer membership.

Each pass reads a fresh machine snapshot and a fresh view of the backend
pool, diffs them, and issues at most one register call followed by at most
one deregister call. Passes share no state, so missed or reordered
triggers are harmless: the next pass finishes whatever the last one
could not.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Dict, FrozenSet, Optional, Tuple, TypeVar

from machines import DEFAULT_CONTROL_PLANE_LABEL
from membership import DataIntegrityWarning, build_desired, diff
from plugins.balancers.base import MembershipClient
from plugins.base import (
    InvalidInstance,
    PoolNotFound,
    ProviderUnavailable,
    SourceUnavailable,
)
from plugins.sources.base import MachineSource

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TriggerReason(Enum):
    """Why a reconciliation pass was requested."""

    ADDED = "added"
    UPDATED = "updated"
    DELETED = "deleted"
    RESYNC = "resync"
    MANUAL = "manual"
    RETRY = "retry"


class ResultKind(Enum):
    """Outcome of a reconciliation pass."""

    SUCCESS = "success"
    RETRYABLE = "retryable"
    INVALID_INSTANCE = "invalid_instance"
    FATAL = "fatal"


class ReconcileStep(Enum):
    """Steps of a pass, in the order they run."""

    CONFIGURE = "configure"
    LIST_MACHINES = "list_machines"
    LIST_MEMBERS = "list_members"
    REGISTER = "register"
    DEREGISTER = "deregister"
    COMPLETE = "complete"


@dataclass(frozen=True)
class Trigger:
    """A request to reconcile one scope. Informational only."""

    scope_key: str
    reason: TriggerReason = TriggerReason.RESYNC
    machine_name: Optional[str] = None


@dataclass
class ReconcileResult:
    """Result of one reconciliation pass."""

    trigger: Trigger
    kind: ResultKind = ResultKind.SUCCESS
    message: str = ""
    step: ReconcileStep = ReconcileStep.CONFIGURE
    desired: FrozenSet[str] = frozenset()
    observed: FrozenSet[str] = frozenset()
    registered: FrozenSet[str] = frozenset()
    deregistered: FrozenSet[str] = frozenset()
    invalid_instances: FrozenSet[str] = frozenset()
    warnings: Tuple[DataIntegrityWarning, ...] = ()
    requeue_after: Optional[float] = None  # provider hint, seconds
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.kind == ResultKind.SUCCESS

    @property
    def retryable(self) -> bool:
        return self.kind in (ResultKind.RETRYABLE, ResultKind.INVALID_INSTANCE)

    @property
    def has_changes(self) -> bool:
        return bool(self.registered or self.deregistered)

    @property
    def failed_step(self) -> Optional[ReconcileStep]:
        if self.kind in (ResultKind.RETRYABLE, ResultKind.FATAL):
            return self.step
        return None

    def fail(self, kind: ResultKind, message: str) -> None:
        self.kind = kind
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the result for the API and event stream."""
        return {
            "scope_key": self.trigger.scope_key,
            "trigger_reason": self.trigger.reason.value,
            "machine_name": self.trigger.machine_name,
            "kind": self.kind.value,
            "message": self.message,
            "step": self.step.value,
            "failed_step": self.failed_step.value if self.failed_step else None,
            "desired": sorted(self.desired),
            "observed": sorted(self.observed),
            "registered": sorted(self.registered),
            "deregistered": sorted(self.deregistered),
            "invalid_instances": sorted(self.invalid_instances),
            "warnings": [w.to_dict() for w in self.warnings],
            "requeue_after": self.requeue_after,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class ReconcilerSettings:
    """Per-scope reconciler settings."""

    scope_key: str
    pool_id: str = ""
    control_plane_label: str = DEFAULT_CONTROL_PLANE_LABEL
    call_timeout: float = 30.0  # per external call, seconds
    pass_timeout: float = 120.0  # whole pass, seconds
    missing_instance_grace: Optional[float] = 600.0


class MembershipReconciler:
    """
    Reconciles the backend pool of one scope against its machines.

    The machine source and membership client are supplied by the caller;
    the reconciler holds no client state of its own.
    """

    def __init__(
        self,
        source: MachineSource,
        membership: MembershipClient,
        settings: ReconcilerSettings,
    ):
        self.source = source
        self.membership = membership
        self.settings = settings

    @property
    def scope_key(self) -> str:
        return self.settings.scope_key

    async def reconcile(self, trigger: Optional[Trigger] = None) -> ReconcileResult:
        """
        Run one reconciliation pass.

        Never raises. Failures are reported through the result kind:
        RETRYABLE for external call failures and timeouts, INVALID_INSTANCE
        when the provider rejected some ids, FATAL for configuration errors.
        """
        if trigger is None:
            trigger = Trigger(self.scope_key, TriggerReason.MANUAL)

        result = ReconcileResult(trigger=trigger)
        start_time = time.monotonic()

        if not self.settings.pool_id:
            result.fail(ResultKind.FATAL, "No load balancer pool id configured")
        else:
            try:
                await asyncio.wait_for(
                    self._run_pass(result), timeout=self.settings.pass_timeout
                )
            except asyncio.TimeoutError:
                result.fail(
                    ResultKind.RETRYABLE,
                    f"Reconciliation pass timed out after "
                    f"{self.settings.pass_timeout}s during {result.step.value}",
                )

        result.duration_seconds = time.monotonic() - start_time
        self._log_result(result)
        return result

    async def _call(self, awaitable: Awaitable[T]) -> T:
        """Await an external call, bounded by the per-call timeout."""
        return await asyncio.wait_for(awaitable, timeout=self.settings.call_timeout)

    async def _run_pass(self, result: ReconcileResult) -> None:
        """
        Execute the pass steps, recording progress on the result.

        Phases: List machines -> Desired -> List members -> Diff ->
        Register -> Deregister
        """
        settings = self.settings

        try:
            result.step = ReconcileStep.LIST_MACHINES
            records = await self._call(self.source.list_machines(settings.scope_key))

            desired = build_desired(
                records,
                control_plane_label=settings.control_plane_label,
                missing_instance_grace=settings.missing_instance_grace,
            )
            result.desired = desired.instance_ids
            result.warnings = desired.warnings
            for warning in desired.warnings:
                logger.warning(
                    f"Data integrity warning in {settings.scope_key} "
                    f"({warning.kind}): {warning.message}"
                )

            result.step = ReconcileStep.LIST_MEMBERS
            observed = await self._call(self.membership.list_members(settings.pool_id))
            result.observed = frozenset(observed)

            change = diff(result.desired, result.observed)
            if change.is_empty:
                result.step = ReconcileStep.COMPLETE
                result.message = "Membership in sync"
                return

            # Register first so a swap never leaves the pool short
            if change.to_register:
                result.step = ReconcileStep.REGISTER
                rejected = await self._call(
                    self.membership.register_instances(
                        settings.pool_id, change.to_register
                    )
                )
                result.invalid_instances = frozenset(rejected) & change.to_register
                result.registered = change.to_register - result.invalid_instances

            if change.to_deregister:
                result.step = ReconcileStep.DEREGISTER
                await self._call(
                    self.membership.deregister_instances(
                        settings.pool_id, change.to_deregister
                    )
                )
                result.deregistered = change.to_deregister

            result.step = ReconcileStep.COMPLETE
            if result.invalid_instances:
                result.fail(
                    ResultKind.INVALID_INSTANCE,
                    f"Provider rejected instances: "
                    f"{', '.join(sorted(result.invalid_instances))}",
                )
            else:
                result.message = (
                    f"Registered {len(result.registered)}, "
                    f"deregistered {len(result.deregistered)}"
                )

        except PoolNotFound as e:
            result.fail(ResultKind.FATAL, str(e))
        except InvalidInstance as e:
            # Client could not isolate the rejected ids; retry the whole batch
            result.invalid_instances = e.instance_ids
            result.fail(ResultKind.RETRYABLE, f"Register batch rejected: {e}")
        except ProviderUnavailable as e:
            result.requeue_after = e.retry_after
            result.fail(ResultKind.RETRYABLE, f"Load balancer unavailable: {e}")
        except SourceUnavailable as e:
            result.fail(ResultKind.RETRYABLE, f"Machine source unavailable: {e}")
        except asyncio.TimeoutError:
            result.fail(
                ResultKind.RETRYABLE,
                f"{result.step.value} timed out after {settings.call_timeout}s",
            )
        except Exception as e:
            logger.error(
                f"Unexpected error during {result.step.value} for "
                f"{settings.scope_key}: {e}",
                exc_info=True,
            )
            result.fail(ResultKind.RETRYABLE, f"Unexpected error: {e}")

    def _log_result(self, result: ReconcileResult) -> None:
        scope = self.scope_key
        if result.kind == ResultKind.FATAL:
            logger.error(f"Reconciliation of {scope} halted: {result.message}")
        elif result.retryable:
            logger.warning(
                f"Reconciliation of {scope} failed at {result.step.value}: "
                f"{result.message}"
            )
        elif result.has_changes:
            logger.info(
                f"Reconciled {scope}: registered {sorted(result.registered)}, "
                f"deregistered {sorted(result.deregistered)}"
            )
        else:
            logger.debug(f"Reconciled {scope}: {result.message}")
