"""
Membership Controller - Trigger dispatch and retry loop.

Similar to a Kubernetes work queue: triggers are keyed by scope, coalesced
while a scope is queued or running, and retried with capped exponential
backoff. A periodic resync re-triggers every scope so that drift introduced
outside the controller is corrected even when no machine events arrive.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from events import EventBus, EventType, ReconcileEvent
from reconciler import (
    MembershipReconciler,
    ReconcileResult,
    ResultKind,
    Trigger,
    TriggerReason,
)

logger = logging.getLogger(__name__)


@dataclass
class ControllerConfig:
    """Configuration for the controller."""

    resync_interval: int = 60
    max_concurrent_reconciles: int = 2

    # Exponential backoff configuration
    backoff_base_delay: float = 5  # base delay in seconds
    backoff_max_delay: float = 300  # max delay in seconds (5 minutes)
    backoff_jitter_factor: float = 0.1  # ±10% jitter


def compute_backoff(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter_factor: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Capped exponential backoff with jitter.

    delay = min(base * 2^(attempt-1), max) * (1 ± jitter)

    Args:
        attempt: Consecutive failure count, starting at 1
        base_delay: Delay for the first retry in seconds
        max_delay: Upper bound before jitter is applied
        jitter_factor: Jitter factor ±X (0.1 = ±10%)
        rand: Source of uniform randomness in [0, 1)

    Returns:
        Delay in seconds
    """
    exponent = min(max(attempt - 1, 0), 10)
    delay = min(base_delay * (2**exponent), max_delay)
    return delay * (1 + (rand() * 2 - 1) * jitter_factor)


@dataclass
class ScopeState:
    """Dispatcher bookkeeping for one scope."""

    scope_key: str
    failures: int = 0
    halted: bool = False
    last_result: Optional[ReconcileResult] = None
    last_reconcile_time: Optional[datetime] = None
    next_retry_time: Optional[datetime] = None


class Controller:
    """
    Dispatches reconciliation triggers to per-scope reconcilers.

    A scope is never reconciled by two workers at once. Triggers that arrive
    while a scope is queued are folded into the queued one; triggers that
    arrive while it is running cause exactly one follow-up pass. Retryable
    results are requeued with backoff, fatal results halt the scope until
    resume() is called.
    """

    def __init__(
        self,
        reconcilers: Iterable[MembershipReconciler],
        config: Optional[ControllerConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.config = config or ControllerConfig()
        self.resync_interval = self.config.resync_interval
        self.max_concurrent_reconciles = self.config.max_concurrent_reconciles
        self.running = False
        self._event_bus = event_bus

        self._reconcilers: Dict[str, MembershipReconciler] = {
            r.scope_key: r for r in reconcilers
        }
        self._states: Dict[str, ScopeState] = {
            key: ScopeState(scope_key=key) for key in self._reconcilers
        }

        # Work queue state
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pending: Dict[str, Trigger] = {}
        self._processing: Set[str] = set()
        self._retry_handles: Dict[str, asyncio.TimerHandle] = {}

        self._tasks: List[asyncio.Task] = []

    # ==================== Lifecycle ====================

    async def start(self):
        """Start the workers and the resync loop."""
        logger.info(
            f"Starting membership controller for scopes: "
            f"{', '.join(self._reconcilers) or 'none'}"
        )
        self.running = True

        # Initial pass for every scope
        for scope_key in self._reconcilers:
            self.enqueue(Trigger(scope_key, TriggerReason.RESYNC))

        self._tasks = [
            asyncio.create_task(self._worker(i))
            for i in range(self.max_concurrent_reconciles)
        ]
        self._tasks.append(asyncio.create_task(self._resync_loop()))

        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Controller task failed: {result}")

    async def stop(self):
        """Stop the workers and cancel pending retries."""
        logger.info("Stopping membership controller")
        self.running = False

        for handle in self._retry_handles.values():
            handle.cancel()
        self._retry_handles.clear()

        for task in self._tasks:
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    # ==================== Trigger delivery ====================

    def has_scope(self, scope_key: str) -> bool:
        """Check if a reconciler is registered for the scope."""
        return scope_key in self._reconcilers

    def list_scopes(self) -> List[str]:
        """List all registered scope keys."""
        return list(self._reconcilers.keys())

    def is_halted(self, scope_key: str) -> bool:
        state = self._states.get(scope_key)
        return bool(state and state.halted)

    def enqueue(self, trigger: Trigger) -> bool:
        """
        Queue a reconciliation trigger.

        Args:
            trigger: The trigger to deliver

        Returns:
            True if the trigger was accepted (queued or coalesced), False if
            the scope is unknown or halted.
        """
        scope_key = trigger.scope_key
        if scope_key not in self._reconcilers:
            logger.warning(f"Ignoring trigger for unknown scope: {scope_key}")
            return False

        if self._states[scope_key].halted:
            logger.debug(
                f"Dropping {trigger.reason.value} trigger for halted scope {scope_key}"
            )
            return False

        # Event triggers during backoff wait for the scheduled retry
        if scope_key in self._retry_handles and trigger.reason not in (
            TriggerReason.RETRY,
            TriggerReason.MANUAL,
        ):
            logger.debug(
                f"Deferring {trigger.reason.value} trigger for {scope_key} "
                f"to scheduled retry"
            )
            return True

        if trigger.reason == TriggerReason.MANUAL:
            self._cancel_retry(scope_key)

        already_pending = scope_key in self._pending
        self._pending[scope_key] = trigger

        if already_pending:
            logger.debug(f"Coalesced {trigger.reason.value} trigger for {scope_key}")
            return True

        if scope_key not in self._processing:
            self._queue.put_nowait(scope_key)
        return True

    def trigger_reconciliation(
        self, scope_key: str, machine_name: Optional[str] = None
    ) -> bool:
        """Manually trigger reconciliation for a scope."""
        logger.info(f"Manually triggering reconciliation for {scope_key}")
        return self.enqueue(
            Trigger(scope_key, TriggerReason.MANUAL, machine_name=machine_name)
        )

    async def resume(self, scope_key: str) -> bool:
        """
        Clear a fatal halt and trigger a fresh pass.

        Returns:
            True if the scope was halted and is now resumed
        """
        state = self._states.get(scope_key)
        if state is None or not state.halted:
            return False

        state.halted = False
        state.failures = 0
        logger.info(f"Resumed reconciliation of {scope_key}")
        await self._publish(EventType.RESUMED, scope_key, {})
        self.enqueue(Trigger(scope_key, TriggerReason.MANUAL))
        return True

    # ==================== Loops ====================

    async def _worker(self, index: int):
        """Take scope keys off the queue and reconcile them one at a time."""
        while self.running:
            scope_key = await self._queue.get()
            trigger = self._pending.pop(scope_key, None)
            if trigger is None:
                continue

            self._processing.add(scope_key)
            try:
                reconciler = self._reconcilers[scope_key]
                result = await reconciler.reconcile(trigger)
                await self._handle_result(result)
            except Exception as e:
                logger.error(
                    f"Worker {index} error reconciling {scope_key}: {e}",
                    exc_info=True,
                )
            finally:
                self._processing.discard(scope_key)
                self._requeue_pending(scope_key)

    def _requeue_pending(self, scope_key: str) -> None:
        """Give triggers that arrived mid-pass one follow-up pass."""
        pending = self._pending.get(scope_key)
        if pending is None:
            return

        if scope_key in self._retry_handles:
            if pending.reason != TriggerReason.MANUAL:
                # The scheduled retry covers it
                del self._pending[scope_key]
                logger.debug(
                    f"Deferring {pending.reason.value} trigger for {scope_key} "
                    f"to scheduled retry"
                )
                return
            self._cancel_retry(scope_key)

        self._queue.put_nowait(scope_key)

    async def _resync_loop(self):
        """Periodically re-trigger every scope."""
        while self.running:
            await asyncio.sleep(self.resync_interval)
            for scope_key in self._reconcilers:
                self.enqueue(Trigger(scope_key, TriggerReason.RESYNC))

    # ==================== Result handling ====================

    async def _handle_result(self, result: ReconcileResult) -> None:
        scope_key = result.trigger.scope_key
        state = self._states[scope_key]
        state.last_result = result
        state.last_reconcile_time = datetime.now(timezone.utc)

        if result.success:
            state.failures = 0
            state.next_retry_time = None
            self._cancel_retry(scope_key)
            await self._publish(EventType.RECONCILED, scope_key, result.to_dict())
            return

        if result.kind == ResultKind.FATAL:
            state.halted = True
            state.failures = 0
            state.next_retry_time = None
            self._pending.pop(scope_key, None)
            self._cancel_retry(scope_key)
            logger.info(f"Scope {scope_key} halted until resumed")
            await self._publish(EventType.HALTED, scope_key, result.to_dict())
            return

        state.failures += 1
        delay = compute_backoff(
            state.failures,
            self.config.backoff_base_delay,
            self.config.backoff_max_delay,
            self.config.backoff_jitter_factor,
        )
        if result.requeue_after:
            delay = max(delay, result.requeue_after)

        self._schedule_retry(scope_key, delay)
        state.next_retry_time = datetime.now(timezone.utc) + timedelta(seconds=delay)
        logger.warning(
            f"Requeuing {scope_key} in {delay:.1f}s (attempt {state.failures})"
        )

        data = result.to_dict()
        data["retry_in"] = round(delay, 3)
        data["attempt"] = state.failures
        await self._publish(EventType.RETRYING, scope_key, data)

    def _schedule_retry(self, scope_key: str, delay: float) -> None:
        self._cancel_retry(scope_key)
        loop = asyncio.get_running_loop()
        self._retry_handles[scope_key] = loop.call_later(
            delay, self._fire_retry, scope_key
        )

    def _fire_retry(self, scope_key: str) -> None:
        self._retry_handles.pop(scope_key, None)
        if self.running:
            self.enqueue(Trigger(scope_key, TriggerReason.RETRY))

    def _cancel_retry(self, scope_key: str) -> None:
        handle = self._retry_handles.pop(scope_key, None)
        if handle is not None:
            handle.cancel()

    async def _publish(
        self, event_type: EventType, scope_key: str, data: Dict[str, Any]
    ) -> None:
        if self._event_bus:
            await self._event_bus.publish(
                ReconcileEvent.create(event_type, scope_key, data)
            )

    # ==================== Status ====================

    def get_status(self, scope_key: str) -> Optional[Dict[str, Any]]:
        """Get the dispatcher status of a scope, or None if unknown."""
        state = self._states.get(scope_key)
        if state is None:
            return None

        reconciler = self._reconcilers[scope_key]
        return {
            "scope_key": scope_key,
            "pool_id": reconciler.settings.pool_id,
            "halted": state.halted,
            "failures": state.failures,
            "queued": scope_key in self._pending,
            "processing": scope_key in self._processing,
            "retry_scheduled": scope_key in self._retry_handles,
            "last_reconcile_time": state.last_reconcile_time,
            "next_retry_time": state.next_retry_time,
            "last_result": (
                state.last_result.to_dict() if state.last_result else None
            ),
        }

    def status(self) -> List[Dict[str, Any]]:
        """Get the dispatcher status of every scope."""
        return [self.get_status(key) for key in self._reconcilers]
