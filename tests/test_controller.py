"""Unit tests for controller.py - Trigger dispatch and retry loop."""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from controller import Controller, ControllerConfig, compute_backoff
from events import EventType
from reconciler import (
    ReconcileResult,
    ReconcilerSettings,
    ResultKind,
    Trigger,
    TriggerReason,
)

SCOPE = "default"


def make_reconciler(scope_key=SCOPE, kind=ResultKind.SUCCESS, requeue_after=None):
    """Mock reconciler returning a result of the given kind for every trigger."""
    reconciler = MagicMock()
    reconciler.scope_key = scope_key
    reconciler.settings = ReconcilerSettings(scope_key=scope_key, pool_id="pool")

    def reconcile(trigger):
        return ReconcileResult(
            trigger=trigger, kind=kind, message=kind.value, requeue_after=requeue_after
        )

    reconciler.reconcile = AsyncMock(side_effect=reconcile)
    return reconciler


def result_for(kind, requeue_after=None):
    return ReconcileResult(
        trigger=Trigger(SCOPE, TriggerReason.RESYNC),
        kind=kind,
        message=kind.value,
        requeue_after=requeue_after,
    )


class TestControllerConfig:
    """Tests for ControllerConfig dataclass."""

    def test_default_values(self):
        config = ControllerConfig()
        assert config.resync_interval == 60
        assert config.max_concurrent_reconciles == 2
        assert config.backoff_base_delay == 5
        assert config.backoff_max_delay == 300
        assert config.backoff_jitter_factor == 0.1


class TestComputeBackoff:
    """Tests for capped exponential backoff."""

    @pytest.mark.parametrize(
        "attempt,expected",
        [(1, 5), (2, 10), (3, 20), (4, 40), (7, 300), (50, 300)],
    )
    def test_without_jitter(self, attempt, expected):
        assert compute_backoff(attempt, 5, 300, 0.0) == expected

    def test_jitter_bounds(self):
        low = compute_backoff(1, 10, 300, 0.1, rand=lambda: 0.0)
        high = compute_backoff(1, 10, 300, 0.1, rand=lambda: 0.999999)
        assert low == pytest.approx(9.0)
        assert high == pytest.approx(11.0, rel=1e-4)

    def test_zero_attempt_uses_base(self):
        assert compute_backoff(0, 5, 300, 0.0) == 5


@pytest.mark.asyncio
class TestEnqueue:
    """Tests for trigger delivery and coalescing."""

    @pytest.fixture
    def controller(self):
        return Controller([make_reconciler()])

    async def test_unknown_scope_rejected(self, controller):
        assert controller.enqueue(Trigger("missing")) is False
        assert controller._queue.qsize() == 0

    async def test_queues_once_and_coalesces(self, controller):
        assert controller.enqueue(Trigger(SCOPE, TriggerReason.ADDED)) is True
        assert controller.enqueue(Trigger(SCOPE, TriggerReason.UPDATED)) is True

        assert controller._queue.qsize() == 1
        assert controller._pending[SCOPE].reason == TriggerReason.UPDATED

    async def test_processing_scope_not_requeued(self, controller):
        controller._processing.add(SCOPE)

        assert controller.enqueue(Trigger(SCOPE)) is True

        assert controller._queue.qsize() == 0
        assert SCOPE in controller._pending

    async def test_halted_scope_rejected(self, controller):
        controller._states[SCOPE].halted = True

        assert controller.enqueue(Trigger(SCOPE)) is False
        assert controller.is_halted(SCOPE) is True

    async def test_event_trigger_deferred_during_backoff(self, controller):
        controller._schedule_retry(SCOPE, 60)

        assert controller.enqueue(Trigger(SCOPE, TriggerReason.ADDED)) is True

        assert SCOPE not in controller._pending
        assert SCOPE in controller._retry_handles
        controller._cancel_retry(SCOPE)

    async def test_manual_trigger_bypasses_backoff(self, controller):
        controller._schedule_retry(SCOPE, 60)

        assert controller.trigger_reconciliation(SCOPE, machine_name="master001")

        assert SCOPE not in controller._retry_handles
        assert controller._pending[SCOPE].reason == TriggerReason.MANUAL
        assert controller._pending[SCOPE].machine_name == "master001"

    async def test_list_scopes(self):
        controller = Controller([make_reconciler("a"), make_reconciler("b")])
        assert controller.list_scopes() == ["a", "b"]
        assert controller.has_scope("a") is True
        assert controller.has_scope("c") is False


@pytest.mark.asyncio
class TestHandleResult:
    """Tests for result handling, backoff scheduling and halting."""

    @pytest.fixture
    def event_bus(self):
        bus = MagicMock()
        bus.publish = AsyncMock()
        return bus

    @pytest.fixture
    def controller(self, event_bus):
        config = ControllerConfig(backoff_base_delay=5, backoff_jitter_factor=0.0)
        controller = Controller([make_reconciler()], config=config, event_bus=event_bus)
        controller.running = True
        yield controller
        controller.running = False
        for handle in controller._retry_handles.values():
            handle.cancel()

    def published(self, event_bus):
        return [c.args[0] for c in event_bus.publish.await_args_list]

    async def test_success_resets_failures(self, controller, event_bus):
        controller._states[SCOPE].failures = 3

        await controller._handle_result(result_for(ResultKind.SUCCESS))

        state = controller._states[SCOPE]
        assert state.failures == 0
        assert state.last_reconcile_time is not None
        assert [e.event_type for e in self.published(event_bus)] == [
            EventType.RECONCILED
        ]

    async def test_retryable_schedules_backoff(self, controller, event_bus):
        await controller._handle_result(result_for(ResultKind.RETRYABLE))
        await controller._handle_result(result_for(ResultKind.RETRYABLE))

        state = controller._states[SCOPE]
        assert state.failures == 2
        assert SCOPE in controller._retry_handles
        assert state.next_retry_time is not None

        events = self.published(event_bus)
        assert [e.event_type for e in events] == [EventType.RETRYING] * 2
        assert events[0].data["retry_in"] == 5
        assert events[1].data["retry_in"] == 10
        assert events[1].data["attempt"] == 2

    async def test_invalid_instance_is_retried(self, controller):
        await controller._handle_result(result_for(ResultKind.INVALID_INSTANCE))

        assert controller._states[SCOPE].failures == 1
        assert SCOPE in controller._retry_handles

    async def test_provider_hint_extends_delay(self, controller, event_bus):
        await controller._handle_result(
            result_for(ResultKind.RETRYABLE, requeue_after=30.0)
        )

        assert self.published(event_bus)[0].data["retry_in"] == 30.0

    async def test_fatal_halts_scope(self, controller, event_bus):
        controller._schedule_retry(SCOPE, 60)
        controller._pending[SCOPE] = Trigger(SCOPE)

        await controller._handle_result(result_for(ResultKind.FATAL))

        assert controller.is_halted(SCOPE) is True
        assert SCOPE not in controller._pending
        assert SCOPE not in controller._retry_handles
        assert [e.event_type for e in self.published(event_bus)] == [
            EventType.HALTED
        ]

    async def test_resume_clears_halt(self, controller, event_bus):
        await controller._handle_result(result_for(ResultKind.FATAL))

        assert await controller.resume(SCOPE) is True

        assert controller.is_halted(SCOPE) is False
        assert controller._pending[SCOPE].reason == TriggerReason.MANUAL
        assert self.published(event_bus)[-1].event_type == EventType.RESUMED

    async def test_resume_not_halted(self, controller):
        assert await controller.resume(SCOPE) is False
        assert await controller.resume("missing") is False

    async def test_retry_fires_enqueue(self, controller):
        controller._schedule_retry(SCOPE, 0.01)

        await asyncio.sleep(0.05)

        assert SCOPE not in controller._retry_handles
        assert controller._pending[SCOPE].reason == TriggerReason.RETRY

    async def test_status(self, controller):
        await controller._handle_result(result_for(ResultKind.RETRYABLE))

        status = controller.get_status(SCOPE)
        assert status["scope_key"] == SCOPE
        assert status["pool_id"] == "pool"
        assert status["halted"] is False
        assert status["failures"] == 1
        assert status["retry_scheduled"] is True
        assert status["last_result"]["kind"] == "retryable"
        assert controller.get_status("missing") is None
        assert controller.status() == [status]


@pytest.mark.asyncio
class TestControllerLoop:
    """Tests for the worker loop."""

    async def test_initial_resync_pass(self):
        reconciler = make_reconciler()
        controller = Controller([reconciler])

        task = asyncio.create_task(controller.start())
        await asyncio.sleep(0.05)
        await controller.stop()
        await task

        reconciler.reconcile.assert_awaited_once()
        trigger = reconciler.reconcile.await_args.args[0]
        assert trigger.reason == TriggerReason.RESYNC

    async def test_scope_serialised_with_one_follow_up(self):
        release = asyncio.Event()
        running = 0
        max_running = 0
        reconciler = make_reconciler()

        async def slow_reconcile(trigger):
            nonlocal running, max_running
            running += 1
            max_running = max(max_running, running)
            await release.wait()
            running -= 1
            return ReconcileResult(trigger=trigger)

        reconciler.reconcile = AsyncMock(side_effect=slow_reconcile)
        controller = Controller(
            [reconciler], config=ControllerConfig(max_concurrent_reconciles=4)
        )

        task = asyncio.create_task(controller.start())
        await asyncio.sleep(0.02)

        # Three triggers while the first pass is running
        for reason in (TriggerReason.ADDED, TriggerReason.UPDATED, TriggerReason.DELETED):
            controller.enqueue(Trigger(SCOPE, reason))
        release.set()
        await asyncio.sleep(0.05)

        await controller.stop()
        await task

        assert max_running == 1
        assert reconciler.reconcile.await_count == 2
        follow_up = reconciler.reconcile.await_args_list[1].args[0]
        assert follow_up.reason == TriggerReason.DELETED

    async def test_mid_pass_trigger_waits_for_backoff(self):
        release = asyncio.Event()
        reconciler = make_reconciler()

        async def failing_reconcile(trigger):
            await release.wait()
            return ReconcileResult(
                trigger=trigger, kind=ResultKind.RETRYABLE, message="unavailable"
            )

        reconciler.reconcile = AsyncMock(side_effect=failing_reconcile)
        controller = Controller(
            [reconciler],
            config=ControllerConfig(
                max_concurrent_reconciles=1,
                backoff_base_delay=60,
                backoff_jitter_factor=0.0,
            ),
        )

        task = asyncio.create_task(controller.start())
        await asyncio.sleep(0.02)

        controller.enqueue(Trigger(SCOPE, TriggerReason.UPDATED))
        release.set()
        await asyncio.sleep(0.1)

        assert reconciler.reconcile.await_count == 1
        assert SCOPE in controller._retry_handles
        assert SCOPE not in controller._pending

        await controller.stop()
        await task

    async def test_mid_pass_manual_trigger_bypasses_backoff(self):
        release = asyncio.Event()
        reconciler = make_reconciler()

        async def failing_reconcile(trigger):
            await release.wait()
            return ReconcileResult(
                trigger=trigger, kind=ResultKind.RETRYABLE, message="unavailable"
            )

        reconciler.reconcile = AsyncMock(side_effect=failing_reconcile)
        controller = Controller(
            [reconciler],
            config=ControllerConfig(
                max_concurrent_reconciles=1,
                backoff_base_delay=60,
                backoff_jitter_factor=0.0,
            ),
        )

        task = asyncio.create_task(controller.start())
        await asyncio.sleep(0.02)

        controller.trigger_reconciliation(SCOPE)
        release.set()
        await asyncio.sleep(0.1)

        await controller.stop()
        await task

        assert reconciler.reconcile.await_count == 2
        follow_up = reconciler.reconcile.await_args_list[1].args[0]
        assert follow_up.reason == TriggerReason.MANUAL

    async def test_distinct_scopes_run_concurrently(self):
        started = set()
        both_started = asyncio.Event()

        async def reconcile(trigger):
            started.add(trigger.scope_key)
            if len(started) == 2:
                both_started.set()
            await asyncio.wait_for(both_started.wait(), timeout=1.0)
            return ReconcileResult(trigger=trigger)

        reconcilers = [make_reconciler("a"), make_reconciler("b")]
        for r in reconcilers:
            r.reconcile = AsyncMock(side_effect=reconcile)
        controller = Controller(reconcilers)

        task = asyncio.create_task(controller.start())
        await asyncio.sleep(0.05)
        await controller.stop()
        await task

        assert both_started.is_set()
        for r in reconcilers:
            assert controller.get_status(r.scope_key)["last_result"]["kind"] == (
                "success"
            )
