"""
test_scheduler.py — Tests for the periodic delivery scheduler.

Covers:
    • Run statistics (runs, messages sent, consecutive all-failed passes)
    • Failure alert triggering and the alert-sent callback
    • Start / stop lifecycle, idempotence and parameter defaults
    • Stop and cancellation waiting for the in-flight pass

Run with:
    pytest tests/test_scheduler.py -v
"""

from __future__ import annotations

import asyncio
import random
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from backend.app.alerts.models import AlertKind, FailureAlert
from backend.app.alerts.notifier import AlertNotifier
from backend.app.messages.delivery_service import MessageService
from backend.app.messages.models import MessageStatus
from backend.app.messages.transport import WebhookTransport
from backend.app.scheduler.scheduler import (
    FALLBACK_INTERVAL_MINUTES,
    MessageScheduler,
    RunSummary,
    wait_or_stop,
)

from conftest import StubTransport

ALERT_URL = "http://alerts.local/hook"


class GatedTransport(StubTransport):
    """Blocks every send until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def send(self, phone_number, content):
        self.entered.set()
        await self.release.wait()
        return await super().send(phone_number, content)


def _make_scheduler(repository, transport, *, notifier=None, batch_size=2,
                    alert_url=ALERT_URL, threshold=0, default_interval=2):
    service = MessageService(
        repository, transport, None,
        batch_size=batch_size,
        max_content_length=1000,
        rng=random.Random(0),
    )
    return MessageScheduler(
        service,
        notifier,
        default_interval_minutes=default_interval,
        alert_webhook_url=alert_url,
        alert_threshold=threshold,
    )


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ═══════════════════════════════════════════════════════════════════════════
# Run statistics
# ═══════════════════════════════════════════════════════════════════════════

class TestProcessOnce:
    """One pass and its effect on run statistics."""

    @pytest.mark.asyncio
    async def test_empty_batch_only_counts_run(self, repository, transport):
        scheduler = _make_scheduler(repository, transport)

        summary = await scheduler.process_once()
        status = await scheduler.status()

        assert isinstance(summary, RunSummary)
        assert summary.run_number == 1
        assert summary.processed == 0
        assert status.runs_count == 1
        assert status.messages_sent == 0
        assert status.consecutive_all_fail_count == 0
        assert status.last_run_at == summary.started_at

    @pytest.mark.asyncio
    async def test_successes_accumulate(self, repository, transport):
        for i in range(3):
            repository.add(f"m{i}")
        scheduler = _make_scheduler(repository, transport)

        first = await scheduler.process_once()
        second = await scheduler.process_once()
        status = await scheduler.status()

        assert (first.succeeded, second.succeeded) == (2, 1)
        assert status.messages_sent == 3
        assert status.runs_count == 2

    @pytest.mark.asyncio
    async def test_mixed_batch_counts_successes(self, repository, transport):
        transport.reject_numbers = {"+905550000002"}
        for i in range(1, 4):
            repository.add(f"m{i}", phone_number=f"+90555000000{i}")
        scheduler = _make_scheduler(repository, transport, batch_size=3)

        summary = await scheduler.process_once()
        status = await scheduler.status()

        assert (summary.succeeded, summary.failed) == (2, 1)
        assert status.messages_sent == 2
        assert status.runs_count == 1
        assert status.consecutive_all_fail_count == 0

    @pytest.mark.asyncio
    async def test_all_failed_increments_counter(self, repository, transport):
        transport.reject_status = 503
        for i in range(4):
            repository.add(f"m{i}")
        scheduler = _make_scheduler(repository, transport)

        await scheduler.process_once()
        await scheduler.process_once()

        status = await scheduler.status()
        assert status.consecutive_all_fail_count == 2
        assert status.messages_sent == 0

    @pytest.mark.asyncio
    async def test_partial_success_resets_counter(self, repository, transport):
        transport.reject_status = 503
        for i in range(2):
            repository.add(f"m{i}")
        scheduler = _make_scheduler(repository, transport)
        await scheduler.process_once()
        assert (await scheduler.status()).consecutive_all_fail_count == 1

        transport.reject_status = None
        repository.add("will succeed")
        await scheduler.process_once()

        assert (await scheduler.status()).consecutive_all_fail_count == 0

    @pytest.mark.asyncio
    async def test_empty_batch_keeps_counter(self, repository, transport):
        transport.reject_status = 503
        repository.add()
        scheduler = _make_scheduler(repository, transport)
        await scheduler.process_once()

        await scheduler.process_once()  # nothing pending anymore

        assert (await scheduler.status()).consecutive_all_fail_count == 1

    @pytest.mark.asyncio
    async def test_malformed_webhook_url_fails_whole_batch(self, repository):
        webhook = WebhookTransport("http://[::1", retry_count=0)
        first, second = repository.add("a"), repository.add("b")
        scheduler = _make_scheduler(repository, webhook, threshold=1)

        summary = await scheduler.process_once()
        status = await scheduler.status()
        await webhook.close()

        assert (summary.processed, summary.failed) == (2, 2)
        assert repository.status_of(first.id) == MessageStatus.FAILED
        assert repository.status_of(second.id) == MessageStatus.FAILED
        assert status.consecutive_all_fail_count == 1

    @pytest.mark.asyncio
    async def test_store_error_ends_pass(self, repository, transport):
        repository.fail_fetch = True
        repository.add()
        scheduler = _make_scheduler(repository, transport)

        summary = await scheduler.process_once()
        status = await scheduler.status()

        assert summary.processed == 0
        assert status.runs_count == 1
        assert status.consecutive_all_fail_count == 0
        assert transport.calls == []


# ═══════════════════════════════════════════════════════════════════════════
# Alerts
# ═══════════════════════════════════════════════════════════════════════════

class TestFailureAlerts:
    """Consecutive all-failed alerting."""

    def _failing_setup(self, repository, transport, messages=10, **kwargs):
        transport.reject_status = 500
        for i in range(messages):
            repository.add(f"m{i}")
        notifier = MagicMock(spec=AlertNotifier)
        scheduler = _make_scheduler(repository, transport, notifier=notifier, **kwargs)
        return scheduler, notifier

    @pytest.mark.asyncio
    async def test_alert_fires_at_threshold(self, repository, transport):
        scheduler, notifier = self._failing_setup(repository, transport, threshold=2)

        await scheduler.process_once()
        notifier.notify.assert_not_called()

        await scheduler.process_once()
        notifier.notify.assert_called_once()
        url, alert = notifier.notify.call_args.args
        assert url == ALERT_URL
        assert isinstance(alert, FailureAlert)
        assert alert.run_number == 2
        assert alert.consecutive_failures == 2
        assert alert.messages_in_batch == 2

    @pytest.mark.asyncio
    async def test_threshold_five(self, repository, transport):
        scheduler, notifier = self._failing_setup(repository, transport, threshold=5, messages=20)

        for _ in range(4):
            await scheduler.process_once()
        assert (await scheduler.status()).consecutive_all_fail_count == 4
        notifier.notify.assert_not_called()

        await scheduler.process_once()
        assert notifier.notify.call_count == 1

        await scheduler.process_once()
        assert notifier.notify.call_count == 2

    @pytest.mark.asyncio
    async def test_alert_refires_every_qualifying_pass(self, repository, transport):
        scheduler, notifier = self._failing_setup(repository, transport, threshold=2)

        for _ in range(4):
            await scheduler.process_once()

        assert notifier.notify.call_count == 3

    @pytest.mark.asyncio
    async def test_threshold_zero_disables_alerts(self, repository, transport):
        scheduler, notifier = self._failing_setup(repository, transport, threshold=0)

        for _ in range(3):
            await scheduler.process_once()

        notifier.notify.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_url_disables_alerts(self, repository, transport):
        scheduler, notifier = self._failing_setup(repository, transport, threshold=1, alert_url="")

        await scheduler.process_once()

        notifier.notify.assert_not_called()

    @pytest.mark.asyncio
    async def test_delivered_callback_records_time(self, repository, transport):
        scheduler, notifier = self._failing_setup(repository, transport, threshold=1)
        await scheduler.process_once()

        on_delivered = notifier.notify.call_args.kwargs["on_delivered"]
        status = await scheduler.status()
        await on_delivered(status.last_run_at)

        assert (await scheduler.status()).last_alert_sent_at == status.last_run_at

    def test_alert_wire_format(self):
        alert = FailureAlert(run_number=12, consecutive_failures=3, messages_in_batch=2)

        payload = alert.to_dict()

        assert payload["alert"] == AlertKind.CONSECUTIVE_ALL_FAIL.value == "consecutive_all_fail"
        assert payload["runNumber"] == 12
        assert payload["consecutiveFailures"] == 3
        assert payload["messagesInBatch"] == 2
        assert payload["message"] == "All 2 messages failed for 3 consecutive iterations"
        assert payload["timestamp"] == alert.timestamp.isoformat()


# ═══════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═══════════════════════════════════════════════════════════════════════════

class TestLifecycle:
    """start / stop / status."""

    @pytest.mark.asyncio
    async def test_initially_stopped(self, repository, transport):
        scheduler = _make_scheduler(repository, transport)

        status = await scheduler.status()

        assert status.running is False
        assert status.next_run_at is None

    @pytest.mark.asyncio
    async def test_start_runs_immediately_and_repeats(self, repository, transport):
        scheduler = _make_scheduler(repository, transport)

        status = await scheduler.start(interval_minutes=0.0005)
        assert status.running is True

        async def ran_twice():
            return (await scheduler.status()).runs_count >= 2

        await _wait_for(ran_twice)
        stopped = await scheduler.stop()

        assert stopped.running is False
        runs = stopped.runs_count
        await asyncio.sleep(0.1)
        assert (await scheduler.status()).runs_count == runs

    @pytest.mark.asyncio
    async def test_second_start_is_noop(self, repository, transport):
        for i in range(4):
            repository.add(f"m{i}")
        scheduler = _make_scheduler(repository, transport)

        await scheduler.start(interval_minutes=60, failure_probability=1.0)

        async def first_pass_done():
            return (await scheduler.status()).consecutive_all_fail_count == 1

        await _wait_for(first_pass_done)
        status = await scheduler.start(interval_minutes=5, failure_probability=0.0)

        assert status.running is True
        assert status.interval_minutes == 60
        assert status.failure_probability == 1.0
        assert status.consecutive_all_fail_count == 1
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_restart_resets_consecutive_counter(self, repository, transport):
        transport.reject_status = 500
        repository.add()
        scheduler = _make_scheduler(repository, transport)
        await scheduler.process_once()
        assert (await scheduler.status()).consecutive_all_fail_count == 1

        await scheduler.start(interval_minutes=60)
        status = await scheduler.status()
        await scheduler.stop()

        assert status.consecutive_all_fail_count == 0

    @pytest.mark.asyncio
    async def test_stop_when_stopped_is_noop(self, repository, transport):
        scheduler = _make_scheduler(repository, transport)

        first = await scheduler.stop()
        second = await scheduler.stop()

        assert first.running is False
        assert second.running is False

    @pytest.mark.asyncio
    async def test_next_run_at_follows_interval(self, repository, transport):
        scheduler = _make_scheduler(repository, transport)
        await scheduler.start(interval_minutes=10)

        async def ran():
            return (await scheduler.status()).last_run_at is not None

        await _wait_for(ran)
        status = await scheduler.status()
        await scheduler.stop()

        assert status.next_run_at == status.last_run_at + timedelta(minutes=10)
        assert status.interval_seconds == 600

    @pytest.mark.asyncio
    @pytest.mark.parametrize("requested, default, expected", [
        (None, 2, 2.0),
        (0, 2, 2.0),
        (-5, 2, 2.0),
        (0, 0, FALLBACK_INTERVAL_MINUTES),
        (7, 2, 7.0),
    ])
    async def test_interval_defaulting(self, repository, transport, requested, default, expected):
        scheduler = _make_scheduler(repository, transport, default_interval=default)

        status = await scheduler.start(interval_minutes=requested)
        await scheduler.stop()

        assert status.interval_minutes == expected

    @pytest.mark.asyncio
    @pytest.mark.parametrize("requested, expected", [(1.5, 1.0), (-0.2, 0.0), (0.25, 0.25)])
    async def test_failure_probability_clamped(self, repository, transport, requested, expected):
        scheduler = _make_scheduler(repository, transport)

        status = await scheduler.start(interval_minutes=60, failure_probability=requested)
        await scheduler.stop()

        assert status.failure_probability == expected

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_pass(self, repository):
        transport = GatedTransport()
        message = repository.add()
        scheduler = _make_scheduler(repository, transport)

        await scheduler.start(interval_minutes=60)
        await asyncio.wait_for(transport.entered.wait(), timeout=1.0)

        stop_task = asyncio.create_task(scheduler.stop())
        await asyncio.sleep(0.05)
        assert not stop_task.done()

        transport.release.set()
        status = await asyncio.wait_for(stop_task, timeout=1.0)

        assert status.running is False
        assert repository.status_of(message.id) == MessageStatus.SENT
        assert status.messages_sent == 1

    @pytest.mark.asyncio
    async def test_stop_under_timeout_leaves_pass_running(self, repository):
        transport = GatedTransport()
        message = repository.add()
        scheduler = _make_scheduler(repository, transport)

        await scheduler.start(interval_minutes=60)
        await asyncio.wait_for(transport.entered.wait(), timeout=1.0)
        loop_task = scheduler._task

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(scheduler.stop(), timeout=0.05)

        assert not loop_task.done()

        transport.release.set()
        await asyncio.wait_for(loop_task, timeout=1.0)

        status = await scheduler.status()
        assert status.running is False
        assert status.messages_sent == 1
        assert repository.status_of(message.id) == MessageStatus.SENT

    @pytest.mark.asyncio
    async def test_cancelled_stop_propagates_cancellation(self, repository):
        transport = GatedTransport()
        repository.add()
        scheduler = _make_scheduler(repository, transport)

        await scheduler.start(interval_minutes=60)
        await asyncio.wait_for(transport.entered.wait(), timeout=1.0)

        stop_task = asyncio.create_task(scheduler.stop())
        await asyncio.sleep(0.01)
        stop_task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await stop_task
        assert stop_task.cancelled()

        transport.release.set()
        await asyncio.wait_for(scheduler._task, timeout=1.0)
        assert (await scheduler.status()).running is False

    @pytest.mark.asyncio
    async def test_cancellation_finishes_in_flight_pass(self, repository):
        transport = GatedTransport()
        message = repository.add()
        scheduler = _make_scheduler(repository, transport)

        await scheduler.start(interval_minutes=60)
        await asyncio.wait_for(transport.entered.wait(), timeout=1.0)

        loop_task = scheduler._task
        loop_task.cancel()
        await asyncio.sleep(0.01)
        transport.release.set()

        with pytest.raises(asyncio.CancelledError):
            await loop_task

        assert repository.status_of(message.id) == MessageStatus.SENT
        assert (await scheduler.status()).running is False
        assert (await scheduler.stop()).running is False


class TestWaitOrStop:

    @pytest.mark.asyncio
    async def test_times_out(self):
        assert await wait_or_stop(asyncio.Event(), 0.01) is False

    @pytest.mark.asyncio
    async def test_returns_early_on_stop(self):
        event = asyncio.Event()
        event.set()
        assert await wait_or_stop(event, 10) is True
