"""
Periodic delivery scheduler.

═══════════════════════════════════════════════════════════════════════════
LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    ┌─────────┐   start()    ┌─────────┐
    │ STOPPED │─────────────▶│ RUNNING │──┐ pass, wait interval, pass, ...
    └─────────┘◀─────────────└─────────┘◀─┘
                  stop()

start() runs the first pass immediately. stop() lets an in-flight pass
finish and waits for the loop to exit. Cancelling the loop task from
outside (process shutdown) takes the same path.

═══════════════════════════════════════════════════════════════════════════
ONE PASS
═══════════════════════════════════════════════════════════════════════════

    1. under lock   runs_count += 1, last_run_at = now, capture parameters
    2. no lock      service.process_pending(failure_probability)
    3. under lock   messages_sent += succeeded
                    consecutive_all_fail_count: +1 if nothing delivered,
                    else reset to 0
    4. no lock      fire FailureAlert when the counter reaches the threshold

Empty batches only advance the run counter.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from backend.app.alerts.models import FailureAlert
from backend.app.alerts.notifier import AlertNotifier
from backend.app.core.config import settings
from backend.app.core.errors import StoreError
from backend.app.messages.delivery_service import MessageService

logger = logging.getLogger(__name__)

FALLBACK_INTERVAL_MINUTES = 120.0


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════════════════
# Snapshots
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class SchedulerStatus:
    """Point-in-time view of the scheduler."""
    running: bool
    interval_minutes: float
    messages_sent: int
    runs_count: int
    consecutive_all_fail_count: int
    failure_probability: float
    alert_threshold: int
    last_run_at: Optional[datetime] = None
    last_alert_sent_at: Optional[datetime] = None

    @property
    def interval_seconds(self) -> float:
        return self.interval_minutes * 60

    @property
    def next_run_at(self) -> Optional[datetime]:
        if not self.running or self.last_run_at is None:
            return None
        return self.last_run_at + timedelta(minutes=self.interval_minutes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "intervalMinutes": self.interval_minutes,
            "intervalSeconds": self.interval_seconds,
            "messagesSent": self.messages_sent,
            "runsCount": self.runs_count,
            "consecutiveAllFailCount": self.consecutive_all_fail_count,
            "failureRate": self.failure_probability,
            "alertThreshold": self.alert_threshold,
            "lastRunAt": _iso(self.last_run_at),
            "nextRunAt": _iso(self.next_run_at),
            "lastAlertSentAt": _iso(self.last_alert_sent_at),
        }


@dataclass
class RunSummary:
    """Result of one scheduler pass."""
    run_number: int
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    processed: int = 0
    succeeded: int = 0
    failed: int = 0

    @property
    def all_failed(self) -> bool:
        return self.processed > 0 and self.succeeded == 0


# ═══════════════════════════════════════════════════════════════════════════
# Scheduler
# ═══════════════════════════════════════════════════════════════════════════

async def wait_or_stop(stop_event: asyncio.Event, timeout: float) -> bool:
    """Sleep up to ``timeout`` seconds; True if stop was requested meanwhile."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        return False


class MessageScheduler:
    """
    Drives the delivery service on a fixed interval.

    Usage:
        scheduler = MessageScheduler(service, AlertNotifier())

        await scheduler.start(interval_minutes=2, failure_probability=0.1)
        status = await scheduler.status()
        await scheduler.stop()
    """

    def __init__(
        self,
        service: MessageService,
        notifier: Optional[AlertNotifier] = None,
        *,
        default_interval_minutes: Optional[float] = None,
        alert_webhook_url: Optional[str] = None,
        alert_threshold: Optional[int] = None,
    ):
        self.service = service
        self.notifier = notifier
        self._default_interval = (
            default_interval_minutes if default_interval_minutes is not None
            else settings.MESSAGE_SEND_INTERVAL_MINUTES
        )

        self._lock = asyncio.Lock()
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

        # Guarded by _lock
        self._running = False
        self._interval_minutes = self._resolve_interval(None)
        self._failure_probability = 0.0
        self._alert_webhook_url = (
            alert_webhook_url if alert_webhook_url is not None
            else settings.ALERT_WEBHOOK_URL
        )
        self._alert_threshold = (
            alert_threshold if alert_threshold is not None
            else settings.ALERT_ITERATION_COUNT
        )
        self._last_run_at: Optional[datetime] = None
        self._last_alert_sent_at: Optional[datetime] = None
        self._messages_sent = 0
        self._runs_count = 0
        self._consecutive_all_fail_count = 0

    # ── Control ──

    async def start(
        self,
        interval_minutes: Optional[float] = None,
        failure_probability: float = 0.0,
        alert_webhook_url: Optional[str] = None,
        alert_threshold: Optional[int] = None,
    ) -> SchedulerStatus:
        """Start the loop; a no-op returning the current status when already running."""
        async with self._lock:
            if self._running:
                logger.info("Scheduler already running")
                return self._snapshot()

            self._interval_minutes = self._resolve_interval(interval_minutes)
            self._failure_probability = self._clamp_probability(failure_probability)
            if alert_webhook_url is not None:
                self._alert_webhook_url = alert_webhook_url
            if alert_threshold is not None:
                self._alert_threshold = alert_threshold
            self._consecutive_all_fail_count = 0

            stop_event = asyncio.Event()
            self._stop_event = stop_event
            self._running = True
            self._task = asyncio.create_task(self._run_loop(stop_event))

            logger.info(
                "Scheduler started (interval: %g min, failure rate: %.2f, alert threshold: %d)",
                self._interval_minutes, self._failure_probability, self._alert_threshold,
            )
            return self._snapshot()

    async def stop(self) -> SchedulerStatus:
        """Stop the loop after the in-flight pass; safe to call when stopped."""
        async with self._lock:
            if not self._running or self._task is None:
                return self._snapshot()
            self._stop_event.set()
            task = self._task

        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            # the loop was cancelled externally; our own cancellation propagates
            if not task.cancelled():
                raise

        async with self._lock:
            if self._task is task:
                self._task = None
                self._running = False
            logger.info("Scheduler stopped")
            return self._snapshot()

    async def status(self) -> SchedulerStatus:
        async with self._lock:
            return self._snapshot()

    async def is_running(self) -> bool:
        async with self._lock:
            return self._running

    # ── Pass ──

    async def process_once(self) -> RunSummary:
        """Run one delivery pass and update run statistics."""
        async with self._lock:
            self._runs_count += 1
            started_at = datetime.now(timezone.utc)
            self._last_run_at = started_at
            summary = RunSummary(run_number=self._runs_count, started_at=started_at)
            failure_probability = self._failure_probability
            alert_url = self._alert_webhook_url
            alert_threshold = self._alert_threshold

        logger.debug("Scheduler run #%d started", summary.run_number, extra={"run_number": summary.run_number})

        try:
            outcomes = await self.service.process_pending(failure_probability)
        except StoreError as exc:
            logger.error(
                "Error processing messages in run #%d: %s", summary.run_number, exc.message,
                extra={"run_number": summary.run_number},
            )
            return summary

        if not outcomes:
            return summary

        summary.processed = len(outcomes)
        summary.succeeded = sum(1 for outcome in outcomes if outcome.success)
        summary.failed = summary.processed - summary.succeeded

        async with self._lock:
            self._messages_sent += summary.succeeded
            if summary.all_failed:
                self._consecutive_all_fail_count += 1
            else:
                self._consecutive_all_fail_count = 0
            consecutive = self._consecutive_all_fail_count

        logger.info(
            "Run #%d completed: %d sent, %d failed",
            summary.run_number, summary.succeeded, summary.failed,
            extra={
                "run_number": summary.run_number,
                "batch_size": summary.processed,
                "consecutive_failures": consecutive,
            },
        )

        if summary.all_failed and alert_threshold > 0 and consecutive >= alert_threshold:
            self._raise_alert(alert_url, summary, consecutive)

        return summary

    def _raise_alert(self, url: str, summary: RunSummary, consecutive: int) -> None:
        if not url or self.notifier is None:
            logger.warning(
                "Alert threshold reached (%d consecutive all-failed runs) but no alert webhook is configured",
                consecutive,
                extra={"run_number": summary.run_number, "consecutive_failures": consecutive},
            )
            return

        alert = FailureAlert(
            run_number=summary.run_number,
            consecutive_failures=consecutive,
            messages_in_batch=summary.processed,
        )
        self.notifier.notify(url, alert, on_delivered=self._record_alert_sent)

    async def _record_alert_sent(self, sent_at: datetime) -> None:
        async with self._lock:
            self._last_alert_sent_at = sent_at

    # ── Loop ──

    async def _run_loop(self, stop_event: asyncio.Event) -> None:
        try:
            while not stop_event.is_set():
                pass_task = asyncio.create_task(self.process_once())
                try:
                    await asyncio.shield(pass_task)
                except asyncio.CancelledError:
                    logger.info("Scheduler cancelled, finishing in-flight run")
                    await self._finish_pass(pass_task)
                    raise
                except Exception:
                    logger.exception("Scheduler run failed")

                if await wait_or_stop(stop_event, self._interval_minutes * 60):
                    break
        finally:
            async with self._lock:
                if self._stop_event is stop_event:
                    self._running = False

    @staticmethod
    async def _finish_pass(pass_task: asyncio.Task) -> None:
        try:
            await pass_task
        except Exception:
            logger.exception("Scheduler run failed during shutdown")

    # ── Internals ──

    def _snapshot(self) -> SchedulerStatus:
        return SchedulerStatus(
            running=self._running,
            interval_minutes=self._interval_minutes,
            messages_sent=self._messages_sent,
            runs_count=self._runs_count,
            consecutive_all_fail_count=self._consecutive_all_fail_count,
            failure_probability=self._failure_probability,
            alert_threshold=self._alert_threshold,
            last_run_at=self._last_run_at,
            last_alert_sent_at=self._last_alert_sent_at,
        )

    def _resolve_interval(self, interval_minutes: Optional[float]) -> float:
        if interval_minutes is not None and interval_minutes > 0:
            return float(interval_minutes)
        if self._default_interval and self._default_interval > 0:
            return float(self._default_interval)
        return FALLBACK_INTERVAL_MINUTES

    @staticmethod
    def _clamp_probability(value: float) -> float:
        clamped = min(max(value, 0.0), 1.0)
        if clamped != value:
            logger.warning("Failure rate %s out of range, clamped to %s", value, clamped)
        return clamped
