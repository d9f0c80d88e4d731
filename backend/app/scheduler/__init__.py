"""
Periodic delivery scheduler.

This module provides:
- The background loop that delivers one batch of pending messages per interval
- Run statistics and consecutive all-failed tracking
- Failure alert triggering via the alert notifier
"""

from .scheduler import MessageScheduler, RunSummary, SchedulerStatus, wait_or_stop

__all__ = [
    "MessageScheduler",
    "RunSummary",
    "SchedulerStatus",
    "wait_or_stop",
]
