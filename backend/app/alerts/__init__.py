"""
alerts — Failure alerting for the delivery scheduler.

Sub-modules:
    models    — FailureAlert payload and delivery result
    notifier  — Fire-and-forget webhook poster with task tracking
"""

from .models import AlertDelivery, AlertKind, FailureAlert
from .notifier import AlertNotifier

__all__ = [
    "AlertDelivery",
    "AlertKind",
    "AlertNotifier",
    "FailureAlert",
]
