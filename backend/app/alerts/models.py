"""
models.py — Data structures for scheduler failure alerts.

Defines:
    • AlertKind      — alert identifiers understood by the alert sink
    • FailureAlert   — payload posted when every message keeps failing
    • AlertDelivery  — result of one notification attempt

═══════════════════════════════════════════════════════════════════════════
TRIGGER
═══════════════════════════════════════════════════════════════════════════

A pass is "all failed" when its batch was non-empty and no message was
delivered. Once the number of consecutive all-failed passes reaches the
configured threshold, every further all-failed pass fires another alert:

    pass:       1     2     3     4     5
    outcome:   ✗✗    ✗✗    ✗✗    ✓✗    ✗✗
    counter:    1     2     3     0     1
    threshold 2:      ▲     ▲

Wire format:

    {
        "alert": "consecutive_all_fail",
        "runNumber": 12,
        "consecutiveFailures": 3,
        "messagesInBatch": 2,
        "timestamp": "2025-01-01T12:00:00+00:00",
        "message": "All 2 messages failed for 3 consecutive iterations"
    }
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class AlertKind(str, Enum):
    CONSECUTIVE_ALL_FAIL = "consecutive_all_fail"


@dataclass
class FailureAlert:
    """Raised after ``consecutive_failures`` all-failed passes in a row."""
    run_number: int
    consecutive_failures: int
    messages_in_batch: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    kind: AlertKind = AlertKind.CONSECUTIVE_ALL_FAIL

    @property
    def summary(self) -> str:
        return (
            f"All {self.messages_in_batch} messages failed for "
            f"{self.consecutive_failures} consecutive iterations"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert": self.kind.value,
            "runNumber": self.run_number,
            "consecutiveFailures": self.consecutive_failures,
            "messagesInBatch": self.messages_in_batch,
            "timestamp": self.timestamp.isoformat(),
            "message": self.summary,
        }


@dataclass
class AlertDelivery:
    """Outcome of posting one alert."""
    alert: FailureAlert
    delivered: bool = False
    status_code: Optional[int] = None
    error: Optional[str] = None
    completed_at: Optional[datetime] = None
