"""
notifier.py — Alert webhook delivery.

Delivery mechanism:
    • One JSON POST of FailureAlert.to_dict() per alert
    • Any 2xx response counts as delivered
    • Runs as a detached task so a slow alert sink never delays a pass

The notifier holds a strong reference to every in-flight task until it
finishes; ``drain()`` waits for them at shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Set

import httpx

from backend.app.alerts.models import AlertDelivery, FailureAlert
from backend.app.core.config import settings

logger = logging.getLogger(__name__)

DeliveredCallback = Callable[[datetime], Awaitable[None]]


class AlertNotifier:
    """
    Posts failure alerts to a webhook in the background.

    Usage:
        notifier = AlertNotifier()
        notifier.notify(url, FailureAlert(run_number=3, consecutive_failures=3,
                                          messages_in_batch=2))
        await notifier.drain()
        await notifier.close()
    """

    def __init__(
        self,
        *,
        timeout_seconds: Optional[float] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._timeout = timeout_seconds or settings.ALERT_TIMEOUT_SECONDS
        self._http_transport = http_transport
        self._http_client: Optional[httpx.AsyncClient] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._http_transport,
                headers={"Content-Type": "application/json"},
            )
        return self._http_client

    def notify(
        self,
        url: str,
        alert: FailureAlert,
        on_delivered: Optional[DeliveredCallback] = None,
    ) -> asyncio.Task:
        """Schedule an alert post and return immediately."""
        task = asyncio.create_task(self._send(url, alert, on_delivered))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _send(
        self,
        url: str,
        alert: FailureAlert,
        on_delivered: Optional[DeliveredCallback],
    ) -> AlertDelivery:
        result = AlertDelivery(alert=alert)
        try:
            client = await self._get_client()
            response = await client.post(url, json=alert.to_dict())
            result.status_code = response.status_code
            result.delivered = response.is_success
            if not result.delivered:
                result.error = f"HTTP {response.status_code}: {response.text[:200]}"
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            result.error = str(exc)

        result.completed_at = datetime.now(timezone.utc)

        if not result.delivered:
            logger.error(
                "Failed to send failure alert for run #%d: %s",
                alert.run_number, result.error,
                extra={"run_number": alert.run_number},
            )
            return result

        logger.warning(
            "Alert sent: %s (run #%d)", alert.summary, alert.run_number,
            extra={
                "run_number": alert.run_number,
                "consecutive_failures": alert.consecutive_failures,
            },
        )
        if on_delivered is not None:
            await on_delivered(result.completed_at)
        return result

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight alerts; tasks still running after ``timeout`` are cancelled."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Cancelled %d unfinished alert notifications", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
