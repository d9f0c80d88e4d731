"""
transport.py — Delivery webhook client.

Delivery mechanism:
    • One JSON POST per message to the configured webhook
    • Authenticated with the ``x-ins-auth-key`` header
    • Only ``202 Accepted`` counts as delivered

Request / response:

    POST <WEBHOOK_URL>
    {"to": "+905551234567", "content": "Hello"}

    202 Accepted
    {"message": "Accepted", "messageId": "67f2f8a8-ea58-4ed0-a6f9-ff217df4d849"}

Network-level errors (connect/read timeouts, resets) are retried with a
short doubling back-off. Malformed requests (bad URL, unsupported scheme),
non-202 statuses and 202 bodies without a messageId raise TransportError
at once; a rejected message is marked failed and can be replayed later.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

import httpx

from backend.app.core.config import settings
from backend.app.core.errors import TransportError
from backend.app.messages.models import WebhookResponse

logger = logging.getLogger(__name__)

AUTH_HEADER = "x-ins-auth-key"
ACCEPTED_STATUS = 202

RETRY_WAIT_SECONDS = 0.5
RETRY_MAX_WAIT_SECONDS = 2.0


class WebhookTransport:
    """
    Sends messages to the delivery webhook.

    Usage:
        transport = WebhookTransport(url, auth_key="secret")
        response = await transport.send("+905551234567", "Hello")
        print(response.message_id)
        await transport.close()
    """

    def __init__(
        self,
        url: str,
        *,
        auth_key: str = "",
        timeout_seconds: float = 30.0,
        retry_count: int = 3,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self._auth_key = auth_key
        self._timeout = timeout_seconds
        self._retry_count = max(0, retry_count)
        self._http_transport = http_transport
        self._http_client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls) -> "WebhookTransport":
        return cls(
            settings.WEBHOOK_URL,
            auth_key=settings.WEBHOOK_AUTH_KEY,
            timeout_seconds=settings.WEBHOOK_TIMEOUT_SECONDS,
            retry_count=settings.WEBHOOK_RETRY_COUNT,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._http_transport,
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                    AUTH_HEADER: self._auth_key,
                },
            )
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def send(self, phone_number: str, content: str) -> WebhookResponse:
        """
        Deliver one message.

        Raises
        ------
        TransportError
            On network failure after retries, or any status other than 202.
        """
        payload = {"to": phone_number, "content": content}
        client = await self._get_client()

        response: Optional[httpx.Response] = None
        last_error: Optional[Exception] = None
        start = time.perf_counter()

        for attempt in range(self._retry_count + 1):
            try:
                response = await client.post(self.url, json=payload)
                break
            except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
                raise TransportError(f"invalid request: {exc}") from exc
            except httpx.TransportError as exc:
                last_error = exc
                if attempt < self._retry_count:
                    wait = min(RETRY_WAIT_SECONDS * (2 ** attempt), RETRY_MAX_WAIT_SECONDS)
                    logger.warning(
                        "Webhook request failed: %s, retrying in %.1fs (attempt %d/%d)",
                        exc, wait, attempt + 1, self._retry_count,
                    )
                    await asyncio.sleep(wait)
            except httpx.HTTPError as exc:
                raise TransportError(f"request failed: {exc}") from exc

        if response is None:
            raise TransportError(f"failed to send request: {last_error}")

        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "Webhook request to %s completed in %.1fms (status: %d)",
            self.url, duration_ms, response.status_code,
            extra={"duration_ms": duration_ms, "status_code": response.status_code},
        )

        if response.status_code != ACCEPTED_STATUS:
            raise TransportError(
                f"unexpected status code: {response.status_code} "
                f"(expected {ACCEPTED_STATUS}), body: {response.text}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise TransportError(f"invalid response body: {exc}") from exc

        webhook_response = WebhookResponse.from_json(data if isinstance(data, dict) else {})
        if not webhook_response.message_id:
            raise TransportError("response is missing messageId", status_code=response.status_code)
        return webhook_response
