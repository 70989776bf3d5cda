"""Notifier HTTP client with exponential backoff retry logic"""

import asyncio
import logging
from typing import Any, Dict, Optional, Sequence, Tuple

import httpx

from hostel_billing.config import settings
from hostel_billing.domain.models import NotificationMessage, NotifyOutcome
from hostel_billing.infrastructure.observability.metrics import notifier_failure_counter, notifier_latency_histogram

logger = logging.getLogger(__name__)


class NotifierClient:
    """Client for the SMS notifier service. Delivery failures come back as outcomes, not exceptions."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.notifier_base_url
        self.timeout = timeout or settings.http_timeout_seconds
        self.api_key = api_key if api_key is not None else settings.notifier_api_key
        self.max_retries = settings.notifier_max_retries
        self.backoff_base = settings.notifier_backoff_base
        self.transport = transport

    async def notify(self, recipient: str, message: NotificationMessage) -> NotifyOutcome:
        """Send one message to one recipient"""
        return await self._post("/notify", {"to": recipient, **_message_body(message)})

    async def notify_many(self, messages: Sequence[Tuple[str, NotificationMessage]]) -> NotifyOutcome:
        """
        Send a batch of (recipient, message) pairs in a single call.

        The gateway reports each message separately in `results`; the top-level
        outcome is delivered only when every message was.
        """
        if not messages:
            return NotifyOutcome(delivered=False, reason="No messages to send")
        body = {"messages": [{"to": recipient, **_message_body(message)} for recipient, message in messages]}
        return await self._post("/notify/batch", body)

    async def _post(self, path: str, payload: Dict[str, Any]) -> NotifyOutcome:
        """
        POST with retry.

        Retry strategy:
        - Exponential backoff: base, 2*base, 4*base ... (base * 2^(attempt-1))
        - Retries on 5xx errors and network failures; 4xx is final
        - Tracks latency histogram and failure counter
        """
        headers = {"X-Api-Key": self.api_key} if self.api_key else {}
        attempt = 0
        last_reason: Optional[str] = None

        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            while attempt < self.max_retries:
                try:
                    with notifier_latency_histogram.time():
                        response = await client.post(path, json=payload, headers=headers)
                    if 400 <= response.status_code < 500:
                        notifier_failure_counter.inc()
                        return NotifyOutcome(delivered=False, reason=f"Notifier rejected request: {response.status_code}")
                    response.raise_for_status()
                    return _parse_outcome(response)

                except (httpx.HTTPStatusError, httpx.RequestError) as e:
                    attempt += 1
                    notifier_failure_counter.inc()
                    last_reason = _describe(e, self.timeout)
                    logger.warning(
                        "Notifier call failed",
                        extra={"path": path, "attempt": attempt, "reason": last_reason},
                    )
                    if attempt >= self.max_retries:
                        break
                    backoff = self.backoff_base * (2 ** (attempt - 1))
                    await asyncio.sleep(backoff)

        return NotifyOutcome(delivered=False, reason=last_reason)


def _message_body(message: NotificationMessage) -> Dict[str, Any]:
    return {"template": message.template, "params": message.params}


def _parse_outcome(response: httpx.Response) -> NotifyOutcome:
    try:
        data = response.json()
    except ValueError:
        return NotifyOutcome(delivered=True)
    results = [
        NotifyOutcome(delivered=bool(item.get("delivered", False)), reason=item.get("reason"))
        for item in data.get("results", [])
    ]
    return NotifyOutcome(delivered=bool(data.get("delivered", True)), reason=data.get("reason"), results=results)


def _describe(error: Exception, timeout: float) -> str:
    if isinstance(error, httpx.TimeoutException):
        return f"Notifier timeout after {timeout}s"
    if isinstance(error, httpx.HTTPStatusError):
        return f"Notifier error: {error.response.status_code}"
    return f"Notifier unreachable: {error}"
