"""Notification webhook client with exponential backoff retry logic"""

import time
from typing import Any, Callable, Dict, Optional

import httpx

from emi_autopay.config import settings
from emi_autopay.domain.exceptions import NotificationDeliveryError
from emi_autopay.infrastructure.observability.metrics import notification_latency_histogram


class NotificationClient:
    """Client for posting user notification events to the delivery service"""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.webhook_url = webhook_url or settings.notification_webhook_url
        self.max_retries = max_retries or settings.webhook_max_retries
        self.backoff_base = settings.webhook_backoff_base if backoff_base is None else backoff_base
        self.timeout = timeout or settings.http_timeout_seconds
        self._sleep = sleep

    def send_event(self, payload: Dict[str, Any]) -> int:
        """
        POST one event, retrying on 5xx responses and network failures.

        Retry strategy:
        - Exponential backoff: base * 2^(attempt-1), i.e. 1s, 2s, 4s, 8s
        - 4xx responses are not retried

        Returns the number of attempts made. Raises NotificationDeliveryError
        once retries are exhausted.
        """
        attempt = 0
        with httpx.Client(timeout=self.timeout) as client:
            while attempt < self.max_retries:
                attempt += 1
                try:
                    with notification_latency_histogram.time():
                        response = client.post(self.webhook_url, json=payload)
                        response.raise_for_status()
                        return attempt

                except httpx.HTTPStatusError as e:
                    if e.response.status_code < 500:
                        raise NotificationDeliveryError(
                            f"Notification rejected with {e.response.status_code}",
                            {"status_code": e.response.status_code, "attempts": attempt},
                        ) from e
                    last_error: Exception = e

                except httpx.RequestError as e:
                    last_error = e

                if attempt < self.max_retries:
                    self._sleep(self.backoff_base * (2 ** (attempt - 1)))

        raise NotificationDeliveryError(
            f"Notification delivery failed after {attempt} attempts: {last_error}",
            {"attempts": attempt},
        )
