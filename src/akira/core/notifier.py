"""
Out-of-band notification delivery.

Provides:
- The Notifier interface consumed by the gateway
- Log, webhook and recording notifiers
- A fire-and-forget dispatcher backed by a worker pool

A delivery failure is logged on its own channel and never reverses the state
transition that triggered it.
"""

import json
import threading
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Optional

from akira.monitoring.logging import get_logger

logger = get_logger(__name__)
delivery_logger = get_logger("akira.notifications")


class NotificationError(Exception):
    """Raised by a notifier when a message could not be delivered."""
    pass


class Notifier(ABC):
    """Delivers a message to an address (email, chat handle, webhook target)."""

    @abstractmethod
    def send(self, address: str, subject: str, body: str) -> None:
        pass


class LogNotifier(Notifier):
    """Development notifier: records that a message went out, never its body."""

    def send(self, address: str, subject: str, body: str) -> None:
        logger.info("notification_sent", address=address, subject=subject, body_length=len(body))


class WebhookNotifier(Notifier):
    """Posts messages as JSON to a webhook."""

    def __init__(self, url: str, headers: Optional[Dict[str, str]] = None, timeout: float = 10.0):
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout

    def send(self, address: str, subject: str, body: str) -> None:
        data = json.dumps({"to": address, "subject": subject, "body": body}).encode("utf-8")
        req = urllib.request.Request(
            self.url,
            data=data,
            headers={
                "Content-Type": "application/json",
                **self.headers,
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:  # nosec B310
                if response.status >= 300:
                    raise NotificationError(f"Webhook returned HTTP {response.status}")
        except urllib.error.URLError as e:
            raise NotificationError(f"Webhook delivery failed: {e.reason}") from e


@dataclass(frozen=True)
class SentMessage:
    address: str
    subject: str
    body: str


class RecordingNotifier(Notifier):
    """Keeps every message in memory. Used by tests and the CLI dry runs."""

    def __init__(self, fail: bool = False):
        self.messages: List[SentMessage] = []
        self.fail = fail
        self._lock = threading.Lock()

    def send(self, address: str, subject: str, body: str) -> None:
        if self.fail:
            raise NotificationError("delivery disabled")
        with self._lock:
            self.messages.append(SentMessage(address, subject, body))

    def last_to(self, address: str) -> Optional[SentMessage]:
        with self._lock:
            for message in reversed(self.messages):
                if message.address == address:
                    return message
        return None


class NotificationDispatcher:
    """
    Fire-and-forget front for a Notifier.

    With max_workers=0 messages are delivered inline on the calling thread;
    failures are still only logged.
    """

    def __init__(self, notifier: Notifier, max_workers: int = 2):
        self.notifier = notifier
        self._executor: Optional[ThreadPoolExecutor] = None
        if max_workers > 0:
            self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="akira-notify")

    def dispatch(self, address: str, subject: str, body: str) -> Optional[Future]:
        """Queue a message. Never raises for delivery problems."""
        if self._executor is None:
            self._deliver(address, subject, body)
            return None
        try:
            return self._executor.submit(self._deliver, address, subject, body)
        except RuntimeError as e:
            # Executor already shut down
            delivery_logger.error("notification_dropped", address=address, subject=subject, detail=str(e))
            return None

    def _deliver(self, address: str, subject: str, body: str) -> None:
        try:
            self.notifier.send(address, subject, body)
        except Exception as e:
            delivery_logger.error(
                "notification_failed",
                address=address,
                subject=subject,
                error=type(e).__name__,
                detail=str(e),
            )

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
