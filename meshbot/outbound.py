"""Outbound collaborators: staff notifications and tracked marketplace links."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, Optional, Protocol
from urllib.parse import urlencode

import httpx

logger = logging.getLogger("meshbot.outbound")


class Notifier(Protocol):
    def notify(self, identity: str, text: str) -> None:
        ...


class LogNotifier:
    """Notifier used when no webhook is configured: staff read the log."""

    def notify(self, identity: str, text: str) -> None:
        logger.info("notify=log conversation=%s text=%s", identity, text)


class WebhookNotifier:
    """Posts handoff notifications to a staff webhook."""

    def __init__(self, url: str, timeout_sec: float = 5.0) -> None:
        self._url = url
        self._timeout = timeout_sec

    def notify(self, identity: str, text: str) -> None:
        """Purpose: Deliver one staff notification over HTTP.
        Inputs/Outputs: Customer identity and message text; no return value.
        Side Effects / State: Performs an HTTP POST.
        Dependencies: httpx.
        Failure Modes: Transport errors and non-2xx statuses raise httpx errors;
            NotificationDispatcher catches and logs them.
        If Removed: Staff are not alerted when a conversation needs a human.
        Testing Notes: Use httpx.MockTransport or a recording notifier instead.
        """
        # Raise on non-2xx so the dispatcher logs the failure.
        response = httpx.post(
            self._url,
            json={"conversation_id": identity, "text": text},
            timeout=self._timeout,
        )
        response.raise_for_status()


class NotificationDispatcher:
    """Fire-and-forget wrapper: failures are logged, never surfaced to the turn."""

    def __init__(self, notifier: Notifier, executor: Optional[ThreadPoolExecutor] = None) -> None:
        self._notifier = notifier
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="notify")

    def dispatch(self, identity: str, text: str) -> Future:
        future = self._executor.submit(self._notifier.notify, identity, text)
        future.add_done_callback(lambda done: self._log_failure(identity, done))
        return future

    @staticmethod
    def _log_failure(identity: str, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.warning("notify=failed conversation=%s error=%s", identity, exc)


class LinkTracker:
    """Wraps marketplace URLs in the click-tracking redirect, or passes them through."""

    def __init__(self, base_url: str = "") -> None:
        self._base_url = base_url.rstrip("/")

    def track_link(self, identity: str, url: str, metadata: Optional[Dict[str, object]] = None) -> str:
        """Purpose: Produce the URL shown to the customer for a catalog link.
        Inputs/Outputs: Identity, raw URL and optional metadata (product id/name);
            returns a tracked redirect URL, or the raw URL when tracking is off.
        Side Effects / State: None; the redirect service records clicks.
        Dependencies: urllib.parse.urlencode.
        Failure Modes: Empty url returns an empty string.
        If Removed: Click attribution for quoted products is lost.
        Testing Notes: With a base URL the original URL must appear encoded in "u".
        """
        # Query string carries identity, target URL and flat metadata.
        if not url:
            return ""
        if not self._base_url:
            return url
        params: Dict[str, object] = {"c": identity, "u": url}
        for key, value in (metadata or {}).items():
            if value is not None:
                params[key] = value
        return f"{self._base_url}/r?{urlencode(params)}"
