"""Notification Channel - Delivers approval requests to a human.

A channel does two things: send a human-readable summary of a pending
request, and poll for the human's answer. The poll races the ledger's
own timer; whichever settles the request first wins.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import httpx

from shellgate.security.errors import PollError
from shellgate.security.ledger import ApprovalOutcome, ApprovalRequest
from shellgate.telemetry.logger import LoggerMixin

DEFAULT_PREVIEW_LENGTH = 100
DEFAULT_HTTP_TIMEOUT = 10.0

TIMEOUT_OUTCOME = ApprovalOutcome(approved=False, decided_by="timeout", reason="timeout")


@dataclass(frozen=True)
class NotificationReceipt:
    """Result of delivering an approval request.

    Attributes:
        notification_id: Channel-specific message id
        correlation_token: Token for poll_for_response (None if the
            delivery cannot be polled)
        timestamp: When the notification was accepted
    """

    notification_id: str
    correlation_token: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def pollable(self) -> bool:
        return self.correlation_token is not None


def truncate_command(command: str, limit: int = DEFAULT_PREVIEW_LENGTH) -> str:
    """Shorten a command to fit notification payload limits."""
    if len(command) <= limit:
        return command
    return command[: max(limit - 3, 0)] + "..."


class NotificationChannel(ABC, LoggerMixin):
    """Base class for channels that ask a human to approve a command.

    Subclasses implement ``send_approval_request`` and
    ``poll_for_response``. HTTP channels share one httpx.AsyncClient,
    which may be injected (tests use httpx.MockTransport).
    """

    name: str = "channel"

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        preview_length: int = DEFAULT_PREVIEW_LENGTH,
        http_timeout: float = DEFAULT_HTTP_TIMEOUT,
    ) -> None:
        self.preview_length = preview_length
        self._http_timeout = http_timeout
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        """HTTP client used for remote calls (created on first use)."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._http_timeout)
        return self._client

    @abstractmethod
    async def send_approval_request(self, request: ApprovalRequest) -> NotificationReceipt:
        """Deliver a summary of the request.

        Raises:
            DeliveryError: If the remote service rejects or cannot be reached
        """

    @abstractmethod
    async def poll_for_response(
        self,
        correlation_token: Optional[str],
        timeout_seconds: float,
    ) -> ApprovalOutcome:
        """Wait for the human's answer, at most ``timeout_seconds``.

        Never raises for transient channel errors; returns a timeout
        outcome if no answer arrives in time.
        """

    def format_lines(self, request: ApprovalRequest) -> list[str]:
        """Body lines shared by all channels."""
        return [
            f"Command: {truncate_command(request.command, self.preview_length)}",
            f"Directory: {request.working_dir}",
            f"Risk: {request.risk_level.label.upper()}",
            f"Reason: {', '.join(request.risk_reasons)}",
            "",
            f"Request ID: {request.id}",
        ]

    async def _poll_until(
        self,
        timeout_seconds: float,
        interval_seconds: float,
        attempt: Callable[[], Awaitable[Optional[ApprovalOutcome]]],
    ) -> ApprovalOutcome:
        """Call ``attempt`` every interval until it yields an outcome.

        PollErrors are logged and retried. Returns the timeout outcome
        once the deadline passes.
        """
        deadline = time.monotonic() + timeout_seconds
        while True:
            try:
                outcome = await attempt()
            except PollError as e:
                self.logger.debug("Poll attempt failed, retrying", channel=self.name, error=str(e))
            else:
                if outcome is not None:
                    return outcome

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return TIMEOUT_OUTCOME
            await asyncio.sleep(min(interval_seconds, remaining))

    @staticmethod
    async def _wait_out(timeout_seconds: float) -> ApprovalOutcome:
        await asyncio.sleep(max(timeout_seconds, 0))
        return TIMEOUT_OUTCOME

    async def aclose(self) -> None:
        """Close the HTTP client if this channel created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
