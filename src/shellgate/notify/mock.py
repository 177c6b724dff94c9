"""Mock channel - For environments without notification credentials."""

import asyncio
from typing import Any, Optional

from shellgate.notify.base import NotificationChannel, NotificationReceipt
from shellgate.security.ledger import ApprovalOutcome, ApprovalRequest


class MockChannel(NotificationChannel):
    """A channel that never leaves the process.

    With ``auto_approve=None`` (the default) it is a no-op: nothing is
    polled and requests are resolved by manual approve/reject or by the
    ledger's timeout. With a boolean it answers every request with that
    decision after ``delay_seconds``.
    """

    name = "mock"

    def __init__(
        self,
        auto_approve: Optional[bool] = None,
        delay_seconds: float = 1.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.auto_approve = auto_approve
        self.delay_seconds = delay_seconds
        self.sent: list[ApprovalRequest] = []

    async def send_approval_request(self, request: ApprovalRequest) -> NotificationReceipt:
        self.sent.append(request)
        self.logger.info(
            "Mock notification",
            request_id=request.id,
            command=request.command[:50],
            auto_approve=self.auto_approve,
        )
        return NotificationReceipt(
            notification_id=f"mock-{request.id}",
            correlation_token=request.id if self.auto_approve is not None else None,
        )

    async def poll_for_response(
        self,
        correlation_token: Optional[str],
        timeout_seconds: float,
    ) -> ApprovalOutcome:
        if correlation_token is None or self.auto_approve is None:
            return await self._wait_out(timeout_seconds)

        if self.delay_seconds >= timeout_seconds:
            return await self._wait_out(timeout_seconds)

        await asyncio.sleep(self.delay_seconds)
        return ApprovalOutcome(approved=self.auto_approve, decided_by=self.name)
