"""Pushover channel - Emergency-priority push with receipt polling."""

import os
from typing import Any, Optional

import httpx

from shellgate.notify.base import (
    TIMEOUT_OUTCOME,
    NotificationChannel,
    NotificationReceipt,
)
from shellgate.security.errors import ChannelConfigError, DeliveryError, PollError
from shellgate.security.ledger import ApprovalOutcome, ApprovalRequest

API_URL = "https://api.pushover.net/1"

# Pushover limits for priority 2 (emergency) messages
MIN_RETRY_SECONDS = 30
MAX_EXPIRE_SECONDS = 10800


class PushoverChannel(NotificationChannel):
    """Sends approval requests as Pushover emergency notifications.

    Emergency priority makes Pushover issue a receipt, which is polled
    until the user acknowledges (approve) or the notification expires.

    Example:
        channel = PushoverChannel(user_key="u...", api_token="a...")
        receipt = await channel.send_approval_request(request)
        outcome = await channel.poll_for_response(receipt.correlation_token, 300)
    """

    name = "pushover"

    def __init__(
        self,
        user_key: Optional[str] = None,
        api_token: Optional[str] = None,
        expire_seconds: float = 300,
        poll_interval_seconds: float = 5.0,
        api_url: str = API_URL,
        client: Optional[httpx.AsyncClient] = None,
        **kwargs: Any,
    ) -> None:
        """Initialize the channel.

        Args:
            user_key: Pushover user key (SHELLGATE_PUSHOVER_USER)
            api_token: Pushover application token (SHELLGATE_PUSHOVER_TOKEN)
            expire_seconds: How long Pushover keeps retrying delivery
            poll_interval_seconds: Interval between receipt polls
            api_url: API base URL
            client: Optional shared httpx client

        Raises:
            ChannelConfigError: If credentials are missing
        """
        super().__init__(client=client, **kwargs)
        self._user_key = user_key or os.environ.get("SHELLGATE_PUSHOVER_USER")
        self._api_token = api_token or os.environ.get("SHELLGATE_PUSHOVER_TOKEN")
        if not self._user_key or not self._api_token:
            raise ChannelConfigError(
                "Pushover credentials missing. "
                "Set SHELLGATE_PUSHOVER_USER and SHELLGATE_PUSHOVER_TOKEN."
            )

        self.expire_seconds = int(min(max(expire_seconds, MIN_RETRY_SECONDS), MAX_EXPIRE_SECONDS))
        self.poll_interval_seconds = poll_interval_seconds
        self.api_url = api_url.rstrip("/")

    async def send_approval_request(self, request: ApprovalRequest) -> NotificationReceipt:
        level = request.risk_level.label.upper()
        payload = {
            "token": self._api_token,
            "user": self._user_key,
            "title": f"SHELLGATE: {level}",
            "message": "\n".join(self.format_lines(request)),
            "priority": 2,
            "retry": MIN_RETRY_SECONDS,
            "expire": self.expire_seconds,
            "url": f"shellgate://approve/{request.id}",
            "url_title": "Approve",
        }

        try:
            response = await self.client.post(f"{self.api_url}/messages.json", data=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise DeliveryError(
                f"Pushover send failed: {_error_detail(e.response)}", channel=self.name
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise DeliveryError(f"Pushover send failed: {e}", channel=self.name) from e

        if not isinstance(data, dict):
            raise DeliveryError("Pushover send failed: unexpected response", channel=self.name)

        self.logger.info(
            "Pushover notification sent",
            request_id=request.id,
            receipt=data.get("receipt"),
        )
        return NotificationReceipt(
            notification_id=str(data.get("request", "")),
            correlation_token=data.get("receipt") or None,
        )

    async def poll_for_response(
        self,
        correlation_token: Optional[str],
        timeout_seconds: float,
    ) -> ApprovalOutcome:
        if not correlation_token:
            # No receipt: nothing to poll, the ledger decides
            return await self._wait_out(timeout_seconds)

        async def attempt() -> Optional[ApprovalOutcome]:
            try:
                response = await self.client.get(
                    f"{self.api_url}/receipts/{correlation_token}.json",
                    params={"token": self._api_token},
                )
                response.raise_for_status()
                data = response.json()
            except (httpx.HTTPError, ValueError) as e:
                raise PollError(str(e)) from e

            if not isinstance(data, dict):
                raise PollError("unexpected receipt response")
            if data.get("acknowledged") == 1:
                return ApprovalOutcome(approved=True, decided_by=self.name)
            if data.get("expired") == 1:
                return TIMEOUT_OUTCOME
            return None

        return await self._poll_until(timeout_seconds, self.poll_interval_seconds, attempt)


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    errors = data.get("errors") if isinstance(data, dict) else None
    if isinstance(errors, list) and errors:
        return ", ".join(str(e) for e in errors)
    return f"HTTP {response.status_code}"
