"""Telegram channel - Bot message with inline approve/reject buttons."""

import asyncio
import html
import os
from typing import Any, Optional

import httpx

from shellgate.notify.base import NotificationChannel, NotificationReceipt, truncate_command
from shellgate.security.errors import ChannelConfigError, DeliveryError, PollError
from shellgate.security.ledger import ApprovalOutcome, ApprovalRequest

API_URL = "https://api.telegram.org"


class TelegramChannel(NotificationChannel):
    """Sends approval requests through a Telegram bot.

    The message carries APPROVE / REJECT buttons whose callback data is
    ``approve:<id>`` or ``reject:<id>``. Polling reads ``getUpdates``.

    One instance may poll for many requests at once. Updates are fetched
    under a lock with a shared offset. A button press is kept only while
    a poll for its request is running, so a poll never consumes another
    request's answer and stale presses are dropped.
    """

    name = "telegram"

    def __init__(
        self,
        bot_token: Optional[str] = None,
        chat_id: Optional[str] = None,
        poll_interval_seconds: float = 3.0,
        long_poll_seconds: int = 2,
        api_url: str = API_URL,
        client: Optional[httpx.AsyncClient] = None,
        **kwargs: Any,
    ) -> None:
        """Initialize the channel.

        Args:
            bot_token: Bot token (SHELLGATE_TELEGRAM_BOT_TOKEN)
            chat_id: Chat to notify (SHELLGATE_TELEGRAM_CHAT_ID)
            poll_interval_seconds: Pause between getUpdates calls
            long_poll_seconds: Server-side long-poll timeout per call
            api_url: API base URL
            client: Optional shared httpx client

        Raises:
            ChannelConfigError: If credentials are missing
        """
        super().__init__(client=client, **kwargs)
        self._bot_token = bot_token or os.environ.get("SHELLGATE_TELEGRAM_BOT_TOKEN")
        self._chat_id = chat_id or os.environ.get("SHELLGATE_TELEGRAM_CHAT_ID")
        if not self._bot_token or not self._chat_id:
            raise ChannelConfigError(
                "Telegram credentials missing. "
                "Set SHELLGATE_TELEGRAM_BOT_TOKEN and SHELLGATE_TELEGRAM_CHAT_ID."
            )

        self.poll_interval_seconds = poll_interval_seconds
        self.long_poll_seconds = long_poll_seconds
        self.api_url = api_url.rstrip("/")

        self._offset = 0
        self._awaiting: set[str] = set()
        self._decisions: dict[str, bool] = {}
        self._updates_lock = asyncio.Lock()

    def _method_url(self, method: str) -> str:
        return f"{self.api_url}/bot{self._bot_token}/{method}"

    def format_message(self, request: ApprovalRequest) -> str:
        """Render the request as Telegram HTML."""
        lines = [html.escape(line, quote=False) for line in self.format_lines(request)]
        preview = truncate_command(request.command, self.preview_length)
        lines[0] = f"Command: <code>{html.escape(preview, quote=False)}</code>"
        lines[-1] = f"Request ID: <code>{html.escape(request.id, quote=False)}</code>"
        return "\n".join([f"<b>SHELLGATE: {request.risk_level.label.upper()}</b>", "", *lines])

    async def send_approval_request(self, request: ApprovalRequest) -> NotificationReceipt:
        payload = {
            "chat_id": self._chat_id,
            "text": self.format_message(request),
            "parse_mode": "HTML",
            "reply_markup": {
                "inline_keyboard": [
                    [
                        {"text": "APPROVE ✓", "callback_data": f"approve:{request.id}"},
                        {"text": "REJECT ✗", "callback_data": f"reject:{request.id}"},
                    ]
                ]
            },
        }

        try:
            response = await self.client.post(self._method_url("sendMessage"), json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise DeliveryError(
                f"Telegram send failed: {_description(e.response)}", channel=self.name
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise DeliveryError(f"Telegram send failed: {e}", channel=self.name) from e

        message = data.get("result") if isinstance(data, dict) else None
        if not isinstance(message, dict):
            raise DeliveryError("Telegram send failed: unexpected response", channel=self.name)

        message_id = str(message.get("message_id", ""))
        self.logger.info("Telegram notification sent", request_id=request.id, message_id=message_id)
        return NotificationReceipt(notification_id=message_id, correlation_token=request.id)

    async def poll_for_response(
        self,
        correlation_token: Optional[str],
        timeout_seconds: float,
    ) -> ApprovalOutcome:
        if not correlation_token:
            return await self._wait_out(timeout_seconds)

        async def attempt() -> Optional[ApprovalOutcome]:
            decision = self._decisions.pop(correlation_token, None)
            if decision is None:
                await self._fetch_updates()
                decision = self._decisions.pop(correlation_token, None)
            if decision is None:
                return None
            return ApprovalOutcome(approved=decision, decided_by=self.name)

        self._awaiting.add(correlation_token)
        try:
            return await self._poll_until(timeout_seconds, self.poll_interval_seconds, attempt)
        finally:
            self._awaiting.discard(correlation_token)
            self._decisions.pop(correlation_token, None)

    async def _fetch_updates(self) -> None:
        async with self._updates_lock:
            try:
                response = await self.client.get(
                    self._method_url("getUpdates"),
                    params={"offset": self._offset, "timeout": self.long_poll_seconds},
                    timeout=self.long_poll_seconds + self._http_timeout,
                )
                response.raise_for_status()
                data = response.json()
            except (httpx.HTTPError, ValueError) as e:
                raise PollError(str(e)) from e

            updates = data.get("result") if isinstance(data, dict) else None
            if not isinstance(updates, list):
                raise PollError("unexpected getUpdates response")

            for update in updates:
                if not isinstance(update, dict):
                    continue
                update_id = update.get("update_id")
                if isinstance(update_id, int):
                    self._offset = max(self._offset, update_id + 1)

                callback = update.get("callback_query")
                if not isinstance(callback, dict):
                    continue

                action, _, request_id = str(callback.get("data") or "").partition(":")
                if action not in ("approve", "reject") or not request_id:
                    continue

                if request_id in self._awaiting:
                    self._decisions.setdefault(request_id, action == "approve")
                else:
                    self.logger.debug(
                        "Ignoring button press for a request not being polled",
                        request_id=request_id,
                    )
                await self._answer_callback(callback.get("id"), action)

    async def _answer_callback(self, callback_id: Optional[str], action: str) -> None:
        if not callback_id:
            return
        try:
            await self.client.post(
                self._method_url("answerCallbackQuery"),
                json={
                    "callback_query_id": callback_id,
                    "text": "Approved" if action == "approve" else "Rejected",
                },
            )
        except httpx.HTTPError as e:
            self.logger.debug("Failed to answer callback query", error=str(e))


def _description(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    description = data.get("description") if isinstance(data, dict) else None
    return description or f"HTTP {response.status_code}"
