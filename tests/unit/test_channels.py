"""Tests for notification channels."""

import asyncio
import json
import re
from datetime import datetime, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from shellgate.notify.base import TIMEOUT_OUTCOME, NotificationReceipt, truncate_command
from shellgate.notify.mock import MockChannel
from shellgate.notify.pushover import MAX_EXPIRE_SECONDS, MIN_RETRY_SECONDS, PushoverChannel
from shellgate.notify.telegram import TelegramChannel
from shellgate.security.classifier import RiskLevel
from shellgate.security.errors import ChannelConfigError, DeliveryError
from shellgate.security.ledger import ApprovalRequest, ApprovalStatus


def make_request(
    request_id: str = "abc12345",
    command: str = "rm -rf ./build",
    working_dir: str = "/app/workspace",
    risk_reasons: tuple[str, ...] = ("destructive_command",),
) -> ApprovalRequest:
    return ApprovalRequest(
        id=request_id,
        command=command,
        working_dir=working_dir,
        risk_level=RiskLevel.HIGH,
        risk_reasons=risk_reasons,
        created_at=datetime.now(timezone.utc),
        status=ApprovalStatus.PENDING,
    )


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestHelpers:
    """Tests for shared channel helpers."""

    def test_truncate_short_command(self) -> None:
        """Should leave short commands alone."""
        assert truncate_command("ls -la") == "ls -la"

    def test_truncate_long_command(self) -> None:
        """Should cut long commands to the limit with an ellipsis."""
        preview = truncate_command("x" * 150)
        assert len(preview) == 100
        assert preview.endswith("...")

    def test_receipt_pollable(self) -> None:
        """A receipt is pollable only with a correlation token."""
        assert NotificationReceipt("n1", "token").pollable is True
        assert NotificationReceipt("n1").pollable is False

    def test_format_lines(self) -> None:
        """Should include command, directory, risk, reasons and id."""
        lines = MockChannel().format_lines(make_request())
        assert lines[0] == "Command: rm -rf ./build"
        assert "Risk: HIGH" in lines
        assert "Reason: destructive_command" in lines
        assert lines[-1] == "Request ID: abc12345"


class TestPushoverChannel:
    """Tests for PushoverChannel."""

    def test_requires_credentials(self) -> None:
        """Should refuse to start without credentials."""
        with pytest.raises(ChannelConfigError):
            PushoverChannel()

    def test_env_credentials(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Should read credentials from the environment."""
        monkeypatch.setenv("SHELLGATE_PUSHOVER_USER", "user")
        monkeypatch.setenv("SHELLGATE_PUSHOVER_TOKEN", "token")
        assert PushoverChannel().name == "pushover"

    def test_expire_clamped(self) -> None:
        """Expiry should stay within Pushover's limits."""
        assert PushoverChannel("u", "t", expire_seconds=5).expire_seconds == MIN_RETRY_SECONDS
        assert PushoverChannel("u", "t", expire_seconds=99999).expire_seconds == MAX_EXPIRE_SECONDS
        assert PushoverChannel("u", "t", expire_seconds=300).expire_seconds == 300

    @pytest.mark.asyncio
    async def test_send(self) -> None:
        """Should post an emergency notification and return the receipt."""
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert request.url.path == "/1/messages.json"
            seen.append({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
            return httpx.Response(200, json={"status": 1, "request": "req-1", "receipt": "rcpt-1"})

        channel = PushoverChannel("user", "token", client=mock_client(handler))
        receipt = await channel.send_approval_request(make_request())

        assert receipt.notification_id == "req-1"
        assert receipt.correlation_token == "rcpt-1"
        form = seen[0]
        assert form["priority"] == "2"
        assert form["expire"] == "300"
        assert form["retry"] == str(MIN_RETRY_SECONDS)
        assert form["title"] == "SHELLGATE: HIGH"
        assert "rm -rf ./build" in form["message"]

    @pytest.mark.asyncio
    async def test_send_api_error(self) -> None:
        """Should raise DeliveryError carrying the API's errors."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"status": 0, "errors": ["user identifier is invalid"]})

        channel = PushoverChannel("user", "token", client=mock_client(handler))
        with pytest.raises(DeliveryError) as exc_info:
            await channel.send_approval_request(make_request())
        assert "user identifier is invalid" in str(exc_info.value)
        assert exc_info.value.channel == "pushover"

    @pytest.mark.asyncio
    async def test_send_network_error(self) -> None:
        """Should raise DeliveryError when the API is unreachable."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        channel = PushoverChannel("user", "token", client=mock_client(handler))
        with pytest.raises(DeliveryError):
            await channel.send_approval_request(make_request())

    @pytest.mark.asyncio
    async def test_send_unexpected_body(self) -> None:
        """Should raise DeliveryError when the body is not an object."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=["ok"])

        channel = PushoverChannel("user", "token", client=mock_client(handler))
        with pytest.raises(DeliveryError):
            await channel.send_approval_request(make_request())

    @pytest.mark.asyncio
    async def test_poll_unexpected_body_is_retried(self) -> None:
        """A receipt body that is not an object should be retried."""
        responses = iter(
            [
                httpx.Response(200, json=[1, 2]),
                httpx.Response(200, json={"acknowledged": 1, "expired": 0}),
            ]
        )

        channel = PushoverChannel(
            "user",
            "token",
            poll_interval_seconds=0.01,
            client=mock_client(lambda request: next(responses)),
        )
        outcome = await channel.poll_for_response("rcpt-1", timeout_seconds=5)
        assert outcome.approved is True

    @pytest.mark.asyncio
    async def test_poll_acknowledged(self) -> None:
        """Should approve once the receipt is acknowledged."""
        responses = iter(
            [
                httpx.Response(500),
                httpx.Response(200, json={"acknowledged": 0, "expired": 0}),
                httpx.Response(200, json={"acknowledged": 1, "expired": 0}),
            ]
        )

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/1/receipts/rcpt-1.json"
            return next(responses)

        channel = PushoverChannel(
            "user", "token", poll_interval_seconds=0.01, client=mock_client(handler)
        )
        outcome = await channel.poll_for_response("rcpt-1", timeout_seconds=5)

        assert outcome.approved is True
        assert outcome.decided_by == "pushover"

    @pytest.mark.asyncio
    async def test_poll_expired(self) -> None:
        """Should report a timeout when Pushover gives up."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"acknowledged": 0, "expired": 1})

        channel = PushoverChannel("user", "token", client=mock_client(handler))
        assert await channel.poll_for_response("rcpt-1", timeout_seconds=5) == TIMEOUT_OUTCOME

    @pytest.mark.asyncio
    async def test_poll_times_out(self) -> None:
        """Should stop polling at the deadline."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"acknowledged": 0, "expired": 0})

        channel = PushoverChannel(
            "user", "token", poll_interval_seconds=0.01, client=mock_client(handler)
        )
        outcome = await channel.poll_for_response("rcpt-1", timeout_seconds=0.05)
        assert outcome == TIMEOUT_OUTCOME

    @pytest.mark.asyncio
    async def test_poll_without_receipt(self) -> None:
        """Should wait out the timeout when there is nothing to poll."""
        channel = PushoverChannel("user", "token")
        assert await channel.poll_for_response(None, timeout_seconds=0.01) == TIMEOUT_OUTCOME


class TestTelegramChannel:
    """Tests for TelegramChannel."""

    def test_requires_credentials(self) -> None:
        """Should refuse to start without credentials."""
        with pytest.raises(ChannelConfigError):
            TelegramChannel(bot_token="token")

    @pytest.mark.asyncio
    async def test_send(self) -> None:
        """Should send a message with approve/reject buttons."""
        sent: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/botTOKEN/sendMessage"
            sent.append(json.loads(request.content))
            return httpx.Response(200, json={"ok": True, "result": {"message_id": 42}})

        channel = TelegramChannel("TOKEN", "1234", client=mock_client(handler))
        receipt = await channel.send_approval_request(make_request())

        assert receipt.notification_id == "42"
        assert receipt.correlation_token == "abc12345"
        payload = sent[0]
        assert payload["chat_id"] == "1234"
        assert payload["parse_mode"] == "HTML"
        assert "<code>rm -rf ./build</code>" in payload["text"]
        buttons = payload["reply_markup"]["inline_keyboard"][0]
        assert [b["callback_data"] for b in buttons] == ["approve:abc12345", "reject:abc12345"]

    def test_message_escapes_markup(self) -> None:
        """Command, directory and reasons should not leak markup."""
        channel = TelegramChannel("TOKEN", "1234")
        text = channel.format_message(
            make_request(
                command="grep -r `whoami` <src> && echo a_b",
                working_dir="/app/my_proj",
                risk_reasons=("network_request", "sudo_usage"),
            )
        )

        assert text.startswith("<b>SHELLGATE: HIGH</b>")
        assert "Command: <code>grep -r `whoami` &lt;src&gt; &amp;&amp; echo a_b</code>" in text
        assert "Directory: /app/my_proj" in text
        assert "Reason: network_request, sudo_usage" in text
        assert "Request ID: <code>abc12345</code>" in text
        assert re.findall(r"</?(\w+)>", text) == ["b", "b", "code", "code", "code", "code"]

    @pytest.mark.asyncio
    async def test_send_api_error(self) -> None:
        """Should raise DeliveryError with the API description."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"ok": False, "description": "Unauthorized"})

        channel = TelegramChannel("TOKEN", "1234", client=mock_client(handler))
        with pytest.raises(DeliveryError) as exc_info:
            await channel.send_approval_request(make_request())
        assert "Unauthorized" in str(exc_info.value)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{"ok": True, "result": True}, ["ok"], {"ok": True}])
    async def test_send_unexpected_body(self, body) -> None:
        """Should raise DeliveryError when the result is not a message."""
        channel = TelegramChannel(
            "TOKEN", "1234", client=mock_client(lambda request: httpx.Response(200, json=body))
        )
        with pytest.raises(DeliveryError):
            await channel.send_approval_request(make_request())

    @staticmethod
    def _updates_handler(updates: list[dict], answered: list[dict], empty_calls: int = 0):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/getUpdates"):
                calls["n"] += 1
                if calls["n"] <= empty_calls:
                    return httpx.Response(200, json={"ok": True, "result": []})
                offset = int(request.url.params.get("offset", 0))
                result = [u for u in updates if u["update_id"] >= offset]
                return httpx.Response(200, json={"ok": True, "result": result})
            if request.url.path.endswith("/answerCallbackQuery"):
                answered.append(json.loads(request.content))
                return httpx.Response(200, json={"ok": True, "result": True})
            return httpx.Response(404)

        return handler

    @pytest.mark.asyncio
    async def test_poll_approve(self) -> None:
        """Should approve when the APPROVE button is pressed."""
        answered: list[dict] = []
        updates = [
            {"update_id": 10, "message": {"text": "hello"}},
            {"update_id": 11, "callback_query": {"id": "cb1", "data": "approve:abc12345"}},
        ]
        channel = TelegramChannel(
            "TOKEN",
            "1234",
            poll_interval_seconds=0.01,
            client=mock_client(self._updates_handler(updates, answered)),
        )

        outcome = await channel.poll_for_response("abc12345", timeout_seconds=5)

        assert outcome.approved is True
        assert outcome.decided_by == "telegram"
        assert answered == [{"callback_query_id": "cb1", "text": "Approved"}]
        assert channel._offset == 12

    @pytest.mark.asyncio
    async def test_poll_reject(self) -> None:
        """Should reject when the REJECT button is pressed."""
        updates = [{"update_id": 1, "callback_query": {"id": "cb1", "data": "reject:abc12345"}}]
        channel = TelegramChannel(
            "TOKEN",
            "1234",
            poll_interval_seconds=0.01,
            client=mock_client(self._updates_handler(updates, [])),
        )

        outcome = await channel.poll_for_response("abc12345", timeout_seconds=5)
        assert outcome.approved is False
        assert outcome.decided_by == "telegram"

    @pytest.mark.asyncio
    async def test_concurrent_polls_keep_each_answer(self) -> None:
        """Answers for other requests should not be lost."""
        updates = [
            {"update_id": 1, "callback_query": {"id": "cb1", "data": "reject:bbbb"}},
            {"update_id": 2, "callback_query": {"id": "cb2", "data": "approve:aaaa"}},
        ]
        # Buttons are pressed once both polls are running
        channel = TelegramChannel(
            "TOKEN",
            "1234",
            poll_interval_seconds=0.01,
            client=mock_client(self._updates_handler(updates, [], empty_calls=1)),
        )

        first, second = await asyncio.gather(
            channel.poll_for_response("aaaa", timeout_seconds=5),
            channel.poll_for_response("bbbb", timeout_seconds=5),
        )
        assert first.approved is True
        assert second.approved is False

    @pytest.mark.asyncio
    async def test_poll_ignores_unrelated_callbacks(self) -> None:
        """Should time out when no matching button is pressed."""
        updates = [{"update_id": 1, "callback_query": {"id": "cb1", "data": "approve:other"}}]
        channel = TelegramChannel(
            "TOKEN",
            "1234",
            poll_interval_seconds=0.01,
            client=mock_client(self._updates_handler(updates, [])),
        )

        outcome = await channel.poll_for_response("abc12345", timeout_seconds=0.05)
        assert outcome == TIMEOUT_OUTCOME
        assert channel._decisions == {}

    @pytest.mark.asyncio
    async def test_stale_presses_are_not_kept(self) -> None:
        """Presses for requests nobody polls should be answered and dropped."""
        answered: list[dict] = []
        updates = [
            {"update_id": i, "callback_query": {"id": f"s{i}", "data": f"approve:stale{i}"}}
            for i in range(50)
        ]
        updates.append(
            {"update_id": 50, "callback_query": {"id": "live", "data": "approve:abc12345"}}
        )
        channel = TelegramChannel(
            "TOKEN",
            "1234",
            poll_interval_seconds=0.01,
            client=mock_client(self._updates_handler(updates, answered)),
        )

        outcome = await channel.poll_for_response("abc12345", timeout_seconds=5)

        assert outcome.approved is True
        assert len(answered) == 51
        assert channel._decisions == {}
        assert channel._awaiting == set()

    @pytest.mark.asyncio
    async def test_poll_survives_unexpected_body(self) -> None:
        """A getUpdates result that is not a list should be retried."""
        bodies = iter(
            [
                {"ok": True, "result": {"update_id": 1}},
                {
                    "ok": True,
                    "result": [
                        "junk",
                        {"update_id": 2, "callback_query": {"id": "c", "data": "reject:abc12345"}},
                    ],
                },
            ]
        )

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/getUpdates"):
                return httpx.Response(200, json=next(bodies))
            return httpx.Response(200, json={"ok": True, "result": True})

        channel = TelegramChannel(
            "TOKEN", "1234", poll_interval_seconds=0.01, client=mock_client(handler)
        )
        outcome = await channel.poll_for_response("abc12345", timeout_seconds=5)
        assert outcome.approved is False
        assert outcome.decided_by == "telegram"
        assert channel._offset == 3

    @pytest.mark.asyncio
    async def test_poll_survives_errors(self) -> None:
        """Should retry after a failed getUpdates call."""
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/getUpdates"):
                calls["n"] += 1
                if calls["n"] == 1:
                    return httpx.Response(502)
                return httpx.Response(
                    200,
                    json={
                        "ok": True,
                        "result": [
                            {"update_id": 5, "callback_query": {"id": "c", "data": "approve:abc12345"}}
                        ],
                    },
                )
            return httpx.Response(200, json={"ok": True})

        channel = TelegramChannel(
            "TOKEN", "1234", poll_interval_seconds=0.01, client=mock_client(handler)
        )
        outcome = await channel.poll_for_response("abc12345", timeout_seconds=5)
        assert outcome.approved is True
        assert calls["n"] == 2


class TestMockChannel:
    """Tests for MockChannel."""

    @pytest.mark.asyncio
    async def test_noop_by_default(self) -> None:
        """Should record the request and return an unpollable receipt."""
        channel = MockChannel()
        receipt = await channel.send_approval_request(make_request())

        assert receipt.pollable is False
        assert [r.id for r in channel.sent] == ["abc12345"]

    @pytest.mark.asyncio
    async def test_auto_approve(self) -> None:
        """Should approve after the delay."""
        channel = MockChannel(auto_approve=True, delay_seconds=0.01)
        receipt = await channel.send_approval_request(make_request())

        outcome = await channel.poll_for_response(receipt.correlation_token, timeout_seconds=5)
        assert outcome.approved is True
        assert outcome.decided_by == "mock"

    @pytest.mark.asyncio
    async def test_auto_reject(self) -> None:
        """Should reject after the delay."""
        channel = MockChannel(auto_approve=False, delay_seconds=0.01)
        receipt = await channel.send_approval_request(make_request())

        outcome = await channel.poll_for_response(receipt.correlation_token, timeout_seconds=5)
        assert outcome.approved is False

    @pytest.mark.asyncio
    async def test_delay_longer_than_timeout(self) -> None:
        """Should time out when the delay exceeds the timeout."""
        channel = MockChannel(auto_approve=True, delay_seconds=10)
        outcome = await channel.poll_for_response("abc12345", timeout_seconds=0.05)
        assert outcome == TIMEOUT_OUTCOME


class TestClientLifecycle:
    """Tests for HTTP client ownership."""

    @pytest.mark.asyncio
    async def test_injected_client_not_closed(self) -> None:
        """Should leave an injected client open."""
        client = mock_client(lambda request: httpx.Response(200))
        channel = PushoverChannel("user", "token", client=client)
        await channel.aclose()
        assert client.is_closed is False
        await client.aclose()

    @pytest.mark.asyncio
    async def test_owned_client_closed(self) -> None:
        """Should close a client it created."""
        channel = PushoverChannel("user", "token")
        client = channel.client
        await channel.aclose()
        assert client.is_closed is True
