"""Channel selection from configuration."""

from typing import Optional

import httpx

from shellgate.config.schemas import NotificationConfig, NotificationMethod
from shellgate.notify.base import NotificationChannel
from shellgate.notify.mock import MockChannel
from shellgate.notify.pushover import PushoverChannel
from shellgate.notify.telegram import TelegramChannel
from shellgate.telemetry.logger import get_logger

logger = get_logger(__name__)


def resolve_method(config: NotificationConfig) -> NotificationMethod:
    """Decide which channel an ``auto`` configuration maps to."""
    if config.method is not NotificationMethod.AUTO:
        return config.method
    if config.has_pushover:
        return NotificationMethod.PUSHOVER
    if config.has_telegram:
        return NotificationMethod.TELEGRAM
    return NotificationMethod.MOCK


def create_channel(
    config: Optional[NotificationConfig] = None,
    approval_timeout_seconds: float = 300.0,
    client: Optional[httpx.AsyncClient] = None,
) -> NotificationChannel:
    """Build the notification channel described by the configuration.

    With ``method: auto`` Pushover is preferred, then Telegram, and the
    mock channel is used when no credentials are configured.

    Args:
        config: Notification configuration
        approval_timeout_seconds: Ledger timeout (sets Pushover expiry)
        client: Optional shared httpx client

    Raises:
        ChannelConfigError: If an explicitly chosen channel lacks credentials
    """
    config = config or NotificationConfig()
    method = resolve_method(config)
    preview = config.command_preview_length

    if method is NotificationMethod.PUSHOVER:
        channel: NotificationChannel = PushoverChannel(
            user_key=config.pushover_user,
            api_token=config.pushover_token,
            expire_seconds=approval_timeout_seconds,
            client=client,
            preview_length=preview,
        )
    elif method is NotificationMethod.TELEGRAM:
        channel = TelegramChannel(
            bot_token=config.telegram_bot_token,
            chat_id=config.telegram_chat_id,
            client=client,
            preview_length=preview,
        )
    else:
        channel = MockChannel(
            auto_approve=config.mock_auto_approve,
            delay_seconds=config.mock_delay_seconds,
            preview_length=preview,
        )

    logger.info("Notification channel selected", channel=channel.name, requested=config.method.value)
    return channel
