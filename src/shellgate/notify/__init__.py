"""Notification channels for approval requests."""

from shellgate.notify.base import (
    NotificationChannel,
    NotificationReceipt,
    truncate_command,
)
from shellgate.notify.factory import create_channel, resolve_method
from shellgate.notify.mock import MockChannel
from shellgate.notify.pushover import PushoverChannel
from shellgate.notify.telegram import TelegramChannel

__all__ = [
    "NotificationChannel",
    "NotificationReceipt",
    "truncate_command",
    "PushoverChannel",
    "TelegramChannel",
    "MockChannel",
    "create_channel",
    "resolve_method",
]
