"""Error taxonomy for the command gate.

Only ``ChannelConfigError`` is meant to escape to callers (at startup).
The rest are raised and absorbed inside the gate: a bad rule degrades to
a rule that never matches, a failed delivery leaves the timeout in charge,
and a failed poll attempt is retried.
"""

from typing import Optional


class ShellGateError(Exception):
    """Base class for shellgate errors."""


class ConfigError(ShellGateError):
    """A user-supplied rule could not be compiled."""

    def __init__(self, message: str, pattern: Optional[str] = None) -> None:
        super().__init__(message)
        self.pattern = pattern


class DeliveryError(ShellGateError):
    """Sending an approval notification failed."""

    def __init__(self, message: str, channel: str = "unknown") -> None:
        super().__init__(message)
        self.channel = channel


class PollError(ShellGateError):
    """A single poll of a notification channel failed."""


class UnknownRequestError(ShellGateError):
    """No pending approval request exists with the given id."""

    def __init__(self, request_id: str) -> None:
        super().__init__(f"No pending request found with id {request_id}")
        self.request_id = request_id


class ChannelConfigError(ShellGateError):
    """A notification channel is missing required credentials."""
