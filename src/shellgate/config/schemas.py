"""Configuration schemas using Pydantic for validation."""

from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class NotificationMethod(str, Enum):
    """Supported notification channels."""

    AUTO = "auto"  # Pick from available credentials
    PUSHOVER = "pushover"
    TELEGRAM = "telegram"
    MOCK = "mock"


class AllowlistConfig(BaseModel):
    """Patterns that lower a verdict to LOW."""

    commands: list[str] = Field(
        default_factory=list,
        description="Command patterns (exact, glob or /regex/flags)",
    )
    paths: list[str] = Field(
        default_factory=list,
        description="Working-directory patterns; only downgrade MEDIUM verdicts",
    )


class BlocklistConfig(BaseModel):
    """Patterns that always classify CRITICAL."""

    commands: list[str] = Field(
        default_factory=list,
        description="Command patterns (exact, glob or /regex/flags)",
    )


class RulesConfig(BaseModel):
    """User-supplied classification rules."""

    allowlist: AllowlistConfig = Field(default_factory=AllowlistConfig)
    blocklist: BlocklistConfig = Field(default_factory=BlocklistConfig)

    def to_rule_data(self) -> dict[str, Any]:
        """Plain-data form accepted by RuleSet.from_dict."""
        return self.model_dump()


class ApprovalConfig(BaseModel):
    """Approval ledger configuration."""

    timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="How long a high-risk command waits for a decision",
    )
    sweep_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Interval between sweeps of decided requests",
    )


class NotificationConfig(BaseModel):
    """Notification channel configuration."""

    method: NotificationMethod = Field(
        default=NotificationMethod.AUTO,
        description="Channel to use",
    )
    pushover_user: Optional[str] = Field(default=None, description="Pushover user key")
    pushover_token: Optional[str] = Field(default=None, description="Pushover app token")
    telegram_bot_token: Optional[str] = Field(default=None, description="Telegram bot token")
    telegram_chat_id: Optional[str] = Field(default=None, description="Telegram chat id")
    mock_auto_approve: Optional[bool] = Field(
        default=None,
        description="Mock channel decision (None = never answers)",
    )
    mock_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Delay before the mock channel answers",
    )
    command_preview_length: int = Field(
        default=100,
        ge=10,
        description="Maximum command length shown in a notification",
    )

    @property
    def has_pushover(self) -> bool:
        return bool(self.pushover_user and self.pushover_token)

    @property
    def has_telegram(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)


class AuditConfig(BaseModel):
    """Audit log configuration."""

    log_dir: Optional[Path] = Field(
        default=None,
        description="Directory for shellgate.jsonl (default ./logs)",
    )
    max_file_size: int = Field(
        default=10 * 1024 * 1024,
        gt=0,
        description="Rotate the audit log at this size in bytes",
    )
    max_rotations: int = Field(
        default=5,
        ge=1,
        description="Rotated audit files to keep",
    )


class ExecutorConfig(BaseModel):
    """Command execution configuration."""

    timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Hard limit on command run time",
    )
    max_output_bytes: int = Field(
        default=1024 * 1024,
        gt=0,
        description="Captured stdout/stderr limit per stream",
    )


class ShellGateConfig(BaseModel):
    """Root configuration for shellgate."""

    enabled: bool = Field(
        default=True,
        description="Gate commands (False passes them straight to the executor)",
    )
    workspace_root: str = Field(
        default="/app/workspace",
        description="File writes outside this directory are flagged",
    )
    rules: RulesConfig = Field(default_factory=RulesConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    notification: NotificationConfig = Field(default_factory=NotificationConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    log_level: str = Field(
        default="INFO",
        description="Global log level",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()
