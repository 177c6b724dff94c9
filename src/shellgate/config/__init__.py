"""Configuration management for shellgate."""

from shellgate.config.loader import load_config
from shellgate.config.schemas import (
    ApprovalConfig,
    AuditConfig,
    ExecutorConfig,
    NotificationConfig,
    NotificationMethod,
    RulesConfig,
    ShellGateConfig,
)

__all__ = [
    "load_config",
    "ShellGateConfig",
    "RulesConfig",
    "ApprovalConfig",
    "NotificationConfig",
    "NotificationMethod",
    "AuditConfig",
    "ExecutorConfig",
]
