"""Command risk classification, approval and audit."""

from shellgate.security.audit import AuditEntry, AuditLogger, AuditSink, Decision
from shellgate.security.classifier import (
    Recommendation,
    RiskClassifier,
    RiskLevel,
    RiskPattern,
    RiskVerdict,
)
from shellgate.security.errors import (
    ChannelConfigError,
    ConfigError,
    DeliveryError,
    PollError,
    ShellGateError,
    UnknownRequestError,
)
from shellgate.security.ledger import (
    ApprovalHandle,
    ApprovalLedger,
    ApprovalOutcome,
    ApprovalRequest,
    ApprovalStatus,
)
from shellgate.security.rules import Rule, RuleKind, RuleSet

__all__ = [
    # Rules
    "Rule",
    "RuleKind",
    "RuleSet",
    # Classification
    "RiskClassifier",
    "RiskLevel",
    "RiskPattern",
    "RiskVerdict",
    "Recommendation",
    # Approval
    "ApprovalLedger",
    "ApprovalHandle",
    "ApprovalOutcome",
    "ApprovalRequest",
    "ApprovalStatus",
    # Audit
    "AuditLogger",
    "AuditEntry",
    "AuditSink",
    "Decision",
    # Errors
    "ShellGateError",
    "ConfigError",
    "DeliveryError",
    "PollError",
    "UnknownRequestError",
    "ChannelConfigError",
]
