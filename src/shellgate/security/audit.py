"""Audit Logging - Append-only JSONL record of gate decisions."""

import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from shellgate.telemetry.logger import get_logger

logger = get_logger(__name__)

LOG_FILE_NAME = "shellgate.jsonl"


class Decision:
    """Values of the ``decision`` field."""

    AUTO_BLOCKED = "auto-blocked"
    AUTO_ALLOWED = "auto-allowed"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMEOUT = "timeout"
    EXECUTED = "executed"


@runtime_checkable
class AuditSink(Protocol):
    """Anything that can record an audit entry.

    ``record`` is fire-and-forget: the gate ignores its return value and
    survives any exception it raises.
    """

    def record(self, entry: dict[str, Any]) -> Any: ...


@dataclass
class AuditEntry:
    """One gate decision.

    Attributes:
        request_id: Correlates entries for the same command
        command: Command as issued
        working_dir: Directory it was (or would have been) run in
        risk_level: Classified level ("low" .. "critical")
        risk_reasons: Classifier reasons
        decision: One of the Decision values
        decided_by: "auto", "user", "timeout" or a channel name
        latency_ms: Time since the request was received
        extra: Additional fields (e.g. exit_code)
    """

    request_id: str
    command: str
    working_dir: str
    risk_level: str
    risk_reasons: list[str]
    decision: str
    decided_by: str
    latency_ms: int
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the flat dictionary handed to an AuditSink."""
        d = {
            "request_id": self.request_id,
            "command": self.command,
            "working_dir": self.working_dir,
            "risk_level": self.risk_level,
            "risk_reasons": list(self.risk_reasons),
            "decision": self.decision,
            "decided_by": self.decided_by,
            "latency_ms": self.latency_ms,
        }
        d.update(self.extra)
        return d


class AuditLogger:
    """Appends audit entries to a rotating JSONL file.

    Example:
        audit = AuditLogger(log_dir=Path("logs"))
        audit.record({"request_id": "abc123", "decision": "auto-blocked", ...})
        recent = audit.get_recent(10)
    """

    def __init__(
        self,
        log_dir: Optional[Path] = None,
        max_file_size: int = 10 * 1024 * 1024,  # 10 MB
        max_rotations: int = 5,
    ) -> None:
        """Initialize the audit logger.

        Args:
            log_dir: Directory for shellgate.jsonl (default ./logs)
            max_file_size: Size at which the log is rotated
            max_rotations: Number of rotated files kept (.1 .. .N)
        """
        self.log_dir = Path(log_dir) if log_dir else Path.cwd() / "logs"
        self.log_path = self.log_dir / LOG_FILE_NAME
        self.max_file_size = max_file_size
        self.max_rotations = max_rotations

        self.log_dir.mkdir(parents=True, exist_ok=True)

        logger.info("AuditLogger initialized", log_path=str(self.log_path))

    def record(self, entry: dict[str, Any]) -> Optional[dict[str, Any]]:
        """Append an entry, stamping it with an ISO-8601 timestamp.

        Args:
            entry: Audit fields

        Returns:
            The record as written, or None if it could not be written
        """
        record = {"timestamp": datetime.now(timezone.utc).isoformat(), **entry}

        try:
            self._rotate_if_needed()
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record, default=str) + "\n")
        except OSError as e:
            logger.error("Failed to write audit log", error=str(e), path=str(self.log_path))
            return None

        logger.debug(
            "Audit entry recorded",
            request_id=record.get("request_id"),
            decision=record.get("decision"),
        )
        return record

    def _rotate_if_needed(self) -> None:
        try:
            if self.log_path.stat().st_size < self.max_file_size:
                return
        except FileNotFoundError:
            return

        # shellgate.jsonl.4 -> .5, ..., shellgate.jsonl -> .1
        for index in range(self.max_rotations - 1, 0, -1):
            source = self._rotated_path(index)
            if source.exists():
                try:
                    os.replace(source, self._rotated_path(index + 1))
                except OSError as e:
                    logger.warning("Failed to shift rotated audit log", path=str(source), error=str(e))

        try:
            os.replace(self.log_path, self._rotated_path(1))
            logger.info("Audit log rotated", path=str(self.log_path))
        except OSError as e:
            logger.error("Failed to rotate audit log", error=str(e))

    def _rotated_path(self, index: int) -> Path:
        return self.log_path.with_name(f"{LOG_FILE_NAME}.{index}")

    def get_recent(self, count: int = 20) -> list[dict[str, Any]]:
        """Get the most recent entries, oldest first.

        Malformed lines are skipped.
        """
        if count <= 0 or not self.log_path.exists():
            return []

        try:
            with open(self.log_path, encoding="utf-8") as f:
                lines = [line for line in f.read().splitlines() if line.strip()]
        except OSError as e:
            logger.error("Failed to read audit log", error=str(e))
            return []

        entries = []
        for line in lines[-count:]:
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return entries

    def search(
        self,
        risk_level: Optional[str] = None,
        decision: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 1000,
    ) -> list[dict[str, Any]]:
        """Filter the most recent ``limit`` entries.

        Args:
            risk_level: Keep only this risk level
            decision: Keep only this decision
            since: Keep entries at or after this time
            until: Keep entries at or before this time
            limit: How many recent entries to scan

        Returns:
            Matching entries, oldest first
        """
        results = []
        for entry in self.get_recent(limit):
            if risk_level and entry.get("risk_level") != risk_level:
                continue
            if decision and entry.get("decision") != decision:
                continue
            if since or until:
                stamp = _parse_timestamp(entry.get("timestamp"))
                if stamp is None:
                    continue
                if since and stamp < _aware(since):
                    continue
                if until and stamp > _aware(until):
                    continue
            results.append(entry)
        return results


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return _aware(datetime.fromisoformat(value))
    except ValueError:
        return None
