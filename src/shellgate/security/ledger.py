"""Approval Ledger - Outstanding approval requests and their resolution.

Each request owns a countdown timer and an asyncio future. A request
leaves ``pending`` exactly once: whichever of approve, reject or the
timer gets there first wins, and later attempts are silent no-ops.
All three paths go through the same settlement routine, so callers see
one outcome shape regardless of who decided.

Callers only ever receive ``ApprovalRequest`` snapshots. The live
``_LedgerEntry`` (with its future and timer handle) never leaves this
module.
"""

import asyncio
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable, Optional

from shellgate.security.classifier import RiskLevel
from shellgate.security.errors import UnknownRequestError
from shellgate.telemetry.logger import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300.0
DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0
TIMEOUT_ENV_VAR = "SHELLGATE_TIMEOUT_SECONDS"

# Terminal entries stay queryable for this many timeout periods
RETENTION_FACTOR = 2


class ApprovalStatus(str, Enum):
    """Lifecycle state of an approval request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self is not ApprovalStatus.PENDING


@dataclass(frozen=True)
class ApprovalOutcome:
    """The decision delivered once per request.

    Attributes:
        approved: Whether the command may run
        decided_by: "user", "auto", "timeout" or a channel name
        reason: Optional explanation (e.g. "timeout")
    """

    approved: bool
    decided_by: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class ApprovalRequest:
    """Read-only snapshot of a request held by the ledger."""

    id: str
    command: str
    working_dir: str
    risk_level: RiskLevel
    risk_reasons: tuple[str, ...]
    created_at: datetime
    status: ApprovalStatus


@dataclass(frozen=True)
class ApprovalHandle:
    """Returned by ``ApprovalLedger.add``.

    Attributes:
        id: Request identifier, used for approve/reject and correlation
        completion: Future that settles exactly once with an ApprovalOutcome
    """

    id: str
    completion: "asyncio.Future[ApprovalOutcome]"

    def __await__(self):
        return self.completion.__await__()


@dataclass
class _LedgerEntry:
    id: str
    command: str
    working_dir: str
    risk_level: RiskLevel
    risk_reasons: tuple[str, ...]
    created_at: datetime
    created_monotonic: float
    loop: asyncio.AbstractEventLoop
    future: "asyncio.Future[ApprovalOutcome]"
    status: ApprovalStatus = ApprovalStatus.PENDING
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    def snapshot(self) -> ApprovalRequest:
        return ApprovalRequest(
            id=self.id,
            command=self.command,
            working_dir=self.working_dir,
            risk_level=self.risk_level,
            risk_reasons=self.risk_reasons,
            created_at=self.created_at,
            status=self.status,
        )


def resolve_timeout(timeout_seconds: Optional[float] = None) -> float:
    """Pick the approval timeout.

    ``SHELLGATE_TIMEOUT_SECONDS`` wins over the explicit argument, which
    wins over the 300 s default. Unparseable or non-positive values are
    ignored.
    """
    raw = os.environ.get(TIMEOUT_ENV_VAR)
    if raw:
        try:
            value = float(raw)
        except ValueError:
            logger.warning("Ignoring invalid timeout override", env=TIMEOUT_ENV_VAR, value=raw)
        else:
            if value > 0:
                return value
    if timeout_seconds is not None and timeout_seconds > 0:
        return float(timeout_seconds)
    return DEFAULT_TIMEOUT_SECONDS


def generate_request_id() -> str:
    """Generate a short request id."""
    return uuid.uuid4().hex[:8]


class ApprovalLedger:
    """In-memory store of approval requests.

    Safe to share between many concurrent commands. Mutations of the
    request map happen under a lock, and futures/timers are only touched
    on the event loop that created them, so approve/reject may also be
    called from another thread (e.g. an operator console).

    Example:
        ledger = ApprovalLedger(timeout_seconds=120)
        handle = ledger.add("rm -rf ./build", "/app/workspace", RiskLevel.HIGH)
        ...
        ledger.approve(handle.id)
        outcome = await handle.completion  # ApprovalOutcome(approved=True, ...)
    """

    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the ledger.

        Args:
            timeout_seconds: Per-instance approval timeout (the
                SHELLGATE_TIMEOUT_SECONDS environment variable overrides it)
            sweep_interval_seconds: How often terminal entries are swept
            clock: Monotonic clock used for entry ages
        """
        self.timeout_seconds = resolve_timeout(timeout_seconds)
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: dict[str, _LedgerEntry] = {}
        self._lock = threading.Lock()
        self._sweep_handle: Optional[asyncio.TimerHandle] = None
        self._sweep_loop: Optional[asyncio.AbstractEventLoop] = None
        self._destroyed = False

        logger.info(
            "ApprovalLedger initialized",
            timeout_seconds=self.timeout_seconds,
            sweep_interval_seconds=sweep_interval_seconds,
        )

    @property
    def retention_seconds(self) -> float:
        """How long terminal entries remain queryable."""
        return self.timeout_seconds * RETENTION_FACTOR

    def add(
        self,
        command: str,
        working_dir: str,
        risk_level: RiskLevel,
        risk_reasons: Iterable[str] = (),
        request_id: Optional[str] = None,
    ) -> ApprovalHandle:
        """Register a pending request and start its countdown.

        Must be called from a running event loop.

        Args:
            command: Command awaiting approval
            working_dir: Directory it would run in
            risk_level: Classified risk level
            risk_reasons: Reasons from the classifier
            request_id: Caller-supplied id (generated if omitted)

        Returns:
            ApprovalHandle whose completion settles exactly once

        Raises:
            ValueError: If the id is already held by the ledger
            RuntimeError: If the ledger has been destroyed
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[ApprovalOutcome] = loop.create_future()

        with self._lock:
            if self._destroyed:
                raise RuntimeError("ApprovalLedger has been destroyed")

            rid = request_id or generate_request_id()
            while request_id is None and rid in self._entries:
                rid = generate_request_id()
            if rid in self._entries:
                raise ValueError(f"Duplicate approval request id: {rid}")

            entry = _LedgerEntry(
                id=rid,
                command=command,
                working_dir=working_dir,
                risk_level=risk_level,
                risk_reasons=tuple(risk_reasons),
                created_at=datetime.now(timezone.utc),
                created_monotonic=self._clock(),
                loop=loop,
                future=future,
            )
            entry.timer = loop.call_later(self.timeout_seconds, self._expire, rid)
            self._entries[rid] = entry
            self._ensure_sweep(loop)

        logger.info(
            "Approval request registered",
            request_id=rid,
            command=command[:50],
            risk_level=risk_level.label,
            timeout_seconds=self.timeout_seconds,
        )
        return ApprovalHandle(id=rid, completion=future)

    def approve(self, request_id: str, decided_by: str = "user") -> bool:
        """Approve a pending request.

        Returns:
            False (and does nothing) if the id is unknown or already decided
        """
        return self._settle(
            request_id,
            ApprovalStatus.APPROVED,
            ApprovalOutcome(approved=True, decided_by=decided_by),
        )

    def reject(
        self,
        request_id: str,
        decided_by: str = "user",
        reason: Optional[str] = None,
    ) -> bool:
        """Reject a pending request.

        Returns:
            False (and does nothing) if the id is unknown or already decided
        """
        return self._settle(
            request_id,
            ApprovalStatus.REJECTED,
            ApprovalOutcome(approved=False, decided_by=decided_by, reason=reason),
        )

    def get(self, request_id: str) -> Optional[ApprovalRequest]:
        """Get a snapshot of a request, pending or recently decided."""
        with self._lock:
            entry = self._entries.get(request_id)
            return entry.snapshot() if entry else None

    def require(self, request_id: str) -> ApprovalRequest:
        """Get a snapshot of a pending request.

        Raises:
            UnknownRequestError: If no pending request has this id
        """
        request = self.get(request_id)
        if request is None or request.status.is_terminal:
            raise UnknownRequestError(request_id)
        return request

    def list(self) -> list[ApprovalRequest]:
        """Snapshots of all pending requests, oldest first."""
        with self._lock:
            entries = [e for e in self._entries.values() if e.status is ApprovalStatus.PENDING]
            return [e.snapshot() for e in sorted(entries, key=lambda e: e.created_monotonic)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def cleanup(self) -> int:
        """Evict terminal entries older than the retention window.

        Pending entries are never evicted. Idempotent.

        Returns:
            Number of entries evicted
        """
        cutoff = self._clock() - self.retention_seconds
        with self._lock:
            expired = [
                rid
                for rid, entry in self._entries.items()
                if entry.status.is_terminal and entry.created_monotonic < cutoff
            ]
            for rid in expired:
                del self._entries[rid]

        if expired:
            logger.debug("Evicted decided approval requests", count=len(expired))
        return len(expired)

    def destroy(self) -> None:
        """Cancel all timers and the periodic sweep.

        Requests still pending are rejected with reason "shutdown" so no
        awaiting caller is left hanging.
        """
        with self._lock:
            self._destroyed = True
            pending = [e.id for e in self._entries.values() if e.status is ApprovalStatus.PENDING]
            sweep, sweep_loop = self._sweep_handle, self._sweep_loop
            self._sweep_handle = None

        for rid in pending:
            self._settle(
                rid,
                ApprovalStatus.REJECTED,
                ApprovalOutcome(approved=False, decided_by="auto", reason="shutdown"),
            )

        if sweep is not None and sweep_loop is not None:
            _call_in_loop(sweep_loop, sweep.cancel)

        with self._lock:
            self._entries.clear()

        logger.info("ApprovalLedger destroyed", rejected_pending=len(pending))

    def _settle(
        self,
        request_id: str,
        status: ApprovalStatus,
        outcome: ApprovalOutcome,
    ) -> bool:
        with self._lock:
            entry = self._entries.get(request_id)
            if entry is None or entry.status is not ApprovalStatus.PENDING:
                return False
            entry.status = status
            timer, entry.timer = entry.timer, None

        def complete() -> None:
            if timer is not None:
                timer.cancel()
            if not entry.future.done():
                entry.future.set_result(outcome)

        _call_in_loop(entry.loop, complete)

        logger.info(
            "Approval request decided",
            request_id=request_id,
            status=status.value,
            decided_by=outcome.decided_by,
        )
        return True

    def _expire(self, request_id: str) -> None:
        self._settle(
            request_id,
            ApprovalStatus.TIMEOUT,
            ApprovalOutcome(approved=False, decided_by="timeout", reason="timeout"),
        )

    def _ensure_sweep(self, loop: asyncio.AbstractEventLoop) -> None:
        # Caller holds the lock
        if self._sweep_handle is not None or self.sweep_interval_seconds <= 0:
            return
        self._sweep_loop = loop
        self._sweep_handle = loop.call_later(self.sweep_interval_seconds, self._sweep)

    def _sweep(self) -> None:
        self.cleanup()
        with self._lock:
            if self._destroyed or self._sweep_loop is None:
                return
            self._sweep_handle = self._sweep_loop.call_later(
                self.sweep_interval_seconds, self._sweep
            )


def _call_in_loop(loop: asyncio.AbstractEventLoop, callback: Callable[[], None]) -> None:
    """Run callback on loop now if we are on it, otherwise schedule it."""
    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None

    if running is loop:
        callback()
    elif not loop.is_closed():
        loop.call_soon_threadsafe(callback)
