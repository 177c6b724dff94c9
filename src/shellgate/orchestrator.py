"""Approval Orchestrator - Classify, approve, execute, audit."""

import asyncio
import os
import time
from datetime import datetime, timezone
from typing import Optional

import httpx

from shellgate.config.schemas import ShellGateConfig
from shellgate.executor import ExecutionResult, Executor, ShellExecutor
from shellgate.notify.base import NotificationChannel, truncate_command
from shellgate.notify.factory import create_channel
from shellgate.security.audit import AuditEntry, AuditLogger, AuditSink, Decision
from shellgate.security.classifier import RiskClassifier, RiskLevel, RiskVerdict
from shellgate.security.errors import DeliveryError
from shellgate.security.ledger import (
    ApprovalLedger,
    ApprovalOutcome,
    ApprovalRequest,
    generate_request_id,
)
from shellgate.security.rules import RuleSet
from shellgate.telemetry.logger import LoggerMixin, bind_context, unbind_context


class ApprovalOrchestrator(LoggerMixin):
    """Single entry point for running an agent-issued command.

    Critical commands are refused, high-risk commands wait for a human
    decision (delivered through the notification channel or made
    manually), medium-risk commands are audited and run, low-risk
    commands just run.

    The ledger's completion future is the only source of truth for a
    decision. The channel poll runs in the background and merely
    forwards what it hears to the ledger; if the ledger has already
    settled (manual decision or timeout) the forward is a no-op.

    Example:
        orchestrator = ApprovalOrchestrator.from_config(load_config())
        result = await orchestrator.handle("rm -rf ./build", "/app/workspace")
        await orchestrator.shutdown()
    """

    def __init__(
        self,
        classifier: RiskClassifier,
        ledger: ApprovalLedger,
        channel: NotificationChannel,
        executor: Executor,
        audit: Optional[AuditSink] = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            classifier: Risk classifier
            ledger: Approval ledger shared by all in-flight commands
            channel: Notification channel for approval requests
            executor: Runs commands that are let through
            audit: Audit sink (decisions are not recorded if omitted)
        """
        self.classifier = classifier
        self.ledger = ledger
        self.channel = channel
        self.executor = executor
        self.audit = audit
        self._polls: dict[str, asyncio.Task[None]] = {}

        self.logger.info("ApprovalOrchestrator initialized", channel=channel.name)

    @classmethod
    def from_config(
        cls,
        config: ShellGateConfig,
        executor: Optional[Executor] = None,
        audit: Optional[AuditSink] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "ApprovalOrchestrator":
        """Build an orchestrator and its collaborators from configuration.

        Raises:
            ChannelConfigError: If the configured channel lacks credentials
        """
        classifier = RiskClassifier(
            RuleSet.from_dict(config.rules.to_rule_data()),
            workspace_root=config.workspace_root,
        )
        ledger = ApprovalLedger(
            timeout_seconds=config.approval.timeout_seconds,
            sweep_interval_seconds=config.approval.sweep_interval_seconds,
        )
        channel = create_channel(
            config.notification,
            approval_timeout_seconds=ledger.timeout_seconds,
            client=client,
        )
        executor = executor or ShellExecutor(
            timeout_seconds=config.executor.timeout_seconds,
            max_output_bytes=config.executor.max_output_bytes,
        )
        if audit is None:
            audit = AuditLogger(
                log_dir=config.audit.log_dir,
                max_file_size=config.audit.max_file_size,
                max_rotations=config.audit.max_rotations,
            )
        return cls(classifier, ledger, channel, executor, audit)

    async def handle(self, command: str, working_dir: Optional[str] = None) -> ExecutionResult:
        """Gate and (if allowed) execute a command.

        Args:
            command: Command issued by the agent
            working_dir: Directory to run in (defaults to the process cwd)

        Returns:
            The executor's result, or a synthetic failure if the command
            was blocked or not approved
        """
        started = time.monotonic()
        working_dir = working_dir or os.getcwd()
        request_id = generate_request_id()
        verdict = self.classifier.classify(command, working_dir)

        bind_context(request_id=request_id)
        try:
            if verdict.level is RiskLevel.CRITICAL:
                self._record(verdict, command, request_id, Decision.AUTO_BLOCKED, "auto", started)
                self.logger.warning("Command blocked", command=command[:50], reasons=list(verdict.reasons))
                return ExecutionResult(
                    exit_code=1,
                    stderr=(
                        f"BLOCKED by shellgate: {', '.join(verdict.reasons)}. "
                        "This command was classified as critical risk and automatically rejected."
                    ),
                )

            decided_by = "auto"
            if verdict.level is RiskLevel.HIGH:
                outcome = await self._await_approval(verdict, command, request_id)
                decided_by = outcome.decided_by
                if not outcome.approved:
                    decision = Decision.TIMEOUT if outcome.decided_by == "timeout" else Decision.REJECTED
                    self._record(verdict, command, request_id, decision, decided_by, started)
                    reason = outcome.reason or f"rejected by {outcome.decided_by}"
                    return ExecutionResult(
                        exit_code=1,
                        stderr=f"REJECTED by shellgate: {reason}. The command was not executed.",
                    )
                self._record(verdict, command, request_id, Decision.APPROVED, decided_by, started)

            elif verdict.level is RiskLevel.MEDIUM:
                self._record(verdict, command, request_id, Decision.AUTO_ALLOWED, "auto", started)

            result = await self._execute(command, working_dir)
            self._record(
                verdict,
                command,
                request_id,
                Decision.EXECUTED,
                decided_by,
                started,
                exit_code=result.exit_code,
            )
            return result
        finally:
            unbind_context("request_id")

    async def _await_approval(
        self,
        verdict: RiskVerdict,
        command: str,
        request_id: str,
    ) -> ApprovalOutcome:
        handle = self.ledger.add(
            command,
            verdict.working_dir,
            verdict.level,
            verdict.reasons,
            request_id=request_id,
        )
        request = self.ledger.get(handle.id)

        if request is not None:
            try:
                receipt = await self.channel.send_approval_request(request)
            except DeliveryError as e:
                # The ledger timeout still governs the request
                self.logger.warning("Notification send failed", error=str(e), channel=e.channel)
            else:
                if receipt.pollable:
                    self._start_poll(handle.id, receipt.correlation_token)

        try:
            return await handle.completion
        finally:
            poll = self._polls.pop(handle.id, None)
            if poll is not None and not poll.done():
                poll.cancel()

    def _start_poll(self, request_id: str, token: Optional[str]) -> None:
        task = asyncio.create_task(
            self._forward_poll(request_id, token),
            name=f"shellgate-poll-{request_id}",
        )
        self._polls[request_id] = task

    async def _forward_poll(self, request_id: str, token: Optional[str]) -> None:
        try:
            outcome = await self.channel.poll_for_response(token, self.ledger.timeout_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.warning("Polling failed; waiting for timeout", request_id=request_id, error=str(e))
            return

        if outcome.decided_by == "timeout":
            # The ledger's own timer reports timeouts
            return
        if outcome.approved:
            self.ledger.approve(request_id, decided_by=outcome.decided_by)
        else:
            self.ledger.reject(request_id, decided_by=outcome.decided_by, reason=outcome.reason)

    async def _execute(self, command: str, working_dir: str) -> ExecutionResult:
        try:
            return await self.executor.execute(command, working_dir)
        except Exception as e:
            self.logger.error("Executor failed", command=command[:50], error=str(e))
            return ExecutionResult(exit_code=1, stderr=f"Execution failed: {e}")

    def _record(
        self,
        verdict: RiskVerdict,
        command: str,
        request_id: str,
        decision: str,
        decided_by: str,
        started: float,
        **extra: object,
    ) -> None:
        if self.audit is None:
            return

        entry = AuditEntry(
            request_id=request_id,
            command=command,
            working_dir=verdict.working_dir,
            risk_level=verdict.level.label,
            risk_reasons=list(verdict.reasons),
            decision=decision,
            decided_by=decided_by,
            latency_ms=int((time.monotonic() - started) * 1000),
            extra=dict(extra),
        )
        try:
            self.audit.record(entry.to_dict())
        except Exception as e:
            self.logger.warning("Audit sink failed", error=str(e), decision=decision)

    def approve(self, request_id: str) -> bool:
        """Manually approve a pending request."""
        return self.ledger.approve(request_id)

    def reject(self, request_id: str) -> bool:
        """Manually reject a pending request."""
        return self.ledger.reject(request_id, reason="rejected by user")

    def pending(self) -> list[ApprovalRequest]:
        """Requests currently waiting for a decision."""
        return self.ledger.list()

    def status_report(self, recent: int = 5) -> str:
        """Human-readable summary of pending requests and recent decisions."""
        now = datetime.now(timezone.utc)
        lines = ["=== shellgate status ===", ""]

        pending = self.pending()
        if not pending:
            lines.append("No pending approvals.")
        else:
            lines.append(f"Pending approvals ({len(pending)}):")
            for request in pending:
                age = int((now - request.created_at).total_seconds())
                preview = truncate_command(request.command, 60)
                lines.append(f"  [{request.id}] {preview} ({age}s ago, {request.risk_level.label})")

        lines.append("")
        lines.append("Recent decisions:")
        entries = self.audit.get_recent(recent) if isinstance(self.audit, AuditLogger) else []
        if not entries:
            lines.append("  No recent activity.")
        for entry in entries:
            lines.append(
                f"  {entry.get('timestamp', '?')} | "
                f"{str(entry.get('risk_level', '?')).upper()} | "
                f"{entry.get('decision', '?')} | "
                f"{str(entry.get('command', ''))[:50]}"
            )

        return "\n".join(lines)

    async def shutdown(self) -> None:
        """Cancel background polls and release ledger timers."""
        polls = list(self._polls.values())
        self._polls.clear()
        for task in polls:
            task.cancel()
        if polls:
            await asyncio.gather(*polls, return_exceptions=True)

        self.ledger.destroy()
        await self.channel.aclose()
        self.logger.info("ApprovalOrchestrator shut down", cancelled_polls=len(polls))
