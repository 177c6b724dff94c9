"""
shellgate CLI entry point.

Usage:
    shellgate classify <command>    Show the risk verdict for a command
    shellgate run <command>         Run a command through the gate
    shellgate status                Show pending approvals and recent decisions
    shellgate logs [-n N]           Show recent audit entries
    shellgate config show           Show current configuration
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Optional

import yaml

from shellgate import __version__
from shellgate.config.loader import load_config
from shellgate.config.schemas import ShellGateConfig
from shellgate.executor import ShellExecutor
from shellgate.orchestrator import ApprovalOrchestrator
from shellgate.security.audit import AuditLogger
from shellgate.security.classifier import RiskClassifier
from shellgate.security.errors import ShellGateError
from shellgate.security.rules import RuleSet
from shellgate.telemetry.logger import get_logger, setup_logging


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="shellgate",
        description="Human-in-the-loop gate for agent-issued shell commands",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  shellgate classify "rm -rf ./build"       Show why a command is risky
  shellgate run --cwd /app/workspace "ls"   Run a command through the gate
  shellgate logs -n 50                      Show the last 50 audit entries
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        metavar="PATH",
        help="Path to custom configuration file",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Override log level",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    classify_parser = subparsers.add_parser("classify", help="Classify a command")
    classify_parser.add_argument("shell_command", help="Command to classify")
    classify_parser.add_argument("--cwd", default=None, help="Working directory")

    run_parser = subparsers.add_parser("run", help="Run a command through the gate")
    run_parser.add_argument("shell_command", help="Command to run")
    run_parser.add_argument("--cwd", default=None, help="Working directory")

    subparsers.add_parser("status", help="Show pending approvals and recent decisions")

    logs_parser = subparsers.add_parser("logs", help="Show recent audit entries")
    logs_parser.add_argument("-n", "--count", type=int, default=20, help="Number of entries")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command")
    config_subparsers.add_parser("show", help="Show current configuration")

    return parser


def _load(config_path: Optional[Path], log_level: Optional[str]) -> ShellGateConfig:
    config = load_config(config_path)
    if log_level:
        config.log_level = log_level
    setup_logging(config.log_level)
    return config


def _audit_logger(config: ShellGateConfig) -> AuditLogger:
    return AuditLogger(
        log_dir=config.audit.log_dir,
        max_file_size=config.audit.max_file_size,
        max_rotations=config.audit.max_rotations,
    )


def cmd_config_show(config: ShellGateConfig) -> int:
    """Show current configuration."""
    print("Current shellgate Configuration:")
    print("=" * 50)
    print(config.model_dump_json(indent=2))
    return 0


def cmd_classify(config: ShellGateConfig, command: str, cwd: Optional[str]) -> int:
    """Print the verdict for a command as JSON."""
    classifier = RiskClassifier(
        RuleSet.from_dict(config.rules.to_rule_data()),
        workspace_root=config.workspace_root,
    )
    verdict = classifier.classify(command, cwd or os.getcwd())
    print(json.dumps(verdict.to_dict(), indent=2))
    return 0


async def _run(config: ShellGateConfig, command: str, cwd: Optional[str]) -> int:
    if not config.enabled:
        executor = ShellExecutor(
            timeout_seconds=config.executor.timeout_seconds,
            max_output_bytes=config.executor.max_output_bytes,
        )
        result = await executor.execute(command, cwd)
    else:
        orchestrator = ApprovalOrchestrator.from_config(config)
        try:
            result = await orchestrator.handle(command, cwd)
        finally:
            await orchestrator.shutdown()

    if result.stdout:
        sys.stdout.write(result.stdout)
    if result.stderr:
        sys.stderr.write(result.stderr if result.stderr.endswith("\n") else result.stderr + "\n")
    return result.exit_code


def cmd_run(config: ShellGateConfig, command: str, cwd: Optional[str]) -> int:
    """Run a command through the gate."""
    try:
        return asyncio.run(_run(config, command, cwd))
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130


def cmd_status(config: ShellGateConfig) -> int:
    """Show recent gate activity.

    Pending approvals live in the memory of the process that is waiting
    on them, so a fresh CLI process only reports the audit trail.
    """
    audit = _audit_logger(config)
    print("shellgate Status")
    print("=" * 50)
    print(f"Enabled: {config.enabled}")
    print(f"Workspace root: {config.workspace_root}")
    print(f"Notification method: {config.notification.method.value}")
    print(f"Approval timeout: {config.approval.timeout_seconds}s")
    print(f"Audit log: {audit.log_path}")
    print()

    entries = audit.get_recent(5)
    print("Recent decisions:")
    if not entries:
        print("  No recent activity.")
    for entry in entries:
        print(
            f"  {entry.get('timestamp', '?')} | "
            f"{str(entry.get('risk_level', '?')).upper()} | "
            f"{entry.get('decision', '?')} | "
            f"{str(entry.get('command', ''))[:50]}"
        )
    return 0


def cmd_logs(config: ShellGateConfig, count: int) -> int:
    """Print recent audit entries as JSON lines."""
    for entry in _audit_logger(config).get_recent(count):
        print(json.dumps(entry))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    try:
        config = _load(args.config, args.log_level)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return 1

    logger = get_logger(__name__)
    logger.debug("shellgate CLI", command=args.command, version=__version__)

    try:
        if args.command == "config":
            if args.config_command == "show":
                return cmd_config_show(config)
            parser.parse_args(["config", "--help"])
            return 1

        elif args.command == "classify":
            return cmd_classify(config, args.shell_command, args.cwd)

        elif args.command == "run":
            return cmd_run(config, args.shell_command, args.cwd)

        elif args.command == "status":
            return cmd_status(config)

        elif args.command == "logs":
            return cmd_logs(config, args.count)

    except ShellGateError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
