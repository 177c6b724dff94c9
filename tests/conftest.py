"""Pytest configuration and fixtures."""

import os
from pathlib import Path
from typing import Any, Generator

import pytest

from shellgate.config.schemas import ShellGateConfig
from shellgate.executor import ExecutionResult
from shellgate.security.classifier import RiskClassifier
from shellgate.security.rules import RuleSet


@pytest.fixture(autouse=True)
def clean_shellgate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep ambient SHELLGATE_* variables out of every test."""
    for name in list(os.environ):
        if name.startswith("SHELLGATE_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def test_config() -> ShellGateConfig:
    """Create a test configuration."""
    return ShellGateConfig()


@pytest.fixture
def classifier() -> RiskClassifier:
    """Classifier with no user rules."""
    return RiskClassifier()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """A real directory to run commands in."""
    path = tmp_path / "workspace"
    path.mkdir()
    return path


class RecordingSink:
    """Audit sink that keeps entries in memory."""

    def __init__(self) -> None:
        self.entries: list[dict[str, Any]] = []

    def record(self, entry: dict[str, Any]) -> None:
        self.entries.append(entry)

    @property
    def decisions(self) -> list[str]:
        return [entry["decision"] for entry in self.entries]


class FakeExecutor:
    """Executor that records commands instead of running them."""

    def __init__(self, result: ExecutionResult = ExecutionResult(exit_code=0, stdout="ok\n")) -> None:
        self.result = result
        self.calls: list[tuple[str, str]] = []

    async def execute(self, command: str, working_dir: str) -> ExecutionResult:
        self.calls.append((command, working_dir))
        return self.result


@pytest.fixture
def recording_sink() -> RecordingSink:
    """In-memory audit sink."""
    return RecordingSink()


@pytest.fixture
def fake_executor() -> FakeExecutor:
    """Executor that never spawns a process."""
    return FakeExecutor()


@pytest.fixture
def rule_set() -> RuleSet:
    """A representative set of user rules."""
    return RuleSet.from_dict(
        {
            "allowlist": {
                "commands": ["curl https://api.example.com/*", "/^git push origin feature\\//"],
                "paths": ["/srv/allowed/*"],
            },
            "blocklist": {"commands": ["*shutdown*", "/\\bmkpasswd\\b/i"]},
        }
    )


@pytest.fixture
def temp_config_file(tmp_path: Path) -> Generator[Path, None, None]:
    """Create a temporary config file."""
    config_file = tmp_path / "config.yaml"
    config_file.write_text("""
workspace_root: /srv/work

rules:
  allowlist:
    commands:
      - "npm test"
  blocklist:
    commands:
      - "*shutdown*"

approval:
  timeout_seconds: 120

notification:
  method: mock

log_level: DEBUG
""")
    yield config_file
