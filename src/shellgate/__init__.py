"""
shellgate - Human-in-the-loop gate for agent-issued shell commands.

Every command an agent wants to run is classified by risk:
- low: executed directly
- medium: executed and audited
- high: held until a human approves it (Pushover, Telegram or manually)
- critical: refused outright
"""

__version__ = "0.1.0"

from shellgate.config.schemas import ShellGateConfig
from shellgate.orchestrator import ApprovalOrchestrator

__all__ = [
    "__version__",
    "ShellGateConfig",
    "ApprovalOrchestrator",
]
