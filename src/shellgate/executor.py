"""Command execution - Runs commands the gate has let through."""

import asyncio
import os
from dataclasses import dataclass
from typing import Optional, Protocol

from shellgate.telemetry.logger import get_logger

logger = get_logger(__name__)

TIMEOUT_EXIT_CODE = 124
READ_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of running (or refusing to run) a command.

    Attributes:
        exit_code: Process exit code (non-zero for synthetic failures)
        stdout: Captured standard output
        stderr: Captured standard error or the gate's explanation
    """

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class Executor(Protocol):
    """Runs a command in a working directory."""

    async def execute(self, command: str, working_dir: str) -> ExecutionResult: ...


class ShellExecutor:
    """Runs commands with the system shell.

    Failures (missing directory, spawn errors, timeouts) are reported as
    results with a non-zero exit code rather than raised.
    """

    def __init__(
        self,
        timeout_seconds: float = 60.0,
        max_output_bytes: int = 1024 * 1024,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_output_bytes = max_output_bytes

    async def execute(self, command: str, working_dir: Optional[str] = None) -> ExecutionResult:
        """Execute a shell command.

        Args:
            command: Shell command to execute
            working_dir: Working directory (defaults to the process cwd)

        Returns:
            ExecutionResult with exit code and decoded output
        """
        working_dir = working_dir or os.getcwd()
        if not os.path.isdir(working_dir):
            return ExecutionResult(
                exit_code=1,
                stderr=f"Working directory does not exist: {working_dir}",
            )

        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=working_dir,
            )
        except OSError as e:
            logger.error("Failed to start command", command=command[:50], error=str(e))
            return ExecutionResult(exit_code=1, stderr=f"Failed to execute command: {e}")

        try:
            (stdout, stdout_cut), (stderr, stderr_cut), _ = await asyncio.wait_for(
                asyncio.gather(
                    self._read_capped(proc.stdout),
                    self._read_capped(proc.stderr),
                    proc.wait(),
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Command timed out", command=command[:50], timeout=self.timeout_seconds)
            return ExecutionResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stderr=f"Command timed out after {self.timeout_seconds}s",
            )
        finally:
            # Also reached when the caller is cancelled
            if proc.returncode is None:
                await self._kill(proc)

        result = ExecutionResult(
            exit_code=proc.returncode if proc.returncode is not None else 1,
            stdout=self._decode(stdout, stdout_cut),
            stderr=self._decode(stderr, stderr_cut),
        )
        logger.debug("Command finished", command=command[:50], exit_code=result.exit_code)
        return result

    async def _read_capped(self, stream: Optional[asyncio.StreamReader]) -> tuple[bytes, bool]:
        """Read a pipe to EOF, keeping at most max_output_bytes.

        The rest is drained and discarded so the child never blocks on a
        full pipe.
        """
        if stream is None:
            return b"", False

        kept = bytearray()
        truncated = False
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                return bytes(kept), truncated
            room = self.max_output_bytes - len(kept)
            if len(chunk) > room:
                kept.extend(chunk[: max(room, 0)])
                truncated = True
            else:
                kept.extend(chunk)

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()

    @staticmethod
    def _decode(data: bytes, truncated: bool) -> str:
        text = data.decode("utf-8", errors="replace")
        if truncated:
            return text + "\n[output truncated]"
        return text
