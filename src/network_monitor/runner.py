"""
Command runners used by the probes.

A runner takes a shell command string and returns its combined output.
Two implementations exist: HostCommandRunner runs on this machine, and
SandboxCommandExecutor (see sandbox.executor) runs inside the persistent
sandbox. Probes only depend on the CommandRunner protocol.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable

from .exceptions import CommandTimeout, NetworkUnreachable

logger = logging.getLogger(__name__)

UNREACHABLE_MARKERS = ("Network is unreachable", "unknown host")


@runtime_checkable
class CommandRunner(Protocol):
    """Anything that can run a shell command and hand back its output."""

    async def exec(self, command: str, timeout: Optional[float] = None) -> str:
        ...


class CommandResult:
    """Result of a command execution."""

    def __init__(self, exit_code: int, output: str, duration_sec: float):
        self.exit_code = exit_code
        self.output = output
        self.duration_sec = duration_sec
        self.success = exit_code == 0

    def __repr__(self):
        return f"CommandResult(exit_code={self.exit_code}, success={self.success})"


def raise_for_unreachable(command: str, output: str) -> None:
    """Raise NetworkUnreachable if the output says the target can't be reached."""
    if any(marker in output for marker in UNREACHABLE_MARKERS):
        raise NetworkUnreachable(command, output)


class HostCommandRunner:
    """
    Runs commands through the local shell.

    Same contract as the sandbox executor: non-zero exit is only logged,
    unreachable-network output raises NetworkUnreachable and exceeding the
    timeout raises CommandTimeout.
    """

    def __init__(self, default_timeout: float = 30.0):
        self.default_timeout = default_timeout

    async def run(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        timeout = timeout or self.default_timeout
        start_time = datetime.now(timezone.utc)

        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            try:
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass
            raise CommandTimeout(command, timeout)

        duration = (datetime.now(timezone.utc) - start_time).total_seconds()
        output = stdout.decode("utf-8", errors="replace") if stdout else ""

        if process.returncode != 0:
            logger.warning(f"Command exited with code {process.returncode}: {command}")

        raise_for_unreachable(command, output)

        return CommandResult(exit_code=process.returncode, output=output, duration_sec=duration)

    async def exec(self, command: str, timeout: Optional[float] = None) -> str:
        result = await self.run(command, timeout)
        return result.output
