"""
Error taxonomy for the network monitor.

Parser anomalies are never raised. Executor errors propagate to the
calling probe, which turns them into a non-throwing result. Only setup
errors (bad input, scan process cannot run) reach the top-level caller.
"""

from typing import Optional


class MonitorError(Exception):
    """Base exception for network monitor errors."""
    pass


class ValidationError(MonitorError):
    """Malformed IP range or port list. Raised before anything is spawned."""
    pass


class SandboxUnavailable(MonitorError):
    """The persistent sandbox could not be created, started or reached."""
    pass


class CommandTimeout(MonitorError):
    """A single command exceeded its time budget."""

    def __init__(self, command: str, timeout: float):
        self.command = command
        self.timeout = timeout
        super().__init__(f"Command timed out after {timeout}s: {command}")


class NetworkUnreachable(MonitorError):
    """Command output reports an unreachable network or unknown host."""

    def __init__(self, command: str, output: str = ""):
        self.command = command
        self.output = output
        super().__init__(f"Network unreachable or unknown host in command: {command}")


class ProbeFailure(MonitorError):
    """A probe failed for one IP during a sweep."""

    def __init__(self, ip: str, cause: Optional[BaseException] = None, message: str = ""):
        self.ip = ip
        self.cause = cause
        detail = message or (str(cause) if cause else "probe failed")
        super().__init__(f"Probe failed for {ip}: {detail}")


class ScanFailed(MonitorError):
    """A full scan could not run or produced no usable output."""
    pass
