"""
Remote uptime probe.

Logs in over SSH, runs `uptime` once and extracts the "up ..." segment.
Never raises: any failure comes back as RemoteUptime(available=False).
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional

import asyncssh

from .._types import RemoteUptime, SSHCredentials

logger = logging.getLogger(__name__)

SANDBOX_SKIP_REASON = "not used in sandbox mode"

# "up 3 days,  4:02,  2 users"
_UP_USERS_RE = re.compile(r"up\s+.*?,\s+\d+\s+users?")
# "up 5 min,  load average: ..." (no logged-in users reported)
_UP_LOAD_RE = re.compile(r"up\s+(.*?),\s+load average")


def parse_uptime_output(output: str) -> Optional[str]:
    """Return the "up ..." segment of `uptime` output, or None."""
    match = _UP_USERS_RE.search(output)
    if match:
        return match.group(0)

    match = _UP_LOAD_RE.search(output)
    if match:
        return f"up {match.group(1)}"

    return None


class RemoteUptimeProbe:
    """Reads uptime directly from a device over SSH."""

    def __init__(
        self,
        credentials: SSHCredentials,
        port: int = 22,
        connect_timeout: float = 5.0,
        command_timeout: float = 10.0,
    ):
        self.credentials = credentials
        self.port = port
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout

    async def port_open(self, ip: str) -> bool:
        """Check that the SSH port accepts TCP connections."""
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(ip, self.port), timeout=self.connect_timeout
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def measure(
        self,
        ip: str,
        credentials: Optional[SSHCredentials] = None,
        sandbox_mode: bool = False,
    ) -> RemoteUptime:
        if sandbox_mode:
            return RemoteUptime(available=False, reason=SANDBOX_SKIP_REASON)

        creds = credentials or self.credentials

        if not await self.port_open(ip):
            return RemoteUptime(available=False, reason=f"SSH port {self.port} not reachable")

        connect_options = {
            "host": ip,
            "port": self.port,
            "username": creds.username,
            "known_hosts": None,
            "connect_timeout": self.connect_timeout,
        }
        if creds.password:
            connect_options["password"] = creds.password

        try:
            async with asyncssh.connect(**connect_options) as conn:
                result = await asyncio.wait_for(
                    conn.run("uptime", check=False), timeout=self.command_timeout
                )
        except asyncio.TimeoutError:
            logger.warning(f"uptime timed out on {ip}")
            return RemoteUptime(available=False, reason="SSH command timed out")
        except asyncssh.PermissionDenied as e:
            logger.warning(f"SSH authentication failed for {ip}: {e}")
            return RemoteUptime(available=False, reason=f"SSH authentication failed: {e}")
        except (asyncssh.Error, OSError) as e:
            logger.warning(f"SSH error on {ip}: {e}")
            return RemoteUptime(available=False, reason=f"SSH error: {e}")

        raw = str(result.stdout or "").strip()
        uptime = parse_uptime_output(raw)
        if uptime is None:
            return RemoteUptime(available=False, raw=raw, reason="unrecognized uptime output")

        return RemoteUptime(available=True, uptime_string=uptime, raw=raw)
