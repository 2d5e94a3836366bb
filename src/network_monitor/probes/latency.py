"""
Latency and connectivity probes.

On the host, ICMP goes through ping3 in a thread pool. In the sandbox the
system `ping` binary runs through the executor and its summary is parsed.
"""

from __future__ import annotations

import asyncio
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import ping3

from .._types import LatencyResult
from ..runner import CommandRunner

logger = logging.getLogger(__name__)

_PACKET_LOSS_RE = re.compile(r"(\d+(?:\.\d+)?)%\spacket\sloss")


def parse_ping_output(output: str) -> LatencyResult:
    """
    Parse the summary of `ping -c N`.

    The rtt line looks like "rtt min/avg/max/mdev = 0.1/0.2/0.3/0.0 ms";
    the average is the second field. Without that line the host is
    treated as unreachable.
    """
    summary = next((line for line in output.splitlines() if "min/avg/max" in line), None)
    if summary is None:
        return LatencyResult(latency=None, alive=False, packet_loss=100.0)

    try:
        avg = float(summary.split("=")[1].split("/")[1])
    except (IndexError, ValueError):
        logger.debug(f"Unparseable ping summary: {summary}")
        return LatencyResult(latency=None, alive=False, packet_loss=100.0)

    loss = 0.0
    match = _PACKET_LOSS_RE.search(output)
    if match:
        loss = float(match.group(1))

    return LatencyResult(latency=avg, alive=True, packet_loss=loss)


class LatencyProbe:
    """Round-trip latency and reachability for one IP."""

    def __init__(
        self,
        ping_count: int = 5,
        ping_timeout: float = 2.0,
        max_workers: int = 4,
    ):
        self.ping_count = ping_count
        self.ping_timeout = ping_timeout
        self.max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.max_workers)
        return self._executor

    def close(self) -> None:
        """Shut down the ping worker threads."""
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    def _ping_once(self, ip: str, timeout: float) -> Optional[float]:
        """One ICMP echo (blocking). Returns the delay in ms, or None."""
        try:
            delay = ping3.ping(ip, timeout=timeout, unit="ms")
        except OSError as e:
            # Raw sockets need privileges on most platforms
            logger.debug(f"ping3 failed for {ip}: {e}")
            return None
        if delay is None or delay is False:
            return None
        return float(delay)

    async def measure_host(self, ip: str) -> LatencyResult:
        """Ping `ping_count` times from this machine."""
        loop = asyncio.get_running_loop()
        delays = []
        for _ in range(self.ping_count):
            delay = await loop.run_in_executor(
                self.executor, self._ping_once, ip, self.ping_timeout
            )
            if delay is not None:
                delays.append(delay)

        if not delays:
            return LatencyResult(latency=None, alive=False, packet_loss=100.0)

        lost = self.ping_count - len(delays)
        return LatencyResult(
            latency=round(sum(delays) / len(delays), 3),
            alive=True,
            packet_loss=round(lost / self.ping_count * 100, 1),
        )

    async def measure_sandbox(self, runner: CommandRunner, ip: str) -> LatencyResult:
        """Run `ping -c N` in the sandbox and parse the summary."""
        output = await runner.exec(f"ping -c {self.ping_count} {ip}")
        return parse_ping_output(output)

    async def connectivity_host(self, ip: str) -> bool:
        loop = asyncio.get_running_loop()
        delay = await loop.run_in_executor(self.executor, self._ping_once, ip, 1.0)
        return delay is not None

    async def connectivity_sandbox(self, runner: CommandRunner, ip: str) -> bool:
        output = await runner.exec(f"ping -c 1 -W 1 {ip}")
        return "1 received" in output
