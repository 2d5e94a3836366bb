"""
ProbeSuite: every per-IP probe behind one mode switch.

With `use_sandbox` off, probes run natively on this machine (ping3,
local iperf3, aiohttp). With it on, they run as shell commands through
the persistent sandbox executor.
"""

from __future__ import annotations

import logging
import random
from typing import Optional

from .._types import BandwidthResult, LatencyResult, RemoteUptime, SSHCredentials
from ..config import MonitorConfig
from ..exceptions import MonitorError
from ..runner import CommandRunner, HostCommandRunner
from .bandwidth import (
    AiohttpDownloadStrategy,
    BandwidthProbe,
    BandwidthStrategy,
    CurlDownloadStrategy,
    Iperf3Strategy,
    SimulatedStrategy,
)
from .latency import LatencyProbe
from .uptime import RemoteUptimeProbe

logger = logging.getLogger(__name__)


class ProbeSuite:
    """Latency, connectivity, bandwidth and remote-uptime probes for one IP at a time."""

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        sandbox: Optional[CommandRunner] = None,
        host_runner: Optional[CommandRunner] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or MonitorConfig()
        self.sandbox = sandbox
        self.host_runner = host_runner or HostCommandRunner(self.config.exec_timeout_seconds)
        self.use_sandbox = self.config.use_sandbox
        self.rng = rng or random.Random()

        self.latency_probe = LatencyProbe(
            ping_count=self.config.ping_count,
            ping_timeout=self.config.ping_timeout_seconds,
        )
        self.uptime_probe = RemoteUptimeProbe(
            credentials=self.config.ssh_credentials,
            port=self.config.ssh_port,
            connect_timeout=self.config.ssh_connect_timeout_seconds,
            command_timeout=self.config.ssh_command_timeout_seconds,
        )

    def _sandboxed(self, use_sandbox: Optional[bool]) -> bool:
        return self.use_sandbox if use_sandbox is None else use_sandbox

    def runner_for(self, use_sandbox: Optional[bool] = None) -> CommandRunner:
        """Where shell commands go in the given mode (default: the suite's mode)."""
        if not self._sandboxed(use_sandbox):
            return self.host_runner
        if self.sandbox is None:
            raise MonitorError("Sandbox mode is enabled but no sandbox executor is configured")
        return self.sandbox

    def bandwidth_strategies(self, use_sandbox: Optional[bool] = None) -> list[BandwidthStrategy]:
        cfg = self.config
        runner = self.runner_for(use_sandbox)
        primary = Iperf3Strategy(
            runner,
            host=cfg.bandwidth_server_host,
            port=cfg.bandwidth_server_port,
            timeout=cfg.bandwidth_timeout_seconds,
        )
        if self._sandboxed(use_sandbox):
            fallback: BandwidthStrategy = CurlDownloadStrategy(
                runner, cfg.http_test_url, timeout=cfg.bandwidth_timeout_seconds
            )
        else:
            fallback = AiohttpDownloadStrategy(cfg.http_test_url, timeout=cfg.bandwidth_timeout_seconds)
        return [primary, fallback, SimulatedStrategy(self.rng)]

    async def latency(self, ip: str, use_sandbox: Optional[bool] = None) -> LatencyResult:
        try:
            if self._sandboxed(use_sandbox):
                return await self.latency_probe.measure_sandbox(self.runner_for(True), ip)
            return await self.latency_probe.measure_host(ip)
        except MonitorError as e:
            logger.warning(f"Latency probe failed for {ip}: {e}")
            return LatencyResult(latency=None, alive=False, packet_loss=100.0)

    async def connectivity(self, ip: str, use_sandbox: Optional[bool] = None) -> bool:
        try:
            if self._sandboxed(use_sandbox):
                return await self.latency_probe.connectivity_sandbox(self.runner_for(True), ip)
            return await self.latency_probe.connectivity_host(ip)
        except MonitorError as e:
            logger.warning(f"Connectivity probe failed for {ip}: {e}")
            return False

    async def bandwidth(self, ip: str, use_sandbox: Optional[bool] = None) -> BandwidthResult:
        return await BandwidthProbe(self.bandwidth_strategies(use_sandbox)).measure(ip)

    async def remote_uptime(
        self,
        ip: str,
        credentials: Optional[SSHCredentials] = None,
        use_sandbox: Optional[bool] = None,
    ) -> RemoteUptime:
        return await self.uptime_probe.measure(
            ip, credentials, sandbox_mode=self._sandboxed(use_sandbox)
        )

    def close(self) -> None:
        self.latency_probe.close()
