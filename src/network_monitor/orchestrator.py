"""
Scan orchestrator - top-level entry points.

full_scan() runs the scan tool (on the host or in a one-shot container),
streams its output to the progress sink, parses it and records the
devices. performance_sweep() probes a list of IPs and records latency,
bandwidth and uptime history for each.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

import nmap

from ._types import DeviceRecord, HistoryKind, SSHCredentials, now_iso
from .config import MonitorConfig
from .exceptions import CommandTimeout, ProbeFailure, ScanFailed, ValidationError
from .history import HistoryStore
from .parser import OutputParser, ssh_devices, ssh_status
from .probes import ProbeSuite
from .progress import SinkLike, as_sink, data, error, partial_update, status
from .sandbox import DockerRuntime, SandboxCommandExecutor, SandboxRuntime, SandboxSpec
from .validation import validate_ip, validate_ports, validate_target

logger = logging.getLogger(__name__)

SCAN_TYPES = ("syn", "connect", "ping")

SSH_SCRIPTS = "ssh-auth-methods,ssh-hostkey"


@dataclass
class ScanOptions:
    """Knobs for one full scan. Unset values fall back to MonitorConfig."""
    ip_range: Optional[str] = None
    ports: Optional[str] = None
    scan_type: str = "syn"
    service_detection: bool = False
    os_detection: bool = True
    os_guess: bool = False
    max_os_tries: Optional[int] = None
    ssh_scripts: bool = False
    skip_host_discovery: bool = True
    timing: Optional[int] = None
    max_retries: Optional[int] = None
    host_timeout: Optional[str] = None
    use_sandbox: Optional[bool] = None
    timeout: Optional[float] = None


@dataclass
class SweepOptions:
    """Knobs for one performance sweep."""
    use_sandbox: Optional[bool] = None
    docker_host: Optional[str] = None
    concurrency: Optional[int] = None
    credentials: Optional[SSHCredentials] = None


def build_scan_arguments(options: ScanOptions, target: str, ports: str) -> list[str]:
    """
    Turn ScanOptions into scan-tool arguments.

    The default profile matches the classic "-Pn -sS -O -p PORTS RANGE".
    Comma-separated targets become separate arguments.
    """
    if options.scan_type not in SCAN_TYPES:
        raise ValidationError(f"Unknown scan type: {options.scan_type!r}")

    args: list[str] = []

    if options.scan_type == "ping":
        # Host discovery only: MAC/vendor, no ports
        args.append("-sn")
    else:
        if options.skip_host_discovery:
            args.append("-Pn")
        args.append("-sS" if options.scan_type == "syn" else "-sT")
        if options.service_detection:
            args.append("-sV")
        if options.os_detection:
            args.append("-O")
            if options.os_guess:
                args.append("--osscan-guess")
            if options.max_os_tries is not None:
                args.append(f"--max-os-tries={options.max_os_tries}")
        if options.ssh_scripts:
            args.append(f"--script={SSH_SCRIPTS}")

    if options.timing is not None:
        if not 0 <= options.timing <= 5:
            raise ValidationError(f"Timing template must be 0-5, got {options.timing}")
        args.append(f"-T{options.timing}")
    if options.max_retries is not None:
        args.append(f"--max-retries={options.max_retries}")
    if options.host_timeout:
        args.append(f"--host-timeout={options.host_timeout}")

    if options.scan_type != "ping":
        args.extend(["-p", ports])

    args.extend(t for t in target.split(",") if t)
    return args


class ScanOrchestrator:
    """
    Drives full scans and performance sweeps.

    Owns the history store, the probe suite and (lazily) the persistent
    sandbox. One orchestrator per process is the intended usage.
    """

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        history: Optional[HistoryStore] = None,
        probes: Optional[ProbeSuite] = None,
        runtime_factory: Optional[Callable[[Optional[str]], SandboxRuntime]] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            config: Monitor configuration (defaults if omitted)
            history: History store to record into
            probes: Probe suite (built from config if omitted)
            runtime_factory: Builds a sandbox runtime for a Docker host
        """
        self.config = config or MonitorConfig()
        self.history = history or HistoryStore(self.config.max_history_items)
        self.parser = OutputParser()
        self.probes = probes or ProbeSuite(self.config)
        self.runtime_factory = runtime_factory or (lambda host: DockerRuntime(docker_host=host))

        self._docker_host = self.config.docker_host
        self._runtime: Optional[SandboxRuntime] = None
        self._sandbox: Optional[SandboxCommandExecutor] = None
        self._nmap_checked = False
        self._executor = ThreadPoolExecutor(max_workers=1)

    # -------------------------------------------------------------------------
    # Sandbox wiring
    # -------------------------------------------------------------------------

    @property
    def runtime(self) -> SandboxRuntime:
        if self._runtime is None:
            self._runtime = self.runtime_factory(self._docker_host)
        return self._runtime

    @property
    def sandbox(self) -> SandboxCommandExecutor:
        """The persistent sandbox executor, created on first access."""
        if self._sandbox is None:
            spec = SandboxSpec(
                name=self.config.sandbox_name,
                image=self.config.sandbox_image,
                host_network=self.config.sandbox_host_network,
            )
            self._sandbox = SandboxCommandExecutor(
                self.runtime, spec, default_timeout=self.config.exec_timeout_seconds
            )
        return self._sandbox

    async def use_docker_host(self, docker_host: Optional[str]) -> None:
        """Point the sandbox at another Docker daemon. The old sandbox is left running."""
        if docker_host == self._docker_host:
            return
        logger.info(f"Switching Docker host to {docker_host}")
        old_sandbox = self._sandbox
        if old_sandbox is not None:
            await old_sandbox.close()
        elif self._runtime is not None:
            await self._runtime.close()
        self._docker_host = docker_host
        self._runtime = None
        self._sandbox = None
        if old_sandbox is not None and self.probes.sandbox is old_sandbox:
            self.probes.sandbox = self.sandbox

    # -------------------------------------------------------------------------
    # Full scan
    # -------------------------------------------------------------------------

    async def full_scan(
        self,
        options: Optional[ScanOptions] = None,
        sink: SinkLike = None,
    ) -> dict[str, list[DeviceRecord]]:
        """
        Scan a range and return reachable devices grouped by vendor.

        Raises:
            ValidationError: bad range or port list (nothing is spawned)
            CommandTimeout: scan exceeded its timeout
            SandboxUnavailable: scan container could not be run
            ScanFailed: scan tool missing, failed or produced no output
        """
        options = options or ScanOptions()
        sink = as_sink(sink)

        target = validate_target(options.ip_range or self.config.default_ip_range)
        ports = validate_ports(options.ports or self.config.default_ports)
        args = build_scan_arguments(options, target, ports)

        use_sandbox = self.config.use_sandbox if options.use_sandbox is None else options.use_sandbox
        timeout = options.timeout or self.config.scan_timeout_seconds

        where = "sandbox" if use_sandbox else "host"
        logger.info(f"Starting {options.scan_type} scan of {target} on {where}")
        sink.emit(status(f"Scanning {target}...", progress=0.0))

        def on_output(chunk: str) -> None:
            sink.emit(status("Scan in progress...", output=chunk))

        if use_sandbox:
            raw = await self._scan_in_container(args, on_output, timeout)
        else:
            raw = await self._scan_on_host(args, on_output, timeout)

        if not raw.strip():
            raise ScanFailed(f"Scan of {target} produced no output")

        sink.emit(status("Processing results..."))
        grouped = self.parser.parse(raw)

        timestamp = now_iso()
        device_count = 0
        for devices in grouped.values():
            for device in devices:
                self.history.append(
                    device.ip,
                    HistoryKind.SCAN_RESULTS,
                    {"timestamp": timestamp, "device": device.to_dict()},
                )
                device_count += 1

        ssh_enabled = ssh_devices(grouped)
        if ssh_enabled:
            sink.emit(status(
                f"Found {len(ssh_enabled)} SSH-enabled devices",
                data=[{"ip": d.ip, **ssh_status(d)} for d in ssh_enabled],
            ))

        logger.info(f"Scan of {target} found {device_count} devices ({len(ssh_enabled)} with SSH)")
        sink.emit(data({vendor: [d.to_dict() for d in devices] for vendor, devices in grouped.items()}))
        sink.emit(status("Scan complete", progress=100.0))
        return grouped

    async def _scan_in_container(
        self, args: list[str], on_output: Callable[[str], None], timeout: float
    ) -> str:
        command = f"nmap {' '.join(args)}"
        try:
            result = await asyncio.wait_for(
                self.runtime.run_streaming(
                    self.config.scan_image,
                    args,
                    on_output,
                    host_network=self.config.sandbox_host_network,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Scan timed out after {timeout}s")
            raise CommandTimeout(command, timeout) from None

        if not result.success:
            raise ScanFailed(f"Scan container exited with code {result.exit_code}")
        return result.output

    def _nmap_version(self) -> tuple:
        # PortScanner() raises PortScannerError when no nmap binary is on PATH
        return nmap.PortScanner().nmap_version()

    async def _ensure_nmap(self) -> None:
        if self._nmap_checked:
            return
        loop = asyncio.get_running_loop()
        try:
            version = await loop.run_in_executor(self._executor, self._nmap_version)
        except nmap.PortScannerError as e:
            raise ScanFailed(f"nmap is not available on this host: {e}") from e
        logger.debug(f"Using nmap {'.'.join(str(v) for v in version)}")
        self._nmap_checked = True

    async def _scan_on_host(
        self, args: list[str], on_output: Callable[[str], None], timeout: float
    ) -> str:
        await self._ensure_nmap()
        command = f"nmap {' '.join(args)}"

        try:
            process = await asyncio.create_subprocess_exec(
                "nmap", *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as e:
            raise ScanFailed("nmap binary not found") from e

        chunks: list[str] = []

        async def pump() -> int:
            while True:
                chunk = await process.stdout.read(4096)
                if not chunk:
                    break
                text = chunk.decode("utf-8", errors="replace")
                chunks.append(text)
                on_output(text)
            return await process.wait()

        try:
            returncode = await asyncio.wait_for(pump(), timeout=timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError) as e:
            try:
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass
            if isinstance(e, asyncio.CancelledError):
                raise
            logger.error(f"Scan timed out after {timeout}s")
            raise CommandTimeout(command, timeout) from None

        output = "".join(chunks)
        if returncode != 0:
            tail = output.strip().splitlines()[-1:] or [""]
            raise ScanFailed(f"nmap exited with code {returncode}: {tail[0]}")
        return output

    # -------------------------------------------------------------------------
    # Performance sweep
    # -------------------------------------------------------------------------

    async def performance_sweep(
        self,
        ips: Iterable[str],
        options: Optional[SweepOptions] = None,
        sink: SinkLike = None,
    ) -> dict[str, Any]:
        """
        Probe every IP and record the results.

        One IP failing never stops the sweep: it is logged, reported as an
        error event and skipped. Returns {timestamp, latency, bandwidth,
        uptime} with entries in input order.
        """
        options = options or SweepOptions()
        sink = as_sink(sink)
        ips = list(ips)
        total = len(ips)

        if options.docker_host:
            await self.use_docker_host(options.docker_host)

        use_sandbox = self.probes.use_sandbox if options.use_sandbox is None else options.use_sandbox
        if use_sandbox and self.probes.sandbox is None:
            self.probes.sandbox = self.sandbox

        concurrency = max(1, options.concurrency or self.config.sweep_concurrency)
        results: list[Optional[dict]] = [None] * total
        completed = 0

        logger.info(f"Starting performance sweep of {total} IPs (concurrency {concurrency})")
        sink.emit(status(f"Starting performance check of {total} devices...", progress=0.0))

        async def run_one(index: int, ip: str) -> None:
            nonlocal completed
            sink.emit(status(
                f"Checking {ip}... ({completed}/{total} complete)",
                progress=round(completed / total * 100, 2),
            ))
            try:
                results[index] = await self._probe_ip(ip, use_sandbox, options.credentials, sink)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                failure = e if isinstance(e, ProbeFailure) else ProbeFailure(ip, e)
                logger.error(str(failure))
                sink.emit(error(str(failure), ip=ip))
            completed += 1
            sink.emit(status(
                f"{ip} check complete ({completed}/{total})",
                progress=round(completed / total * 100, 2),
            ))

        if concurrency == 1:
            for index, ip in enumerate(ips):
                await run_one(index, ip)
        else:
            semaphore = asyncio.Semaphore(concurrency)

            async def bounded(index: int, ip: str) -> None:
                async with semaphore:
                    await run_one(index, ip)

            await asyncio.gather(*(bounded(i, ip) for i, ip in enumerate(ips)))

        aggregate = {
            "timestamp": now_iso(),
            "latency": [r["latency"] for r in results if r],
            "bandwidth": [r["bandwidth"] for r in results if r],
            "uptime": [r["uptime"] for r in results if r],
        }
        logger.info(f"Performance sweep complete: {len(aggregate['latency'])}/{total} IPs probed")
        sink.emit(data(aggregate))
        return aggregate

    async def _probe_ip(
        self,
        ip: str,
        use_sandbox: bool,
        credentials: Optional[SSHCredentials],
        sink,
    ) -> dict[str, dict]:
        """Probe one IP, record history and emit its partial update."""
        ip = validate_ip(ip)
        timestamp = now_iso()

        latency = await self.probes.latency(ip, use_sandbox=use_sandbox)
        latency_entry = {"ip": ip, "timestamp": timestamp, **latency.to_dict()}
        self.history.append(ip, HistoryKind.LATENCY, {
            "timestamp": timestamp,
            "value": latency.latency,
            "packetLoss": latency.packet_loss,
        })

        if latency.alive:
            bandwidth, connected, remote = await asyncio.gather(
                self.probes.bandwidth(ip, use_sandbox=use_sandbox),
                self.probes.connectivity(ip, use_sandbox=use_sandbox),
                self.probes.remote_uptime(ip, credentials, use_sandbox=use_sandbox),
            )
            bandwidth_entry = {"ip": ip, "timestamp": timestamp, **bandwidth.to_dict()}
            self.history.append(ip, HistoryKind.BANDWIDTH, {
                "timestamp": timestamp,
                "download": bandwidth.download,
                "upload": bandwidth.upload,
                "source": bandwidth.source.value if bandwidth.source else None,
            })
            state = "up" if connected else "down"
        else:
            remote = None
            bandwidth_entry = {
                "ip": ip,
                "timestamp": timestamp,
                "download": None,
                "upload": None,
                "source": None,
            }
            state = "down"

        self.history.append(ip, HistoryKind.UPTIME, {"timestamp": timestamp, "status": state})
        uptime_entry = {
            "ip": ip,
            "timestamp": timestamp,
            "status": state,
            "uptimePercentage": self.history.uptime_percentage(ip),
        }
        if remote is not None:
            uptime_entry["remote"] = remote.to_dict()

        result = {"latency": latency_entry, "bandwidth": bandwidth_entry, "uptime": uptime_entry}
        sink.emit(partial_update(ip, {
            "latency": [latency_entry],
            "bandwidth": [bandwidth_entry],
            "uptime": [uptime_entry],
        }))
        return result

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def historical_performance(self, ip: str) -> dict[str, Any]:
        """Retained latency / bandwidth / uptime series for one IP."""
        return {
            "ip": ip,
            "latency": self.history.get(ip, HistoryKind.LATENCY),
            "bandwidth": self.history.get(ip, HistoryKind.BANDWIDTH),
            "uptime": self.history.get(ip, HistoryKind.UPTIME),
            "uptimePercentage": self.history.uptime_percentage(ip),
        }

    async def close(self, remove_sandbox: bool = False) -> None:
        """Release the sandbox (left running for reuse unless remove_sandbox)."""
        if self._sandbox is not None:
            await self._sandbox.close(remove=remove_sandbox)
        elif self._runtime is not None:
            await self._runtime.close()
        self.probes.close()
        self._executor.shutdown(wait=False)
