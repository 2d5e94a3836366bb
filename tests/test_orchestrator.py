"""Tests for the scan orchestrator."""

import asyncio
import threading
from typing import Optional
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import RecordingRuntime
from network_monitor._types import (
    BandwidthResult,
    BandwidthSource,
    EventKind,
    HistoryKind,
    LatencyResult,
    RemoteUptime,
)
from network_monitor.config import MonitorConfig
from network_monitor.exceptions import CommandTimeout, ScanFailed, ValidationError
from network_monitor.orchestrator import (
    ScanOptions,
    ScanOrchestrator,
    SweepOptions,
    build_scan_arguments,
)
from network_monitor.progress import ListProgressSink


SCAN_OUTPUT = [
    "Starting Nmap 7.94\n",
    "Nmap scan report for 10.0.0.5\nHost is up (0.002s latency).\n",
    "22/tcp open ssh\nMAC Address: 00:11:22:33:44:55 (Acme)\n",
    "Nmap scan report for 10.0.0.6\nHost is up (0.004s latency).\n80/tcp open http\n",
    "Nmap done: 256 IP addresses (2 hosts up) scanned in 5.00 seconds\n",
]


def make_orchestrator(runtime=None, **config_kwargs):
    config = MonitorConfig(**config_kwargs)
    runtime = runtime or RecordingRuntime()
    orchestrator = ScanOrchestrator(config, runtime_factory=lambda host: runtime)
    return orchestrator, runtime


class FakeProbes:
    """Probe suite double with scripted per-IP results."""

    def __init__(self, alive=None, fail=None, connected=True):
        self.alive = alive or {}
        self.fail = fail or {}
        self.connected = connected
        self.use_sandbox = False
        self.sandbox = None
        self.calls: list[tuple[str, str]] = []
        self.modes: list[Optional[bool]] = []
        self.closed = False

    async def latency(self, ip, use_sandbox=None):
        self.calls.append(("latency", ip))
        self.modes.append(use_sandbox)
        if ip in self.fail:
            raise self.fail[ip]
        if self.alive.get(ip, True):
            return LatencyResult(latency=1.5, alive=True, packet_loss=0.0)
        return LatencyResult(latency=None, alive=False, packet_loss=100.0)

    async def bandwidth(self, ip, use_sandbox=None):
        self.calls.append(("bandwidth", ip))
        return BandwidthResult(download=50.0, upload=10.0, source=BandwidthSource.IPERF3)

    async def connectivity(self, ip, use_sandbox=None):
        self.calls.append(("connectivity", ip))
        return self.connected

    async def remote_uptime(self, ip, credentials=None, use_sandbox=None):
        self.calls.append(("remote_uptime", ip))
        return RemoteUptime(available=False, reason="not used in sandbox mode")

    def close(self):
        self.closed = True


class TestBuildScanArguments:
    """Tests for scan argument construction."""

    def test_default_profile(self):
        """Should match -Pn -sS -O -p PORTS RANGE."""
        args = build_scan_arguments(ScanOptions(), "10.0.0.1-254", "22,80,443")
        assert args == ["-Pn", "-sS", "-O", "-p", "22,80,443", "10.0.0.1-254"]

    def test_full_profile(self):
        """Should add every requested flag."""
        options = ScanOptions(
            scan_type="connect",
            service_detection=True,
            os_guess=True,
            max_os_tries=1,
            ssh_scripts=True,
            timing=4,
            max_retries=2,
            host_timeout="30s",
        )
        args = build_scan_arguments(options, "10.0.0.1", "22")
        assert args == [
            "-Pn", "-sT", "-sV", "-O", "--osscan-guess", "--max-os-tries=1",
            "--script=ssh-auth-methods,ssh-hostkey",
            "-T4", "--max-retries=2", "--host-timeout=30s",
            "-p", "22", "10.0.0.1",
        ]

    def test_ping_profile(self):
        """Should emit host discovery only."""
        args = build_scan_arguments(ScanOptions(scan_type="ping"), "10.0.0.0/24", "22")
        assert args == ["-sn", "10.0.0.0/24"]

    def test_multiple_targets(self):
        """Should split comma-separated targets."""
        args = build_scan_arguments(ScanOptions(scan_type="ping"), "10.0.0.1,10.0.0.9", "22")
        assert args[-2:] == ["10.0.0.1", "10.0.0.9"]

    def test_bad_scan_type(self):
        """Should reject unknown scan types."""
        with pytest.raises(ValidationError):
            build_scan_arguments(ScanOptions(scan_type="xmas"), "10.0.0.1", "22")

    def test_bad_timing(self):
        """Should reject out-of-range timing templates."""
        with pytest.raises(ValidationError):
            build_scan_arguments(ScanOptions(timing=9), "10.0.0.1", "22")


class TestFullScanSandbox:
    """Tests for full scans through a scan container."""

    @pytest.mark.asyncio
    async def test_parses_and_records(self):
        """Should stream, parse, group and record devices."""
        orchestrator, runtime = make_orchestrator()
        runtime.scan_chunks = SCAN_OUTPUT
        sink = ListProgressSink()

        grouped = await orchestrator.full_scan(
            ScanOptions(ip_range="10.0.0.1-254", use_sandbox=True), sink
        )

        assert set(grouped) == {"Acme", "Unknown"}
        assert grouped["Acme"][0].ip == "10.0.0.5"
        assert grouped["Unknown"][0].ip == "10.0.0.6"

        assert runtime.scan_commands == [["-Pn", "-sS", "-O", "-p", "22,80,443", "10.0.0.1-254"]]
        assert ("run_streaming", "instrumentisto/nmap") in runtime.calls

        history = orchestrator.history.get("10.0.0.5", HistoryKind.SCAN_RESULTS)
        assert len(history) == 1
        assert history[0]["device"]["mac"] == "00:11:22:33:44:55"

    @pytest.mark.asyncio
    async def test_progress_events(self):
        """Should emit output chunks, the SSH subset and the final data."""
        orchestrator, runtime = make_orchestrator()
        runtime.scan_chunks = SCAN_OUTPUT
        sink = ListProgressSink()

        await orchestrator.full_scan(ScanOptions(ip_range="10.0.0.1-254", use_sandbox=True), sink)

        outputs = [e.output for e in sink.of_kind(EventKind.STATUS) if e.output]
        assert outputs == SCAN_OUTPUT

        ssh_events = [e for e in sink.of_kind(EventKind.STATUS) if e.data]
        assert ssh_events[0].data == [
            {"ip": "10.0.0.5", "available": True, "version": "SSH", "auth": []}
        ]

        final = sink.of_kind(EventKind.DATA)[-1].data
        assert final["Acme"][0]["ip"] == "10.0.0.5"
        assert final["Acme"][0]["sshAvailable"] is True

    @pytest.mark.asyncio
    async def test_empty_output_raises(self):
        """Should raise ScanFailed when the scan prints nothing."""
        orchestrator, runtime = make_orchestrator()
        runtime.scan_chunks = []

        with pytest.raises(ScanFailed):
            await orchestrator.full_scan(ScanOptions(ip_range="10.0.0.1", use_sandbox=True))

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises(self):
        """Should raise ScanFailed when the scan container fails."""
        orchestrator, runtime = make_orchestrator()
        runtime.scan_chunks = ["Failed to resolve\n"]
        runtime.scan_exit_code = 1

        with pytest.raises(ScanFailed):
            await orchestrator.full_scan(ScanOptions(ip_range="10.0.0.1", use_sandbox=True))

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Should raise CommandTimeout when the scan runs too long."""
        orchestrator, runtime = make_orchestrator()
        runtime.scan_chunks = ["a\n", "b\n"]
        runtime.scan_delay = 0.5

        with pytest.raises(CommandTimeout):
            await orchestrator.full_scan(
                ScanOptions(ip_range="10.0.0.1", use_sandbox=True, timeout=0.05)
            )

    @pytest.mark.asyncio
    async def test_no_devices_up(self):
        """Should return an empty grouping when nothing is up."""
        orchestrator, runtime = make_orchestrator()
        runtime.scan_chunks = ["Nmap done: 1 IP address (0 hosts up) scanned in 2.00 seconds\n"]

        grouped = await orchestrator.full_scan(ScanOptions(ip_range="10.0.0.1", use_sandbox=True))
        assert grouped == {}


class TestFullScanValidation:
    """Tests for validation before anything is spawned."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ip_range", ["10.0.0.1; rm -rf /", "not-an-ip", "10.0.0.300", ""])
    async def test_invalid_range(self, ip_range):
        """Should raise ValidationError and never run the scan."""
        orchestrator, runtime = make_orchestrator(default_ip_range="bogus")

        with pytest.raises(ValidationError):
            await orchestrator.full_scan(ScanOptions(ip_range=ip_range, use_sandbox=True))

        assert runtime.calls == []

    @pytest.mark.asyncio
    async def test_invalid_ports(self):
        """Should reject bad port lists."""
        orchestrator, runtime = make_orchestrator()

        with pytest.raises(ValidationError):
            await orchestrator.full_scan(
                ScanOptions(ip_range="10.0.0.1", ports="22,99999", use_sandbox=True)
            )

        assert runtime.calls == []


class TestFullScanHost:
    """Tests for host-side scans."""

    @pytest.mark.asyncio
    async def test_missing_nmap(self):
        """Should raise ScanFailed when nmap is not installed."""
        import nmap

        orchestrator, _ = make_orchestrator()
        with patch(
            "network_monitor.orchestrator.nmap.PortScanner",
            side_effect=nmap.PortScannerError("nmap program was not found in path"),
        ):
            with pytest.raises(ScanFailed):
                await orchestrator.full_scan(ScanOptions(ip_range="10.0.0.1", use_sandbox=False))

    @pytest.mark.asyncio
    async def test_streams_host_process(self):
        """Should read the local process output in chunks."""
        orchestrator, _ = make_orchestrator()
        orchestrator._nmap_checked = True

        chunks = [b"Nmap scan report for 10.0.0.5\nHost is up.\n", b""]
        process = MagicMock()
        process.stdout.read = AsyncMock(side_effect=chunks)
        process.wait = AsyncMock(return_value=0)

        sink = ListProgressSink()
        with patch(
            "network_monitor.orchestrator.asyncio.create_subprocess_exec",
            AsyncMock(return_value=process),
        ) as spawn:
            grouped = await orchestrator.full_scan(
                ScanOptions(ip_range="10.0.0.5", use_sandbox=False), sink
            )

        assert spawn.call_args.args[0] == "nmap"
        assert grouped["Unknown"][0].ip == "10.0.0.5"

    @pytest.mark.asyncio
    async def test_host_nonzero_exit(self):
        """Should raise ScanFailed on a non-zero exit."""
        orchestrator, _ = make_orchestrator()
        orchestrator._nmap_checked = True

        process = MagicMock()
        process.stdout.read = AsyncMock(side_effect=[b"You requested a scan type which requires root\n", b""])
        process.wait = AsyncMock(return_value=1)

        with patch(
            "network_monitor.orchestrator.asyncio.create_subprocess_exec",
            AsyncMock(return_value=process),
        ):
            with pytest.raises(ScanFailed, match="requires root"):
                await orchestrator.full_scan(ScanOptions(ip_range="10.0.0.5", use_sandbox=False))

    @pytest.mark.asyncio
    async def test_binary_missing_at_spawn(self):
        """Should raise ScanFailed when the binary vanishes."""
        orchestrator, _ = make_orchestrator()
        orchestrator._nmap_checked = True

        with patch(
            "network_monitor.orchestrator.asyncio.create_subprocess_exec",
            AsyncMock(side_effect=FileNotFoundError("nmap")),
        ):
            with pytest.raises(ScanFailed):
                await orchestrator.full_scan(ScanOptions(ip_range="10.0.0.5", use_sandbox=False))


class TestAbandonedScans:
    """Tests for scans that time out or whose caller gives up."""

    @pytest.mark.asyncio
    async def test_host_timeout_kills_process(self):
        """Should kill the local scan process when it runs too long."""
        orchestrator, _ = make_orchestrator()
        orchestrator._nmap_checked = True

        async def never_returns(_size):
            await asyncio.sleep(3600)

        process = MagicMock()
        process.stdout.read = AsyncMock(side_effect=never_returns)
        process.wait = AsyncMock(return_value=-9)

        with patch(
            "network_monitor.orchestrator.asyncio.create_subprocess_exec",
            AsyncMock(return_value=process),
        ):
            with pytest.raises(CommandTimeout):
                await orchestrator.full_scan(
                    ScanOptions(ip_range="10.0.0.5", use_sandbox=False, timeout=0.05)
                )

        process.kill.assert_called_once()
        process.wait.assert_awaited()

    @pytest.mark.asyncio
    async def test_host_cancel_kills_process(self):
        """Should kill the local scan process when the scan is cancelled."""
        orchestrator, _ = make_orchestrator()
        orchestrator._nmap_checked = True

        started = asyncio.Event()

        async def never_returns(_size):
            started.set()
            await asyncio.sleep(3600)

        process = MagicMock()
        process.stdout.read = AsyncMock(side_effect=never_returns)
        process.wait = AsyncMock(return_value=-9)

        with patch(
            "network_monitor.orchestrator.asyncio.create_subprocess_exec",
            AsyncMock(return_value=process),
        ):
            task = asyncio.create_task(
                orchestrator.full_scan(ScanOptions(ip_range="10.0.0.5", use_sandbox=False))
            )
            await asyncio.wait_for(started.wait(), timeout=2)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        process.kill.assert_called_once()

    @pytest.mark.asyncio
    async def test_container_cancel_removes_container(self):
        """Should remove the scan container when a sandbox scan is cancelled."""
        from network_monitor.sandbox import DockerRuntime

        stream_closed = threading.Event()

        def logs(**kwargs):
            yield b"Starting Nmap 7.94\n"
            # Docker ends the log stream once the container is removed
            stream_closed.wait(5)

        container = MagicMock(id="scan1", short_id="scan1")
        container.logs.side_effect = logs
        container.remove.side_effect = lambda **kwargs: stream_closed.set()

        client = MagicMock()
        client.containers.run.return_value = container
        client.containers.get.return_value = container

        runtime = DockerRuntime()
        runtime._client = client
        orchestrator, _ = make_orchestrator(runtime)
        sink = ListProgressSink()

        task = asyncio.create_task(
            orchestrator.full_scan(ScanOptions(ip_range="10.0.0.5", use_sandbox=True), sink)
        )
        for _ in range(200):
            if any(e.output for e in sink.events):
                break
            await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        container.remove.assert_called_once_with(force=True)
        container.wait.assert_not_called()
        await orchestrator.close()


class TestPerformanceSweep:
    """Tests for the per-IP performance sweep."""

    @pytest.mark.asyncio
    async def test_aggregate_shape_and_order(self):
        """Should return entries for every IP in input order."""
        orchestrator, _ = make_orchestrator()
        orchestrator.probes = FakeProbes()

        result = await orchestrator.performance_sweep(["10.0.0.2", "10.0.0.1"])

        assert set(result) == {"timestamp", "latency", "bandwidth", "uptime"}
        assert [e["ip"] for e in result["latency"]] == ["10.0.0.2", "10.0.0.1"]
        assert result["latency"][0]["latency"] == 1.5
        assert result["latency"][0]["packetLoss"] == 0.0
        assert result["bandwidth"][0]["source"] == "iperf3"
        assert result["uptime"][0]["status"] == "up"
        assert result["uptime"][0]["uptimePercentage"] == 100.0

    @pytest.mark.asyncio
    async def test_down_device(self):
        """Should record null bandwidth and down uptime for dead devices."""
        orchestrator, _ = make_orchestrator()
        probes = FakeProbes(alive={"10.0.0.3": False})
        orchestrator.probes = probes

        result = await orchestrator.performance_sweep(["10.0.0.3"])

        assert result["bandwidth"][0] == {
            "ip": "10.0.0.3",
            "timestamp": result["bandwidth"][0]["timestamp"],
            "download": None,
            "upload": None,
            "source": None,
        }
        assert result["uptime"][0]["status"] == "down"
        assert ("bandwidth", "10.0.0.3") not in probes.calls
        assert orchestrator.history.get("10.0.0.3", HistoryKind.BANDWIDTH) == []

    @pytest.mark.asyncio
    async def test_connectivity_decides_status(self):
        """Should record down when the connectivity check fails."""
        orchestrator, _ = make_orchestrator()
        orchestrator.probes = FakeProbes(connected=False)

        result = await orchestrator.performance_sweep(["10.0.0.4"])
        assert result["uptime"][0]["status"] == "down"

    @pytest.mark.asyncio
    async def test_failure_does_not_abort(self):
        """Should emit an error for a failing IP and keep going."""
        orchestrator, _ = make_orchestrator()
        orchestrator.probes = FakeProbes(fail={"10.0.0.2": RuntimeError("probe exploded")})
        sink = ListProgressSink()

        result = await orchestrator.performance_sweep(["10.0.0.1", "10.0.0.2", "10.0.0.3"], sink=sink)

        assert [e["ip"] for e in result["latency"]] == ["10.0.0.1", "10.0.0.3"]
        errors = sink.of_kind(EventKind.ERROR)
        assert len(errors) == 1
        assert errors[0].ip == "10.0.0.2"
        assert "probe exploded" in errors[0].message

    @pytest.mark.asyncio
    async def test_invalid_ip_reported(self):
        """Should report invalid IPs as errors."""
        orchestrator, _ = make_orchestrator()
        orchestrator.probes = FakeProbes()
        sink = ListProgressSink()

        result = await orchestrator.performance_sweep(["not-an-ip", "10.0.0.1"], sink=sink)

        assert [e["ip"] for e in result["latency"]] == ["10.0.0.1"]
        assert sink.of_kind(EventKind.ERROR)[0].ip == "not-an-ip"

    @pytest.mark.asyncio
    async def test_history_recorded_in_order(self):
        """Should record latency, bandwidth and uptime history."""
        orchestrator, _ = make_orchestrator()
        orchestrator.probes = FakeProbes()

        await orchestrator.performance_sweep(["10.0.0.1"])
        await orchestrator.performance_sweep(["10.0.0.1"])

        history = orchestrator.historical_performance("10.0.0.1")
        assert history["ip"] == "10.0.0.1"
        assert [e["value"] for e in history["latency"]] == [1.5, 1.5]
        assert history["bandwidth"][0]["source"] == "iperf3"
        assert [e["status"] for e in history["uptime"]] == ["up", "up"]
        assert history["uptimePercentage"] == 100.0

    @pytest.mark.asyncio
    async def test_events(self):
        """Should emit partial updates, progress and the final data event."""
        orchestrator, _ = make_orchestrator()
        orchestrator.probes = FakeProbes()
        sink = ListProgressSink()

        await orchestrator.performance_sweep(["10.0.0.1", "10.0.0.2"], sink=sink)

        partials = sink.of_kind(EventKind.PARTIAL_UPDATE)
        assert [e.ip for e in partials] == ["10.0.0.1", "10.0.0.2"]
        assert set(partials[0].data) == {"latency", "bandwidth", "uptime"}

        progress = [e.progress for e in sink.of_kind(EventKind.STATUS) if e.progress is not None]
        assert progress[-1] == 100.0
        assert 50.0 in progress

        assert sink.events[-1].kind == EventKind.DATA

    @pytest.mark.asyncio
    async def test_callable_sink(self):
        """Should accept a plain callable as the sink."""
        orchestrator, _ = make_orchestrator()
        orchestrator.probes = FakeProbes()
        received = []

        await orchestrator.performance_sweep(["10.0.0.1"], sink=received.append)

        assert received[-1].kind == EventKind.DATA

    @pytest.mark.asyncio
    async def test_concurrent_sweep_keeps_order(self):
        """Should keep input order with parallel IPs."""
        orchestrator, _ = make_orchestrator()
        orchestrator.probes = FakeProbes()

        ips = [f"10.0.0.{i}" for i in range(1, 9)]
        result = await orchestrator.performance_sweep(ips, SweepOptions(concurrency=4))

        assert [e["ip"] for e in result["latency"]] == ips

    @pytest.mark.asyncio
    async def test_sandbox_override_per_call(self):
        """Should pass the per-sweep mode to each probe without touching the suite."""
        orchestrator, _ = make_orchestrator()
        probes = FakeProbes()
        orchestrator.probes = probes

        await orchestrator.performance_sweep(["10.0.0.1"], SweepOptions(use_sandbox=True))

        assert probes.modes == [True]
        assert probes.use_sandbox is False
        assert probes.sandbox is orchestrator.sandbox

    @pytest.mark.asyncio
    async def test_overlapping_sweeps_keep_their_modes(self):
        """Should route each sweep's probes by its own mode."""
        orchestrator, _ = make_orchestrator()

        class SlowProbes(FakeProbes):
            async def latency(self, ip, use_sandbox=None):
                await asyncio.sleep(0.01)
                return await super().latency(ip, use_sandbox)

        probes = SlowProbes()
        orchestrator.probes = probes

        await asyncio.gather(
            orchestrator.performance_sweep(
                ["10.0.0.1", "10.0.0.2"], SweepOptions(use_sandbox=True)
            ),
            orchestrator.performance_sweep(
                ["10.0.1.1", "10.0.1.2"], SweepOptions(use_sandbox=False)
            ),
        )

        modes = dict(zip([ip for kind, ip in probes.calls if kind == "latency"], probes.modes))
        assert modes == {
            "10.0.0.1": True, "10.0.0.2": True, "10.0.1.1": False, "10.0.1.2": False,
        }

    @pytest.mark.asyncio
    async def test_docker_host_override(self):
        """Should rebuild the runtime for another Docker host."""
        hosts = []

        def factory(host):
            hosts.append(host)
            return RecordingRuntime()

        orchestrator = ScanOrchestrator(MonitorConfig(), runtime_factory=factory)
        orchestrator.probes = FakeProbes()

        await orchestrator.performance_sweep(
            ["10.0.0.1"], SweepOptions(use_sandbox=True, docker_host="tcp://10.5.1.212:2375")
        )

        assert hosts == ["tcp://10.5.1.212:2375"]


class TestSweepWithSandbox:
    """End-to-end sweep through the real probe suite and a recording sandbox."""

    @pytest.mark.asyncio
    async def test_sandbox_sweep(self):
        """Should drive ping, iperf3 and connectivity through one sandbox."""
        runtime = RecordingRuntime()
        runtime.responses = {
            "ping -c 5": (
                "5 packets transmitted, 5 received, 0% packet loss\n"
                "rtt min/avg/max/mdev = 1.0/2.0/3.0/0.5 ms\n"
            ),
            "ping -c 1 -W 1": "1 packets transmitted, 1 received, 0% packet loss\n",
            "-J -R": '{"end": {"sum_received": {"bits_per_second": 80000000}}}',
            "iperf3": '{"end": {"sum_received": {"bits_per_second": 20000000}}}',
        }
        orchestrator, _ = make_orchestrator(runtime, use_sandbox=True)

        result = await orchestrator.performance_sweep(["10.0.0.5"])

        assert result["latency"][0]["latency"] == 2.0
        assert result["bandwidth"][0]["download"] == 80.0
        assert result["bandwidth"][0]["upload"] == 20.0
        assert result["uptime"][0]["status"] == "up"
        assert result["uptime"][0]["remote"]["reason"] == "not used in sandbox mode"
        assert runtime.executed[0] == "ping -c 5 10.0.0.5"


class TestClose:
    """Tests for shutdown."""

    @pytest.mark.asyncio
    async def test_close_releases_sandbox(self):
        """Should close the sandbox runtime."""
        orchestrator, runtime = make_orchestrator()
        orchestrator.sandbox  # create lazily
        await orchestrator.close()
        assert runtime.closed

    @pytest.mark.asyncio
    async def test_close_shuts_down_worker_pools(self):
        """Should stop the ping and Docker worker threads."""
        from network_monitor.sandbox import DockerRuntime

        runtime = DockerRuntime()
        runtime._client = MagicMock()
        orchestrator, _ = make_orchestrator(runtime)
        probe_pool = orchestrator.probes.latency_probe.executor
        docker_pool = runtime.executor
        orchestrator.sandbox

        await orchestrator.close()

        assert probe_pool._shutdown
        assert docker_pool._shutdown
        assert orchestrator.probes.latency_probe._executor is None
        assert runtime._executor is None
