"""
Network Monitor - device discovery and performance monitoring.

Discovers devices with the scan tool, then keeps measuring their
reachability, latency, bandwidth and uptime. Probe commands run either
natively on the host or inside one long-lived sandbox container.

Components:
    OutputParser            scan-tool text -> DeviceRecords grouped by vendor
    SandboxCommandExecutor  single-writer FIFO command queue over the sandbox
    ProbeSuite              latency / connectivity / bandwidth / remote uptime
    HistoryStore            bounded per-IP history (in memory only)
    ScanOrchestrator        full_scan() and performance_sweep()
"""

__version__ = "0.1.0"

from ._types import (
    BandwidthResult,
    BandwidthSource,
    DeviceRecord,
    DeviceStatus,
    EventKind,
    HistoryKind,
    LatencyResult,
    ProgressEvent,
    RemoteUptime,
    SSHCredentials,
)
from .config import MonitorConfig
from .exceptions import (
    CommandTimeout,
    MonitorError,
    NetworkUnreachable,
    ProbeFailure,
    SandboxUnavailable,
    ScanFailed,
    ValidationError,
)
from .history import HistoryStore
from .orchestrator import ScanOptions, ScanOrchestrator, SweepOptions
from .parser import OutputParser
from .probes import ProbeSuite
from .sandbox import SandboxCommandExecutor

__all__ = [
    "__version__",
    "BandwidthResult",
    "BandwidthSource",
    "CommandTimeout",
    "DeviceRecord",
    "DeviceStatus",
    "EventKind",
    "HistoryKind",
    "HistoryStore",
    "LatencyResult",
    "MonitorConfig",
    "MonitorError",
    "NetworkUnreachable",
    "OutputParser",
    "ProbeFailure",
    "ProbeSuite",
    "ProgressEvent",
    "RemoteUptime",
    "SSHCredentials",
    "SandboxCommandExecutor",
    "SandboxUnavailable",
    "ScanFailed",
    "ScanOptions",
    "ScanOrchestrator",
    "SweepOptions",
    "ValidationError",
]
