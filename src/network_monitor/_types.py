"""
Type definitions for the network monitor.

These dataclasses define the core domain model for device discovery,
performance probing and progress reporting.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


# Maximum retained history entries per (ip, metric kind)
MAX_HISTORY_ITEMS = 100


def now_utc() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return now_utc().isoformat()


class DeviceStatus(str, Enum):
    """Reachability as reported by the scan tool."""
    UNKNOWN = "unknown"
    UP = "up"


class HistoryKind(str, Enum):
    """Metric series kept per IP."""
    LATENCY = "latency"
    BANDWIDTH = "bandwidth"
    UPTIME = "uptime"
    SCAN_RESULTS = "scanResults"


class BandwidthSource(str, Enum):
    """Which tier of the bandwidth fallback chain produced a measurement."""
    IPERF3 = "iperf3"
    CURL_FALLBACK = "curl-fallback"
    SIMULATED = "simulated"
    FAILED = "failed"


class EventKind(str, Enum):
    """Progress sink event kinds."""
    STATUS = "status"
    PARTIAL_UPDATE = "partialUpdate"
    DATA = "data"
    ERROR = "error"


@dataclass(frozen=True)
class MacInfo:
    """Normalized view of mac + vendor kept for older consumers."""
    available: bool
    address: Optional[str] = None
    vendor: Optional[str] = None

    def to_dict(self) -> dict:
        return {"available": self.available, "address": self.address, "vendor": self.vendor}


@dataclass(frozen=True)
class SSHService:
    """An open SSH port seen in the scan output."""
    available: bool = False
    port: int = 22
    version: Optional[str] = None

    def to_dict(self) -> dict:
        return {"available": self.available, "port": self.port, "version": self.version}


@dataclass(frozen=True)
class OSDetails:
    """Structured fields extracted from the OS detection block."""
    name: Optional[str] = None
    accuracy: Optional[int] = None
    uptime: Optional[str] = None
    uptime_last_boot: Optional[str] = None
    network_distance: Optional[str] = None
    tcp_sequence: Optional[str] = None
    ip_id_sequence: Optional[str] = None
    service_info: Optional[str] = None
    device_type: Optional[str] = None
    running: Optional[str] = None
    cpe: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "accuracy": self.accuracy,
            "uptime": self.uptime,
            "uptimeLastBoot": self.uptime_last_boot,
            "networkDistance": self.network_distance,
            "tcpSequence": self.tcp_sequence,
            "ipIdSequence": self.ip_id_sequence,
            "serviceInfo": self.service_info,
            "deviceType": self.device_type,
            "running": self.running,
            "cpe": self.cpe,
        }


@dataclass(frozen=True)
class OSInfo:
    available: bool = False
    name: Optional[str] = None
    accuracy: Optional[int] = None
    full: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "available": self.available,
            "name": self.name,
            "accuracy": self.accuracy,
            "full": list(self.full),
        }


@dataclass(frozen=True)
class DeviceRecord:
    """
    One discovered host from one scan pass.

    Created fresh by the parser and never mutated afterwards. Callers
    own storage; the record itself has no persistence.
    """
    ip: str
    status: DeviceStatus = DeviceStatus.UNKNOWN
    hostname: Optional[str] = None
    mac: Optional[str] = None
    vendor: Optional[str] = None
    mac_info: Optional[MacInfo] = None
    latency: Optional[float] = None

    # Raw port lines, e.g. "22/tcp open ssh"
    ports: tuple[str, ...] = ()
    ssh_service: Optional[SSHService] = None
    ssh_auth_methods: tuple[str, ...] = ()

    os_details: OSDetails = field(default_factory=OSDetails)
    os_info: OSInfo = field(default_factory=OSInfo)
    raw_os_info: tuple[str, ...] = ()

    @property
    def is_up(self) -> bool:
        return self.status == DeviceStatus.UP

    @property
    def ssh_available(self) -> bool:
        return self.ssh_service is not None and self.ssh_service.available

    @property
    def ssh(self) -> Optional[SSHService]:
        """Alias of ssh_service."""
        return self.ssh_service

    def to_dict(self) -> dict:
        """Serialize with the camelCase keys dashboard consumers expect."""
        data: dict[str, Any] = {
            "ip": self.ip,
            "status": self.status.value,
            "ports": list(self.ports),
            "sshAvailable": self.ssh_available,
            "osDetails": self.os_details.to_dict(),
            "osInfo": self.os_info.to_dict(),
            "rawOSInfo": list(self.raw_os_info),
        }
        if self.hostname:
            data["hostname"] = self.hostname
        if self.mac:
            data["mac"] = self.mac
        if self.vendor:
            data["vendor"] = self.vendor
        if self.mac_info:
            data["macInfo"] = self.mac_info.to_dict()
        if self.latency is not None:
            data["latency"] = self.latency
        if self.ssh_service:
            data["sshService"] = self.ssh_service.to_dict()
            data["ssh"] = self.ssh_service.to_dict()
        if self.ssh_auth_methods:
            data["sshAuthMethods"] = list(self.ssh_auth_methods)
        return data


@dataclass
class LatencyResult:
    """Result of a latency probe."""
    latency: Optional[float] = None  # milliseconds
    alive: bool = False
    packet_loss: float = 100.0

    def to_dict(self) -> dict:
        return {"latency": self.latency, "alive": self.alive, "packetLoss": self.packet_loss}


@dataclass
class BandwidthResult:
    """Result of a bandwidth probe. Only source == iperf3 is a real measurement."""
    download: Optional[float] = None  # Mbps
    upload: Optional[float] = None    # Mbps
    source: Optional[BandwidthSource] = None

    @property
    def is_measured(self) -> bool:
        return self.source == BandwidthSource.IPERF3

    def to_dict(self) -> dict:
        return {
            "download": self.download,
            "upload": self.upload,
            "source": self.source.value if self.source else None,
        }


@dataclass
class RemoteUptime:
    """Uptime reported by the device itself over SSH."""
    available: bool = False
    uptime_string: Optional[str] = None
    raw: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"available": self.available}
        if self.uptime_string is not None:
            data["uptimeString"] = self.uptime_string
        if self.raw is not None:
            data["raw"] = self.raw
        if self.reason is not None:
            data["reason"] = self.reason
        return data


@dataclass
class SSHCredentials:
    username: str
    password: Optional[str] = None


@dataclass
class ProgressEvent:
    """
    One event delivered to a progress sink.

    status: free-text message (optionally with raw scan output or a
    progress percentage); partialUpdate: per-IP metrics; data: final
    payload; error: failure message.
    """
    kind: EventKind
    message: Optional[str] = None
    ip: Optional[str] = None
    data: Any = None
    output: Optional[str] = None
    progress: Optional[float] = None
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"kind": self.kind.value, "timestamp": self.timestamp}
        for key in ("message", "ip", "data", "output", "progress"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data
