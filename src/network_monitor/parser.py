"""
Parser for the scan tool's human-readable output.

The raw text is the most important wire format in the monitor. It is
read line by line with a small state machine:

    IDLE -> IN_DEVICE            "Nmap scan report for <ip>" header
    IN_DEVICE -> IN_OS_BLOCK     "OS detection performed" / "OS fingerprint"
    * -> IN_AUTH_METHODS         "ssh-auth-methods" script marker
    IN_AUTH_METHODS -> previous  first line that is not "|"-prefixed

A new header (or end of input) flushes the current device. The parser
never raises: fields it cannot extract are simply left unset.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Optional

from ._types import (
    DeviceRecord,
    DeviceStatus,
    MacInfo,
    OSDetails,
    OSInfo,
    SSHService,
)

logger = logging.getLogger(__name__)

UNKNOWN_VENDOR = "Unknown"

HOST_HEADER = "Nmap scan report for"

# MAC length tolerates 12 (bare hex) to 17 (separated) characters
_MAC_RE = re.compile(r"MAC Address:\s+([0-9A-Fa-f:.\-]{12,17})(?:\s+\((.*)\))?")
_HEADER_RE = re.compile(r"Nmap scan report for\s+(\S+)\s+\((\d{1,3}(?:\.\d{1,3}){3})\)")
_LATENCY_RE = re.compile(r"\(([0-9.]+)s latency\)")
_PORT_RE = re.compile(r"^\d+/(tcp|udp)")
_SSH_VERSION_RE = re.compile(r"\bssh\s+(.+)$", re.IGNORECASE)
_ACCURACY_RE = re.compile(r"Accuracy:\s*(\d+)", re.IGNORECASE)
_GUESS_PERCENT_RE = re.compile(r"\((\d+)%\)")
_UPTIME_GUESS_RE = re.compile(r"Uptime guess:\s*([\d.]+)\s*(\w+)", re.IGNORECASE)
_LAST_BOOT_RE = re.compile(r"\(since\s+(.*?)\)", re.IGNORECASE)
_DISTANCE_RE = re.compile(r"Network Distance:\s*(\d+)\s*hops?", re.IGNORECASE)

OS_TRIGGERS = ("OS detection performed", "OS fingerprint")

# Lines that belong in the OS info buffer
OS_MARKERS = (
    "OS:",
    "OS details:",
    "OS CPE:",
    "Running:",
    "Running (JUST GUESSING):",
    "Device type:",
    "Aggressive OS guesses:",
    "No exact OS matches",
    "Accuracy:",
    "Service Info:",
    "Uptime guess:",
    "Network Distance:",
    "TCP Sequence Prediction:",
    "IP ID Sequence Generation:",
)

AUTH_METHODS_MARKER = "ssh-auth-methods"
AUTH_METHODS_HEADER = "Supported authentication methods"


class ParserState(str, Enum):
    IDLE = "idle"
    IN_DEVICE = "in_device"
    IN_OS_BLOCK = "in_os_block"
    IN_AUTH_METHODS = "in_auth_methods"


class LineKind(str, Enum):
    HOST_HEADER = "host_header"
    MAC = "mac"
    HOST_UP = "host_up"
    PORT = "port"
    OS_TRIGGER = "os_trigger"
    OS_MARKER = "os_marker"
    AUTH_METHODS = "auth_methods"
    SCRIPT_LINE = "script_line"
    OTHER = "other"


def classify_line(line: str) -> LineKind:
    """Work out which rule a raw output line falls under."""
    stripped = line.strip()
    if stripped.startswith("Nmap done"):
        return LineKind.OTHER
    if HOST_HEADER in line:
        return LineKind.HOST_HEADER
    if AUTH_METHODS_MARKER in line:
        return LineKind.AUTH_METHODS
    if stripped.startswith("|"):
        return LineKind.SCRIPT_LINE
    if "MAC Address:" in line:
        return LineKind.MAC
    if "Host is up" in line:
        return LineKind.HOST_UP
    if _PORT_RE.match(stripped):
        return LineKind.PORT
    if any(trigger in line for trigger in OS_TRIGGERS):
        return LineKind.OS_TRIGGER
    if any(marker in line for marker in OS_MARKERS):
        return LineKind.OS_MARKER
    return LineKind.OTHER


@dataclass
class _DeviceAccumulator:
    """Mutable per-device state while its block is being read."""
    ip: str
    hostname: Optional[str] = None
    status: DeviceStatus = DeviceStatus.UNKNOWN
    mac: Optional[str] = None
    vendor: Optional[str] = None
    latency: Optional[float] = None
    ports: list[str] = field(default_factory=list)
    ssh_service: Optional[SSHService] = None
    auth_methods: list[str] = field(default_factory=list)
    os_lines: list[str] = field(default_factory=list)
    os_fields: dict = field(default_factory=dict)
    os_block_seen: bool = False

    def build(self) -> DeviceRecord:
        os_details = OSDetails(**self.os_fields)
        os_info = OSInfo(
            available=bool(self.os_lines),
            name=os_details.name,
            accuracy=os_details.accuracy,
            full=tuple(self.os_lines),
        )
        mac_info = None
        if self.mac:
            mac_info = MacInfo(available=True, address=self.mac, vendor=self.vendor)

        return DeviceRecord(
            ip=self.ip,
            status=self.status,
            hostname=self.hostname,
            mac=self.mac,
            vendor=self.vendor,
            mac_info=mac_info,
            latency=self.latency,
            ports=tuple(self.ports),
            ssh_service=self.ssh_service,
            ssh_auth_methods=tuple(self.auth_methods),
            os_details=os_details,
            os_info=os_info,
            raw_os_info=tuple(self.os_lines),
        )


class OutputParser:
    """
    Turns raw scan-tool text into DeviceRecords.

    Stateless between calls: every parse() builds its own state machine
    run, so one parser instance can be shared freely.
    """

    def parse(self, raw_text: str) -> dict[str, list[DeviceRecord]]:
        """Parse output into reachable devices grouped by vendor."""
        devices = [d for d in self.parse_devices(raw_text) if d.is_up]
        return group_by_vendor(devices)

    def parse_devices(self, raw_text: str) -> list[DeviceRecord]:
        """Parse every host block, reachable or not."""
        return _ParseRun().feed(raw_text or "")


class _ParseRun:
    """One pass of the state machine over one output text."""

    def __init__(self) -> None:
        self.state = ParserState.IDLE
        self.current: Optional[_DeviceAccumulator] = None
        self.devices: list[DeviceRecord] = []

        handlers: dict[LineKind, Callable[[str], ParserState]] = {
            LineKind.HOST_HEADER: self._on_header,
            LineKind.MAC: self._on_mac,
            LineKind.HOST_UP: self._on_host_up,
            LineKind.PORT: self._on_port,
            LineKind.OS_TRIGGER: self._on_os_trigger,
            LineKind.OS_MARKER: self._on_os_marker,
            LineKind.AUTH_METHODS: self._on_auth_methods_start,
        }
        in_os_block = dict(handlers)
        in_os_block[LineKind.OTHER] = self._on_os_block_other

        # Missing entries mean "ignore the line, keep the state"
        self.transitions: dict[ParserState, dict[LineKind, Callable[[str], ParserState]]] = {
            ParserState.IDLE: {LineKind.HOST_HEADER: self._on_header},
            ParserState.IN_DEVICE: handlers,
            ParserState.IN_OS_BLOCK: in_os_block,
            ParserState.IN_AUTH_METHODS: {
                LineKind.SCRIPT_LINE: self._on_auth_method_line,
                LineKind.AUTH_METHODS: self._on_auth_method_line,
            },
        }

    def feed(self, raw_text: str) -> list[DeviceRecord]:
        for line in raw_text.splitlines():
            self._step(line.rstrip("\r"))
        self._flush()
        return self.devices

    def _step(self, line: str) -> None:
        kind = classify_line(line)
        handler = self.transitions[self.state].get(kind)

        if handler is None and self.state == ParserState.IN_AUTH_METHODS:
            # Block ended: return to the device and re-read this line there
            self.state = self._device_state()
            handler = self.transitions[self.state].get(kind)

        if handler is not None:
            self.state = handler(line)

    def _device_state(self) -> ParserState:
        if self.current is not None and self.current.os_block_seen:
            return ParserState.IN_OS_BLOCK
        return ParserState.IN_DEVICE

    def _flush(self) -> None:
        if self.current is not None:
            self.devices.append(self.current.build())
            self.current = None

    # -------------------------------------------------------------------------
    # Line handlers
    # -------------------------------------------------------------------------

    def _on_header(self, line: str) -> ParserState:
        self._flush()
        target = line.split(HOST_HEADER, 1)[1].strip()
        hostname = None
        match = _HEADER_RE.search(line)
        if match:
            hostname, target = match.group(1), match.group(2)
        self.current = _DeviceAccumulator(ip=target, hostname=hostname)
        return ParserState.IN_DEVICE

    def _on_mac(self, line: str) -> ParserState:
        device = self.current
        match = _MAC_RE.search(line)
        if match:
            device.mac = match.group(1)
            device.vendor = (match.group(2) or "").strip() or None
        else:
            # Fallback: whatever follows the literal prefix
            parts = line.split("MAC Address:", 1)[1].split()
            if parts:
                device.mac = parts[0]
                vendor = " ".join(parts[1:]).strip()
                if vendor.startswith("(") and vendor.endswith(")"):
                    vendor = vendor[1:-1]
                device.vendor = vendor or None
        return self._device_state()

    def _on_host_up(self, line: str) -> ParserState:
        self.current.status = DeviceStatus.UP
        match = _LATENCY_RE.search(line)
        if match:
            try:
                self.current.latency = float(match.group(1))
            except ValueError:
                pass
        return self._device_state()

    def _on_port(self, line: str) -> ParserState:
        port_line = line.strip()
        self.current.ports.append(port_line)
        if "22/tcp" in port_line and "open" in port_line and "ssh" in port_line:
            version = "SSH"
            match = _SSH_VERSION_RE.search(port_line)
            if match:
                version = match.group(1).strip() or version
            self.current.ssh_service = SSHService(available=True, port=22, version=version)
        return self._device_state()

    def _on_os_trigger(self, line: str) -> ParserState:
        self.current.os_block_seen = True
        self._record_os_line(line)
        return ParserState.IN_OS_BLOCK

    def _on_os_marker(self, line: str) -> ParserState:
        self._record_os_line(line)
        return self._device_state()

    def _on_os_block_other(self, line: str) -> ParserState:
        # Inside the block, bare "Key: value" fingerprint lines still count
        stripped = line.strip()
        if stripped.startswith("Nmap done"):
            return ParserState.IN_OS_BLOCK
        if re.match(r"^\w+:", stripped):
            key, _, value = stripped.partition(":")
            if key in ("Running", "OS") and value.strip():
                self.current.os_fields.setdefault("name", value.strip())
            self.current.os_lines.append(stripped)
        return ParserState.IN_OS_BLOCK

    def _on_auth_methods_start(self, line: str) -> ParserState:
        return ParserState.IN_AUTH_METHODS

    def _on_auth_method_line(self, line: str) -> ParserState:
        stripped = line.strip()
        is_last = stripped.startswith("|_")
        content = stripped.lstrip("|_").strip()

        if AUTH_METHODS_MARKER in content:
            return ParserState.IN_AUTH_METHODS

        if content.startswith(AUTH_METHODS_HEADER):
            return ParserState.IN_AUTH_METHODS

        if content.endswith(":") or not content:
            # Another script's section header: the methods list is done
            return self._device_state()

        self.current.auth_methods.append(content)
        return self._device_state() if is_last else ParserState.IN_AUTH_METHODS

    # -------------------------------------------------------------------------
    # OS field extraction
    # -------------------------------------------------------------------------

    def _record_os_line(self, line: str) -> None:
        stripped = line.strip()
        if not stripped:
            return
        self.current.os_lines.append(stripped)
        fields = self.current.os_fields

        if "OS details:" in stripped:
            fields["name"] = stripped.split("OS details:", 1)[1].strip()
        elif "Accuracy:" in stripped:
            match = _ACCURACY_RE.search(stripped)
            if match and fields.get("accuracy") is None:
                fields["accuracy"] = int(match.group(1))
        elif "Aggressive OS guesses:" in stripped:
            match = _GUESS_PERCENT_RE.search(stripped)
            if match and fields.get("accuracy") is None:
                fields["accuracy"] = int(match.group(1))
        elif "Uptime guess:" in stripped:
            match = _UPTIME_GUESS_RE.search(stripped)
            if match:
                fields["uptime"] = f"{match.group(1)} {match.group(2)}"
            boot = _LAST_BOOT_RE.search(stripped)
            if boot:
                fields["uptime_last_boot"] = boot.group(1)
        elif "Network Distance:" in stripped:
            match = _DISTANCE_RE.search(stripped)
            if match:
                fields["network_distance"] = f"{match.group(1)} hops"
        elif "TCP Sequence Prediction:" in stripped:
            fields["tcp_sequence"] = stripped.split(":", 1)[1].strip()
        elif "IP ID Sequence Generation:" in stripped:
            fields["ip_id_sequence"] = stripped.split(":", 1)[1].strip()
        elif "Service Info:" in stripped:
            fields["service_info"] = stripped.split("Service Info:", 1)[1].strip()
        elif stripped.startswith("Device type:"):
            fields["device_type"] = stripped.split(":", 1)[1].strip()
        elif stripped.startswith("Running"):
            value = stripped.split(":", 1)[1].strip()
            fields["running"] = value
            fields.setdefault("name", value)
        elif stripped.startswith("OS CPE:"):
            fields["cpe"] = stripped.split(":", 1)[1].strip()


def group_by_vendor(devices: Iterable[DeviceRecord]) -> dict[str, list[DeviceRecord]]:
    """Group devices by vendor; devices without one go under "Unknown"."""
    grouped: dict[str, list[DeviceRecord]] = {}
    for device in devices:
        grouped.setdefault(device.vendor or UNKNOWN_VENDOR, []).append(device)
    return grouped


def parse_scan_output(raw_text: str) -> dict[str, list[DeviceRecord]]:
    """Convenience wrapper around OutputParser().parse()."""
    return OutputParser().parse(raw_text)


# -----------------------------------------------------------------------------
# SSH helpers
# -----------------------------------------------------------------------------

def ssh_status(device: DeviceRecord) -> dict:
    """Summarize SSH availability for one device."""
    if device.ssh_available:
        return {
            "available": True,
            "version": device.ssh_service.version or "SSH",
            "auth": list(device.ssh_auth_methods),
        }
    return {"available": False}


def ssh_devices(grouped: dict[str, list[DeviceRecord]]) -> list[DeviceRecord]:
    """Flatten a vendor grouping into the SSH-enabled subset."""
    return [d for devices in grouped.values() for d in devices if d.ssh_available]


def count_ssh_devices(devices: Iterable[DeviceRecord]) -> int:
    return sum(1 for d in devices if d.ssh_available)


def recommended_ssh_credentials(device: DeviceRecord) -> dict:
    """Suggest a default login based on vendor / SSH banner."""
    if not device.ssh_available:
        return {"username": "", "password": ""}

    vendor = (device.vendor or "").lower()
    banner = (device.ssh_service.version or "").lower()

    if "mikrotik" in vendor:
        return {"username": "admin", "password": ""}
    if "cisco" in vendor:
        return {"username": "cisco", "password": "cisco"}
    if "ubuntu" in vendor or "ubuntu" in banner:
        return {"username": "ubuntu", "password": ""}

    return {"username": "admin", "password": ""}
