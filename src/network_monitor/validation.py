"""
Input validation for scan targets and port lists.

Everything handed to the scan tool passes through here first, so a bad
range fails fast with ValidationError before any process is spawned.
"""

from __future__ import annotations

import ipaddress
import re

from .exceptions import ValidationError

# Allowed characters in a target after sanitizing ("/" kept for CIDR)
_UNSAFE_TARGET_CHARS = re.compile(r"[^a-zA-Z0-9\-.,/]")

_OCTET_RANGE = re.compile(r"^(\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})-(\d{1,3})$")
_FULL_RANGE = re.compile(r"^(\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})-(\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})$")


def sanitize_target(target: str) -> str:
    """Strip every character that has no business in a scan target."""
    if not isinstance(target, str):
        return ""
    return _UNSAFE_TARGET_CHARS.sub("", target)


def _is_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
        return True
    except ValueError:
        return False


def _is_valid_single_target(target: str) -> bool:
    if _is_ipv4(target):
        return True

    if "/" in target:
        try:
            ipaddress.IPv4Network(target, strict=False)
            return True
        except ValueError:
            return False

    match = _OCTET_RANGE.match(target)
    if match:
        start, end = match.groups()
        return _is_ipv4(start) and 0 <= int(end) <= 255 and int(end) >= int(start.rsplit(".", 1)[1])

    match = _FULL_RANGE.match(target)
    if match:
        start, end = match.groups()
        if not (_is_ipv4(start) and _is_ipv4(end)):
            return False
        return ipaddress.IPv4Address(start) <= ipaddress.IPv4Address(end)

    return False


def is_valid_ip_range(value: str) -> bool:
    """
    Check an nmap-style target expression.

    Accepts a single IPv4 address, a last-octet range (10.0.0.1-254),
    a full range (10.0.0.1-10.0.1.20), a CIDR block, or a comma-separated
    list of those.
    """
    if not value or not isinstance(value, str):
        return False
    parts = [p.strip() for p in value.split(",")]
    return all(p and _is_valid_single_target(p) for p in parts)


def is_valid_port_list(ports: str) -> bool:
    """Check a comma-separated list of ports or lo-hi ranges within 1..65535."""
    if not ports or not isinstance(ports, str):
        return False

    for part in ports.split(","):
        part = part.strip()
        if "-" in part:
            lo, _, hi = part.partition("-")
            if not (lo.isdigit() and hi.isdigit()):
                return False
            if not (0 < int(lo) <= int(hi) <= 65535):
                return False
        elif not part.isdigit() or not 0 < int(part) <= 65535:
            return False

    return True


def validate_target(value: str) -> str:
    """Sanitize and validate a scan target, returning the safe form."""
    if not isinstance(value, str):
        raise ValidationError(f"Invalid IP range: {value!r}")
    candidate = ",".join(p.strip() for p in value.split(","))
    sanitized = sanitize_target(candidate)
    if sanitized != candidate or not is_valid_ip_range(sanitized):
        raise ValidationError(f"Invalid IP range: {value!r}")
    return sanitized


def validate_ports(ports: str) -> str:
    """Validate a port list, returning it with whitespace removed."""
    if not is_valid_port_list(ports):
        raise ValidationError(f"Invalid port list: {ports!r}")
    return ",".join(p.strip() for p in ports.split(","))


def validate_ip(ip: str) -> str:
    """Validate a single IPv4 address for probing."""
    if not isinstance(ip, str) or not _is_ipv4(ip.strip()):
        raise ValidationError(f"Invalid IP address: {ip!r}")
    return ip.strip()
