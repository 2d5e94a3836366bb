"""
Network monitor configuration.

SSH credentials for the remote uptime probe live in a SEPARATE file
(default /etc/network-monitor/credentials.yaml), never in the main
config, so the config can be shared without leaking secrets.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from ._types import MAX_HISTORY_ITEMS, SSHCredentials
from .validation import is_valid_ip_range, is_valid_port_list

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class MonitorConfig:
    """
    Network monitor configuration.

    `use_sandbox` is the process-wide switch between running probe
    commands on the host and routing them through the persistent sandbox.
    """

    # Scan defaults
    default_ip_range: str = "192.168.1.1-254"
    default_ports: str = "22,80,443"
    scan_timeout_seconds: float = 600.0

    # Sandbox
    use_sandbox: bool = False
    docker_host: Optional[str] = None
    sandbox_image: str = "jonlabelle/network-tools"
    sandbox_name: str = "network-monitor-tools"
    scan_image: str = "instrumentisto/nmap"
    # Host networking only works on Linux daemons
    sandbox_host_network: bool = field(default_factory=lambda: sys.platform.startswith("linux"))
    exec_timeout_seconds: float = 30.0

    # Probes
    ping_count: int = 5
    ping_timeout_seconds: float = 2.0
    bandwidth_server_host: str = "127.0.0.1"
    bandwidth_server_port: int = 5201
    bandwidth_http_url: Optional[str] = None
    bandwidth_timeout_seconds: float = 15.0

    # Remote uptime over SSH
    ssh_port: int = 22
    ssh_username: str = "admin"
    ssh_password: Optional[str] = None
    ssh_connect_timeout_seconds: float = 5.0
    ssh_command_timeout_seconds: float = 10.0

    # Sweep / history
    sweep_concurrency: int = 1
    max_history_items: int = MAX_HISTORY_ITEMS

    credentials_path: Path = field(
        default_factory=lambda: Path("/etc/network-monitor/credentials.yaml")
    )

    # Logging
    log_level: str = "INFO"

    @property
    def http_test_url(self) -> str:
        """URL of the bulk file used by the HTTP bandwidth fallback."""
        return self.bandwidth_http_url or f"http://{self.bandwidth_server_host}/testfile.dat"

    @property
    def ssh_credentials(self) -> SSHCredentials:
        return SSHCredentials(username=self.ssh_username, password=self.ssh_password)

    @classmethod
    def from_env(cls) -> "MonitorConfig":
        """Load configuration from environment variables."""
        config = cls()

        config.default_ip_range = os.getenv("DEFAULT_IP_RANGE", config.default_ip_range)
        config.default_ports = os.getenv("DEFAULT_PORTS", config.default_ports)
        config.scan_timeout_seconds = float(
            os.getenv("SCAN_TIMEOUT_SECONDS", str(config.scan_timeout_seconds))
        )

        # Sandbox
        config.use_sandbox = _env_bool("USE_DOCKER_NETWORK_TOOLS", config.use_sandbox)
        config.docker_host = os.getenv("DOCKER_HOST") or None
        config.sandbox_image = os.getenv("SANDBOX_IMAGE", config.sandbox_image)
        config.sandbox_name = os.getenv("SANDBOX_NAME", config.sandbox_name)
        config.scan_image = os.getenv("SCAN_IMAGE", config.scan_image)
        config.exec_timeout_seconds = float(
            os.getenv("EXEC_TIMEOUT_SECONDS", str(config.exec_timeout_seconds))
        )

        # Bandwidth endpoint (host/port only, never credentials)
        config.bandwidth_server_host = os.getenv(
            "BANDWIDTH_SERVER_HOST", config.bandwidth_server_host
        )
        config.bandwidth_server_port = int(
            os.getenv("BANDWIDTH_SERVER_PORT", str(config.bandwidth_server_port))
        )
        config.bandwidth_http_url = os.getenv("BANDWIDTH_HTTP_URL") or None

        # SSH defaults
        config.ssh_username = os.getenv("SSH_USERNAME", config.ssh_username)
        config.ssh_password = os.getenv("SSH_PASSWORD") or None

        config.sweep_concurrency = int(os.getenv("SWEEP_CONCURRENCY", str(config.sweep_concurrency)))

        if creds_path := os.getenv("CREDENTIALS_PATH"):
            config.credentials_path = Path(creds_path)

        config.log_level = os.getenv("LOG_LEVEL", "INFO")

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "MonitorConfig":
        """Load configuration from YAML file."""
        if not path.exists():
            logger.warning(f"Config file not found: {path}, using defaults")
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        config = cls()

        if "scan" in data:
            s = data["scan"]
            config.default_ip_range = s.get("ip_range", config.default_ip_range)
            config.default_ports = str(s.get("ports", config.default_ports))
            config.scan_timeout_seconds = float(s.get("timeout", config.scan_timeout_seconds))

        if "sandbox" in data:
            s = data["sandbox"]
            config.use_sandbox = bool(s.get("enabled", config.use_sandbox))
            config.docker_host = s.get("docker_host", config.docker_host)
            config.sandbox_image = s.get("image", config.sandbox_image)
            config.sandbox_name = s.get("name", config.sandbox_name)
            config.scan_image = s.get("scan_image", config.scan_image)
            config.sandbox_host_network = bool(s.get("host_network", config.sandbox_host_network))
            config.exec_timeout_seconds = float(s.get("exec_timeout", config.exec_timeout_seconds))

        if "bandwidth" in data:
            b = data["bandwidth"]
            config.bandwidth_server_host = b.get("host", config.bandwidth_server_host)
            config.bandwidth_server_port = int(b.get("port", config.bandwidth_server_port))
            config.bandwidth_http_url = b.get("http_url", config.bandwidth_http_url)
            config.bandwidth_timeout_seconds = float(
                b.get("timeout", config.bandwidth_timeout_seconds)
            )

        if "ssh" in data:
            s = data["ssh"]
            config.ssh_port = int(s.get("port", config.ssh_port))
            config.ssh_username = s.get("username", config.ssh_username)
            config.ssh_connect_timeout_seconds = float(
                s.get("connect_timeout", config.ssh_connect_timeout_seconds)
            )

        if "sweep" in data:
            s = data["sweep"]
            config.sweep_concurrency = int(s.get("concurrency", config.sweep_concurrency))
            config.ping_count = int(s.get("ping_count", config.ping_count))
            config.ping_timeout_seconds = float(s.get("ping_timeout", config.ping_timeout_seconds))

        if "history" in data:
            config.max_history_items = int(
                data["history"].get("max_items", config.max_history_items)
            )

        if "paths" in data:
            p = data["paths"]
            if "credentials" in p:
                config.credentials_path = Path(p["credentials"])

        config.log_level = data.get("log_level", "INFO")

        return config

    def load_credentials(self) -> bool:
        """
        Load SSH credentials from the separate credentials file.

        Returns True if the file was read.
        """
        if not self.credentials_path.exists():
            logger.warning(f"Credentials file not found: {self.credentials_path}")
            return False

        try:
            with open(self.credentials_path) as f:
                creds = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load credentials: {e}")
            return False

        if "ssh" in creds:
            self.ssh_username = creds["ssh"].get("username", self.ssh_username)
            self.ssh_password = creds["ssh"].get("password", self.ssh_password)

        logger.info("SSH credentials loaded successfully")
        return True

    def validate(self) -> list[str]:
        """Validate configuration, returning list of errors."""
        errors = []

        if not is_valid_ip_range(self.default_ip_range):
            errors.append(f"Invalid default IP range: {self.default_ip_range}")

        if not is_valid_port_list(self.default_ports):
            errors.append(f"Invalid default port list: {self.default_ports}")

        if self.exec_timeout_seconds <= 0:
            errors.append("Exec timeout must be positive")

        if self.scan_timeout_seconds <= 0:
            errors.append("Scan timeout must be positive")

        if self.sweep_concurrency < 1:
            errors.append(f"Invalid sweep concurrency: {self.sweep_concurrency}")

        if self.max_history_items < 1:
            errors.append(f"Invalid history size: {self.max_history_items}")

        if not 0 < self.bandwidth_server_port <= 65535:
            errors.append(f"Invalid bandwidth server port: {self.bandwidth_server_port}")

        return errors


# Example credentials.yaml:
"""
# /etc/network-monitor/credentials.yaml
# SEPARATE from the main config

ssh:
  username: "monitor"
  password: "monitor-password-here"
"""

# Example config.yaml:
"""
scan:
  ip_range: "10.5.1.130-255"
  ports: "22,80,443"
  timeout: 600

sandbox:
  enabled: true
  docker_host: "tcp://10.5.1.212:2375"
  image: "jonlabelle/network-tools"
  name: "network-monitor-tools"
  scan_image: "instrumentisto/nmap"
  exec_timeout: 30

bandwidth:
  host: "10.5.1.212"
  port: 5201
  http_url: "http://10.5.1.212/testfile.dat"

ssh:
  port: 22
  username: "admin"

sweep:
  concurrency: 1
  ping_count: 5

history:
  max_items: 100

paths:
  credentials: "/etc/network-monitor/credentials.yaml"

log_level: "INFO"
"""
