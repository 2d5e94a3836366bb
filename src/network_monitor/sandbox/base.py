"""
Base classes for container runtimes backing the sandbox.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Callable, Optional

# Keeps the sandbox alive between commands
IDLE_COMMAND = ["-c", "while true; do sleep 10; done"]
IDLE_ENTRYPOINT = ["/bin/sh"]


@dataclass(frozen=True)
class SandboxSpec:
    """How the persistent sandbox container should be created."""
    name: str
    image: str
    host_network: bool = True
    restart_policy: Optional[str] = "unless-stopped"

    @property
    def network_mode(self) -> str:
        return "host" if self.host_network else "bridge"

    def reduced(self) -> "SandboxSpec":
        """Fallback spec used when the full one cannot be created."""
        return replace(self, host_network=False, restart_policy=None)


@dataclass
class ExecResult:
    """Exit code and combined stdout/stderr of one command."""
    exit_code: int
    output: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class SandboxRuntime(ABC):
    """
    Container runtime the sandbox executor drives.

    Containers are referred to by id. Every runtime failure surfaces as
    SandboxUnavailable.
    """

    @abstractmethod
    async def find(self, name: str) -> Optional[str]:
        """Return the id of an existing container with this name, if any."""
        pass

    @abstractmethod
    async def create(self, spec: SandboxSpec) -> str:
        """Create (but do not start) the sandbox container."""
        pass

    @abstractmethod
    async def start(self, container_id: str) -> None:
        pass

    @abstractmethod
    async def restart(self, container_id: str) -> None:
        pass

    @abstractmethod
    async def is_running(self, container_id: str) -> bool:
        pass

    @abstractmethod
    async def exec(self, container_id: str, argv: list[str]) -> ExecResult:
        """Run argv inside the container and collect its output."""
        pass

    @abstractmethod
    async def remove(self, container_id: str) -> None:
        """Force-remove the container."""
        pass

    @abstractmethod
    async def run_streaming(
        self,
        image: str,
        command: list[str],
        on_output: Callable[[str], None],
        host_network: bool = True,
    ) -> ExecResult:
        """
        Run a one-shot container, passing output chunks to on_output as
        they arrive. The container is removed once it exits or the caller
        is cancelled.
        """
        pass

    async def close(self) -> None:
        """Release client resources."""
        pass
