"""
Persistent sandbox for running network tools in a container.
"""

from .base import ExecResult, SandboxRuntime, SandboxSpec
from .docker_runtime import DockerRuntime
from .executor import PendingCommand, SandboxCommandExecutor, SandboxState

__all__ = [
    "DockerRuntime",
    "ExecResult",
    "PendingCommand",
    "SandboxCommandExecutor",
    "SandboxRuntime",
    "SandboxSpec",
    "SandboxState",
]
