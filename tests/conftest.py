"""Shared fixtures: an in-memory sandbox runtime standing in for Docker."""

import asyncio
from typing import Callable, Optional

import pytest

from network_monitor.exceptions import SandboxUnavailable
from network_monitor.sandbox.base import ExecResult, SandboxRuntime, SandboxSpec


class RecordingRuntime(SandboxRuntime):
    """Sandbox runtime that records every call and answers from canned output."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.executed: list[str] = []
        self.argvs: list[list[str]] = []
        self.containers: dict[str, dict] = {}
        self.created_specs: list[SandboxSpec] = []

        self.responses: dict[str, str] = {}
        self.exit_codes: dict[str, int] = {}
        self.exec_delay: float = 0.0
        self.health_delay: float = 0.0
        self.exec_handler: Optional[Callable[[str], str]] = None

        self.create_failures = 0
        self.restart_fails = False
        self.find_result: Optional[str] = None

        self.scan_chunks: list[str] = []
        self.scan_exit_code = 0
        self.scan_delay: float = 0.0
        self.scan_commands: list[list[str]] = []

        self.closed = False
        self._next_id = 0

    # Persistent sandbox

    async def find(self, name):
        self.calls.append(("find", name))
        return self.find_result

    async def create(self, spec):
        self.calls.append(("create", spec))
        if self.create_failures > 0:
            self.create_failures -= 1
            raise SandboxUnavailable("create failed")
        self._next_id += 1
        container_id = f"c{self._next_id}"
        self.containers[container_id] = {"running": False, "spec": spec}
        self.created_specs.append(spec)
        return container_id

    async def start(self, container_id):
        self.calls.append(("start", container_id))
        self.containers.setdefault(container_id, {})["running"] = True

    async def restart(self, container_id):
        self.calls.append(("restart", container_id))
        if self.restart_fails:
            raise SandboxUnavailable("restart failed")
        self.containers[container_id]["running"] = True

    async def is_running(self, container_id):
        if self.health_delay:
            await asyncio.sleep(self.health_delay)
        return self.containers.get(container_id, {}).get("running", False)

    async def exec(self, container_id, argv):
        command = argv[-1]
        self.argvs.append(list(argv))
        self.calls.append(("exec", command))
        self.executed.append(command)
        if self.exec_delay:
            await asyncio.sleep(self.exec_delay)
        if self.exec_handler is not None:
            output = self.exec_handler(command)
        else:
            output = next(
                (out for key, out in self.responses.items() if key in command), ""
            )
        code = next((c for key, c in self.exit_codes.items() if key in command), 0)
        return ExecResult(exit_code=code, output=output)

    async def remove(self, container_id):
        self.calls.append(("remove", container_id))
        self.containers.pop(container_id, None)

    # One-shot scans

    async def run_streaming(self, image, command, on_output, host_network=True):
        self.calls.append(("run_streaming", image))
        self.scan_commands.append(list(command))
        for chunk in self.scan_chunks:
            if self.scan_delay:
                await asyncio.sleep(self.scan_delay)
            on_output(chunk)
        return ExecResult(exit_code=self.scan_exit_code, output="".join(self.scan_chunks))

    async def close(self):
        self.closed = True


class StubRunner:
    """CommandRunner answering from a substring -> output map."""

    def __init__(self, responses=None, errors=None):
        self.responses = responses or {}
        self.errors = errors or {}
        self.commands: list[str] = []

    async def exec(self, command, timeout=None):
        self.commands.append(command)
        for key, exc in self.errors.items():
            if key in command:
                raise exc
        for key, output in self.responses.items():
            if key in command:
                return output
        return ""


@pytest.fixture
def runtime():
    return RecordingRuntime()


@pytest.fixture
def sandbox_spec():
    return SandboxSpec(name="network-monitor-tools", image="jonlabelle/network-tools")
