"""
Docker-backed sandbox runtime.

The docker SDK is synchronous, so every call runs in a thread pool the
same way the nmap discovery runs python-nmap.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

import docker
from docker.errors import DockerException, ImageNotFound, NotFound

from ..exceptions import SandboxUnavailable
from .base import IDLE_COMMAND, IDLE_ENTRYPOINT, ExecResult, SandboxRuntime, SandboxSpec

logger = logging.getLogger(__name__)


class DockerRuntime(SandboxRuntime):
    """
    Sandbox runtime talking to a local or remote Docker daemon.

    The client is created lazily on first use, from `docker_host` when
    given (e.g. "tcp://10.5.1.212:2375") or from the environment.
    """

    def __init__(self, docker_host: Optional[str] = None, max_workers: int = 4):
        self.docker_host = docker_host
        self.max_workers = max_workers
        self._client = None
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            if self.docker_host:
                self._client = docker.DockerClient(base_url=self.docker_host)
            else:
                self._client = docker.from_env()
        return self._client

    @property
    def executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.max_workers)
        return self._executor

    async def _call(self, func, *args, **kwargs):
        """Run a blocking SDK call in the thread pool, mapping SDK errors."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                self.executor, functools.partial(func, *args, **kwargs)
            )
        except DockerException as e:
            raise SandboxUnavailable(f"Docker error: {e}") from e

    # -------------------------------------------------------------------------
    # Persistent sandbox
    # -------------------------------------------------------------------------

    def _find(self, name: str) -> Optional[str]:
        for container in self.client.containers.list(all=True, filters={"name": name}):
            # The name filter is a substring match
            if container.name == name:
                return container.id
        return None

    async def find(self, name: str) -> Optional[str]:
        return await self._call(self._find, name)

    def _create(self, spec: SandboxSpec) -> str:
        kwargs = {
            "entrypoint": IDLE_ENTRYPOINT,
            "command": IDLE_COMMAND,
            "name": spec.name,
            "tty": True,
            "stdin_open": True,
            "network_mode": spec.network_mode,
        }
        if spec.restart_policy:
            kwargs["restart_policy"] = {"Name": spec.restart_policy}

        try:
            container = self.client.containers.create(spec.image, **kwargs)
        except ImageNotFound:
            logger.info(f"Pulling image {spec.image}")
            self.client.images.pull(spec.image)
            container = self.client.containers.create(spec.image, **kwargs)
        return container.id

    async def create(self, spec: SandboxSpec) -> str:
        logger.info(f"Creating sandbox {spec.name} from {spec.image} ({spec.network_mode} network)")
        return await self._call(self._create, spec)

    async def start(self, container_id: str) -> None:
        await self._call(lambda: self.client.containers.get(container_id).start())

    async def restart(self, container_id: str) -> None:
        await self._call(lambda: self.client.containers.get(container_id).restart())

    def _is_running(self, container_id: str) -> bool:
        try:
            container = self.client.containers.get(container_id)
        except NotFound:
            return False
        container.reload()
        return container.status == "running"

    async def is_running(self, container_id: str) -> bool:
        return await self._call(self._is_running, container_id)

    def _exec(self, container_id: str, argv: list[str]) -> ExecResult:
        container = self.client.containers.get(container_id)
        exit_code, output = container.exec_run(argv, stdout=True, stderr=True)
        text = output.decode("utf-8", errors="replace") if output else ""
        return ExecResult(exit_code=exit_code if exit_code is not None else 0, output=text)

    async def exec(self, container_id: str, argv: list[str]) -> ExecResult:
        return await self._call(self._exec, container_id, argv)

    def _remove(self, container_id: str) -> None:
        try:
            self.client.containers.get(container_id).remove(force=True)
        except NotFound:
            pass

    async def remove(self, container_id: str) -> None:
        await self._call(self._remove, container_id)

    # -------------------------------------------------------------------------
    # One-shot scan containers
    # -------------------------------------------------------------------------

    def _run_detached(self, image: str, command: list[str], host_network: bool):
        kwargs = {"detach": True}
        if host_network:
            kwargs["network_mode"] = "host"
        return self.client.containers.run(image, command, **kwargs)

    async def run_streaming(
        self,
        image: str,
        command: list[str],
        on_output: Callable[[str], None],
        host_network: bool = True,
    ) -> ExecResult:
        container = await self._call(self._run_detached, image, command, host_network)
        logger.debug(f"Started scan container {container.short_id} ({image})")

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def pump() -> None:
            try:
                for chunk in container.logs(stream=True, follow=True, stdout=True, stderr=True):
                    loop.call_soon_threadsafe(queue.put_nowait, chunk)
            finally:
                loop.call_soon_threadsafe(queue.put_nowait, None)

        pump_future = loop.run_in_executor(self.executor, pump)
        chunks: list[str] = []

        try:
            while True:
                chunk = await queue.get()
                if chunk is None:
                    break
                text = chunk.decode("utf-8", errors="replace")
                chunks.append(text)
                on_output(text)

            try:
                await pump_future
            except DockerException as e:
                raise SandboxUnavailable(f"Lost scan container output: {e}") from e

            status = await self._call(container.wait)
            exit_code = status.get("StatusCode", 0) if isinstance(status, dict) else 0
        finally:
            try:
                await self._call(self._remove, container.id)
            except SandboxUnavailable as e:
                logger.warning(f"Failed to remove scan container {container.short_id}: {e}")

        return ExecResult(exit_code=exit_code, output="".join(chunks))

    async def close(self) -> None:
        """Close the Docker client and shut down the worker threads."""
        if self._client is not None:
            self._client.close()
            self._client = None
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
