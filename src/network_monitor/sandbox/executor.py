"""
Single-writer command executor for the persistent sandbox.

Commands run one at a time inside one long-lived container. Callers that
arrive while a command is running wait in a FIFO queue; on completion
the turn passes to the oldest waiter still interested in it.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import math
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..exceptions import CommandTimeout, SandboxUnavailable
from ..runner import raise_for_unreachable
from .base import ExecResult, SandboxRuntime, SandboxSpec

logger = logging.getLogger(__name__)

# Exit codes of `timeout` when it had to stop the command (TERM / KILL)
TIMEOUT_EXIT_CODES = (124, 137)


def timeout_argv(command: str, timeout: float) -> list[str]:
    """Wrap a shell command so the sandbox kills it once its budget is spent."""
    seconds = max(1, math.ceil(timeout))
    return ["timeout", "-s", "KILL", str(seconds), "sh", "-c", command]


class SandboxState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CREATING = "creating"
    RUNNING = "running"
    BUSY = "busy"
    RESTARTING = "restarting"


@dataclass
class PendingCommand:
    """A caller waiting for its turn on the sandbox."""
    command: str
    turn: asyncio.Future = field(repr=False)


class SandboxCommandExecutor:
    """
    Runs shell commands inside the persistent sandbox, one at a time.

    The sandbox is brought up lazily by the first exec(): an existing
    container with the configured name is adopted, otherwise one is
    created (falling back to a reduced spec if the full one fails). Each
    exec() checks the container is still running and restarts or
    recreates it if not.

    Commands are admitted in arrival order. A waiter cancelled before its
    turn is dropped from the queue; a waiter cancelled after being handed
    the turn passes it straight on.

    A command that times out (or whose caller gives up) keeps the sandbox
    until the runtime call actually returns. Every command is wrapped in
    `timeout -s KILL`, so the sandbox ends it shortly after its budget.
    """

    def __init__(
        self,
        runtime: SandboxRuntime,
        spec: SandboxSpec,
        default_timeout: float = 30.0,
        health_check_timeout: float = 10.0,
    ):
        self.runtime = runtime
        self.spec = spec
        self.default_timeout = default_timeout
        self.health_check_timeout = health_check_timeout

        self.state = SandboxState.UNINITIALIZED
        self.container_id: Optional[str] = None

        self._busy = False
        self._waiters: deque[PendingCommand] = deque()
        self._abandoned: Optional[asyncio.Future] = None

    @property
    def queue_depth(self) -> int:
        """Number of callers waiting for the sandbox."""
        return sum(1 for w in self._waiters if not w.turn.done())

    async def exec(self, command: str, timeout: Optional[float] = None) -> str:
        """
        Run a shell command in the sandbox and return its combined output.

        Raises:
            SandboxUnavailable: sandbox could not be created or recovered
            CommandTimeout: command exceeded its timeout
            NetworkUnreachable: output reports unreachable network / unknown host
        """
        await self._acquire(command)
        try:
            return await self._run(command, timeout or self.default_timeout)
        finally:
            # An abandoned command releases the sandbox when it really ends
            if self._abandoned is None:
                self._release()

    async def _acquire(self, command: str) -> None:
        if not self._busy:
            self._busy = True
            return

        pending = PendingCommand(command, asyncio.get_running_loop().create_future())
        self._waiters.append(pending)
        logger.debug(f"Queued sandbox command ({len(self._waiters)} waiting): {command}")

        try:
            await pending.turn
        except asyncio.CancelledError:
            turn = pending.turn
            if turn.done() and not turn.cancelled() and turn.exception() is None:
                # Turn arrived together with the cancellation
                self._release()
            else:
                try:
                    self._waiters.remove(pending)
                except ValueError:
                    pass
            raise

    def _release(self) -> None:
        while self._waiters:
            pending = self._waiters.popleft()
            if not pending.turn.done():
                pending.turn.set_result(None)
                return
        self._busy = False

    async def _run(self, command: str, timeout: float) -> str:
        container_id = await self._ensure_ready()

        self.state = SandboxState.BUSY
        logger.debug(f"Sandbox exec: {command}")
        running = asyncio.ensure_future(
            self.runtime.exec(container_id, timeout_argv(command, timeout))
        )
        try:
            done, _ = await asyncio.wait({running}, timeout=timeout)
        except asyncio.CancelledError:
            self._abandon(running, command)
            raise

        if not done:
            logger.warning(f"Sandbox command timed out after {timeout}s: {command}")
            self._abandon(running, command)
            raise CommandTimeout(command, timeout)

        self.state = SandboxState.RUNNING
        result: ExecResult = running.result()

        if result.exit_code in TIMEOUT_EXIT_CODES:
            logger.warning(f"Sandbox killed command after {timeout}s: {command}")
            raise CommandTimeout(command, timeout)

        if not result.success:
            logger.warning(f"Sandbox command exited with code {result.exit_code}: {command}")

        raise_for_unreachable(command, result.output)
        return result.output

    def _abandon(self, running: asyncio.Future, command: str) -> None:
        """Keep the sandbox held until an abandoned runtime call returns."""
        self._abandoned = running
        running.add_done_callback(functools.partial(self._on_abandoned_done, command))

    def _on_abandoned_done(self, command: str, running: asyncio.Future) -> None:
        if not running.cancelled() and running.exception() is not None:
            logger.debug(f"Abandoned sandbox command failed: {command}: {running.exception()}")
        else:
            logger.debug(f"Abandoned sandbox command finished: {command}")
        self._abandoned = None
        if self.state == SandboxState.BUSY:
            self.state = SandboxState.RUNNING
        self._release()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def _ensure_ready(self) -> str:
        if self.container_id is None:
            await self._initialize()
        elif not await self._is_running():
            await self._recover()
        return self.container_id

    async def _is_running(self) -> bool:
        try:
            return await asyncio.wait_for(
                self.runtime.is_running(self.container_id),
                timeout=self.health_check_timeout,
            )
        except asyncio.TimeoutError:
            raise SandboxUnavailable(
                f"Sandbox {self.spec.name} did not answer a health check "
                f"within {self.health_check_timeout}s"
            ) from None

    async def _initialize(self) -> None:
        self.state = SandboxState.CREATING
        try:
            existing = await self.runtime.find(self.spec.name)
            if existing:
                logger.info(f"Adopting existing sandbox {self.spec.name}")
                if not await self.runtime.is_running(existing):
                    await self.runtime.start(existing)
                self.container_id = existing
            else:
                self.container_id = await self._create()
        except SandboxUnavailable:
            self.state = SandboxState.UNINITIALIZED
            self.container_id = None
            raise

        self.state = SandboxState.RUNNING
        logger.info(f"Sandbox {self.spec.name} ready")

    async def _create(self) -> str:
        try:
            container_id = await self.runtime.create(self.spec)
        except SandboxUnavailable as e:
            logger.warning(f"Sandbox creation failed ({e}), retrying with reduced config")
            try:
                container_id = await self.runtime.create(self.spec.reduced())
            except SandboxUnavailable as retry_error:
                raise SandboxUnavailable(
                    f"Failed to create sandbox {self.spec.name}: {retry_error}"
                ) from retry_error

        await self.runtime.start(container_id)
        return container_id

    async def _recover(self) -> None:
        self.state = SandboxState.RESTARTING
        logger.warning(f"Sandbox {self.spec.name} is not running, restarting")

        try:
            await self.runtime.restart(self.container_id)
            if await self._is_running():
                self.state = SandboxState.RUNNING
                return
        except SandboxUnavailable as e:
            logger.warning(f"Sandbox restart failed: {e}")

        logger.warning(f"Recreating sandbox {self.spec.name}")
        try:
            await self.runtime.remove(self.container_id)
        except SandboxUnavailable as e:
            logger.warning(f"Failed to remove dead sandbox: {e}")

        self.container_id = None
        try:
            self.container_id = await self._create()
        except SandboxUnavailable:
            self.state = SandboxState.UNINITIALIZED
            raise
        self.state = SandboxState.RUNNING

    async def close(self, remove: bool = False) -> None:
        """
        Fail every queued command and release the runtime.

        The container is left running for the next process to adopt
        unless remove is set.
        """
        while self._waiters:
            pending = self._waiters.popleft()
            if not pending.turn.done():
                pending.turn.set_exception(
                    SandboxUnavailable(f"Sandbox {self.spec.name} is shutting down")
                )

        if remove and self.container_id is not None:
            logger.info(f"Removing sandbox {self.spec.name}")
            await self.runtime.remove(self.container_id)
            self.container_id = None
            self.state = SandboxState.UNINITIALIZED
        await self.runtime.close()
