"""Process registry: spawns, streams, and cancels worker processes."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from skill_builder.agents.events import AgentEventHandler
from skill_builder.agents.invocation import AgentInvocation
from skill_builder.errors import (
    AgentNotFound,
    AgentTerminationFailed,
    DuplicateAgent,
    SpawnFailed,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINE_BYTES = 16 * 1024 * 1024


@dataclass(slots=True)
class AgentOutcome:
    """Terminal result of one agent."""

    agent_id: str
    success: bool
    exit_code: int | None
    cancelled: bool = False


@dataclass(slots=True)
class CancelAllReport:
    """Per-agent results of a cancel-all sweep."""

    cancelled: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class AgentHandle:
    """One spawned worker process and the tasks that own its streams."""

    def __init__(
        self,
        agent_id: str,
        process: asyncio.subprocess.Process,
        outcome: asyncio.Future[AgentOutcome],
    ) -> None:
        self.agent_id = agent_id
        self.process = process
        self._outcome = outcome
        self._input_released = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        # Set when the output reader reached EOF and found its entry already gone.
        self.release_missed = False

    @property
    def pid(self) -> int:
        return self.process.pid

    async def wait(self) -> AgentOutcome:
        """Wait for the terminal outcome (natural exit or cancellation)."""

        return await asyncio.shield(self._outcome)

    def hold_input(self, stdin: asyncio.StreamWriter) -> None:
        """Keep stdin open until the registry entry is released."""

        self._track(asyncio.create_task(self._hold_input(stdin), name=f"stdin:{self.agent_id}"))

    def release_input(self) -> None:
        self._input_released.set()

    async def kill(self) -> int:
        """SIGKILL the worker and wait until it is reaped."""

        with contextlib.suppress(ProcessLookupError):
            self.process.kill()
        self.release_input()
        return await self.process.wait()

    def finish(self, outcome: AgentOutcome) -> None:
        if not self._outcome.done():
            self._outcome.set_result(outcome)

    def _track(self, task: asyncio.Task[None]) -> None:
        self._tasks.append(task)

    async def _hold_input(self, stdin: asyncio.StreamWriter) -> None:
        try:
            await self._input_released.wait()
        finally:
            stdin.close()


class AgentRegistry:
    """Owns every running worker process, keyed by caller-supplied agent id.

    All map mutations happen under one lock; stream I/O and process
    termination happen outside it so one slow agent never blocks another.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        worker_command: Sequence[str],
        event_handler: AgentEventHandler,
        keep_stdin_open: bool = True,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if not worker_command:
            raise ValueError("Worker command must not be empty.")
        self._worker_command = tuple(worker_command)
        self._handler = event_handler
        self._keep_stdin_open = keep_stdin_open
        self._max_line_bytes = max_line_bytes
        self._env = None if env is None else {**os.environ, **env}
        self._lock = asyncio.Lock()
        self._agents: dict[str, AgentHandle] = {}
        self._spawning: set[str] = set()

    def is_any_running(self) -> bool:
        """Snapshot used to gate shutdown and workspace resets."""

        return bool(self._agents) or bool(self._spawning)

    def running_agent_ids(self) -> list[str]:
        """Registered agents plus those still being spawned."""

        return sorted({*self._agents, *self._spawning})

    async def spawn(self, agent_id: str, invocation: AgentInvocation) -> AgentHandle:
        """Start a worker, hand it its config line, and begin streaming its output."""

        async with self._lock:
            if agent_id in self._agents or agent_id in self._spawning:
                raise DuplicateAgent(agent_id)
            self._spawning.add(agent_id)

        try:
            handle = await self._start(agent_id, invocation)
        except BaseException:
            async with self._lock:
                self._spawning.discard(agent_id)
            raise

        async with self._lock:
            self._spawning.discard(agent_id)
            self._agents[agent_id] = handle

        handle._track(
            asyncio.create_task(self._consume_output(handle), name=f"stdout:{agent_id}"),
        )
        handle._track(
            asyncio.create_task(self._consume_diagnostics(handle), name=f"stderr:{agent_id}"),
        )
        logger.info("Spawned agent %s (pid=%s)", agent_id, handle.pid)
        return handle

    async def cancel(self, agent_id: str) -> None:
        """Force-kill one agent and wait until the process is gone."""

        async with self._lock:
            handle = self._agents.pop(agent_id, None)
        if handle is None:
            raise AgentNotFound(agent_id)

        try:
            exit_code = await handle.kill()
        except OSError as error:
            async with self._lock:
                missed = handle.release_missed
                if not missed:
                    self._agents.setdefault(agent_id, handle)
            if not missed:
                raise AgentTerminationFailed(agent_id, str(error)) from error
            # The worker exited on its own while the kill was failing.
            await self._finish_natural_exit(handle)
            return

        logger.info("Cancelled agent %s (exit_code=%s)", agent_id, exit_code)
        self._notify_exit(agent_id, success=False, cancelled=True)
        handle.finish(
            AgentOutcome(agent_id=agent_id, success=False, exit_code=exit_code, cancelled=True),
        )

    async def cancel_all(self) -> CancelAllReport:
        """Cancel every registered agent; one failure does not stop the sweep."""

        report = CancelAllReport()
        for agent_id in self.running_agent_ids():
            try:
                await self.cancel(agent_id)
            except AgentNotFound:
                continue
            except AgentTerminationFailed as error:
                logger.error("Cancel-all could not stop %s: %s", agent_id, error)
                report.failed[agent_id] = str(error)
            else:
                report.cancelled.append(agent_id)
        return report

    async def _start(self, agent_id: str, invocation: AgentInvocation) -> AgentHandle:
        try:
            process = await asyncio.create_subprocess_exec(
                *self._worker_command,
                cwd=invocation.cwd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env,
                limit=self._max_line_bytes,
            )
        except OSError as error:
            raise SpawnFailed(
                f"Failed to spawn worker {self._worker_command[0]!r} for {agent_id}: {error}",
            ) from error

        handle = AgentHandle(agent_id, process, asyncio.get_running_loop().create_future())
        stdin = process.stdin
        assert stdin is not None
        try:
            stdin.write(invocation.to_json_line())
            await stdin.drain()
        except OSError as error:
            await handle.kill()
            raise SpawnFailed(f"Failed to write config to {agent_id} stdin: {error}") from error

        if self._keep_stdin_open:
            handle.hold_input(stdin)
        else:
            stdin.close()
        return handle

    async def _consume_output(self, handle: AgentHandle) -> None:
        agent_id = handle.agent_id
        stdout = handle.process.stdout
        assert stdout is not None
        stream_ok = True
        try:
            while True:
                raw = await stdout.readline()
                if not raw:
                    break
                self._deliver(agent_id, raw)
        except (OSError, ValueError) as error:
            stream_ok = False
            logger.warning("Agent %s output stream failed: %s", agent_id, error)

        if not await self._release(handle):
            return

        exit_code: int | None
        if stream_ok:
            handle.release_input()
            exit_code = await handle.process.wait()
        else:
            try:
                exit_code = await handle.kill()
            except OSError as error:
                logger.error("Could not stop agent %s after stream failure: %s", agent_id, error)
                exit_code = None

        success = stream_ok and exit_code == 0
        self._notify_exit(agent_id, success=success, cancelled=False)
        handle.finish(AgentOutcome(agent_id=agent_id, success=success, exit_code=exit_code))

    async def _finish_natural_exit(self, handle: AgentHandle) -> None:
        handle.release_input()
        exit_code = await handle.process.wait()
        logger.warning(
            "Agent %s exited on its own (exit_code=%s) after a failed kill",
            handle.agent_id,
            exit_code,
        )
        success = exit_code == 0
        self._notify_exit(handle.agent_id, success=success, cancelled=False)
        handle.finish(AgentOutcome(agent_id=handle.agent_id, success=success, exit_code=exit_code))

    async def _consume_diagnostics(self, handle: AgentHandle) -> None:
        stderr = handle.process.stderr
        assert stderr is not None
        while True:
            try:
                raw = await stderr.readline()
            except ValueError:
                logger.debug("[agent:%s] <diagnostic line over limit dropped>", handle.agent_id)
                continue
            except OSError as error:
                logger.debug("Agent %s diagnostic stream closed: %s", handle.agent_id, error)
                return
            if not raw:
                return
            logger.debug("[agent:%s] %s", handle.agent_id, _decode(raw))

    async def _release(self, handle: AgentHandle) -> bool:
        """Remove the entry if it is still ours; False means cancel got there first."""

        async with self._lock:
            if self._agents.get(handle.agent_id) is not handle:
                handle.release_missed = True
                return False
            del self._agents[handle.agent_id]
            return True

    def _deliver(self, agent_id: str, raw: bytes) -> None:
        try:
            self._handler.on_message(agent_id, _decode(raw))
        except Exception:
            logger.exception("Message handler failed for agent %s", agent_id)

    def _notify_exit(self, agent_id: str, *, success: bool, cancelled: bool) -> None:
        try:
            self._handler.on_exit(agent_id, success=success, cancelled=cancelled)
        except Exception:
            logger.exception("Exit handler failed for agent %s", agent_id)


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").rstrip("\r\n")
