from __future__ import annotations

import asyncio
import json
import os
import signal
import sys
from pathlib import Path

import allure
import pytest

from skill_builder.agents import AgentInvocation, AgentRegistry
from skill_builder.errors import AgentNotFound, DuplicateAgent, SpawnFailed

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Process Registry"),
]


def _invocation(cwd: Path, prompt: str = "hello") -> AgentInvocation:
    return AgentInvocation(prompt=prompt, model="sonnet", api_key="test-key", cwd=str(cwd))


def test_spawn_streams_ordered_messages_and_notifies_exit_once(
    tmp_path: Path,
    echo_command,
    recorder,
) -> None:
    async def scenario():
        registry = AgentRegistry(worker_command=echo_command, event_handler=recorder)
        handle = await registry.spawn("demo-step0-1", _invocation(tmp_path))
        outcome = await handle.wait()
        return registry, outcome

    registry, outcome = asyncio.run(scenario())

    assert outcome.success is True
    assert outcome.exit_code == 0
    assert outcome.cancelled is False
    kinds = [json.loads(line)["type"] for _, line in recorder.messages]
    assert kinds == ["system", "assistant", "result"]
    assert {agent_id for agent_id, _ in recorder.messages} == {"demo-step0-1"}
    assert recorder.exits == [("demo-step0-1", True, False)]
    assert registry.running_agent_ids() == []
    assert registry.is_any_running() is False


def test_config_line_reaches_worker_with_closed_stdin_policy(
    tmp_path: Path,
    echo_command,
    recorder,
) -> None:
    async def scenario():
        registry = AgentRegistry(
            worker_command=echo_command,
            event_handler=recorder,
            keep_stdin_open=False,
        )
        handle = await registry.spawn("demo-step0-2", _invocation(tmp_path, prompt="ping"))
        return await handle.wait()

    outcome = asyncio.run(scenario())

    assert outcome.success is True
    init = json.loads(recorder.messages[0][1])
    assert init["model"] == "sonnet"
    assert init["cwd"] == str(tmp_path)


def test_nonzero_exit_is_reported_as_failure(tmp_path: Path, echo_command, recorder) -> None:
    async def scenario():
        registry = AgentRegistry(
            worker_command=(*echo_command, "--exit-code", "3"),
            event_handler=recorder,
        )
        handle = await registry.spawn("demo-step0-3", _invocation(tmp_path))
        return await handle.wait()

    outcome = asyncio.run(scenario())

    assert outcome.success is False
    assert outcome.exit_code == 3
    assert recorder.exits == [("demo-step0-3", False, False)]


def test_entry_exists_while_running_and_is_removed_by_cancel(
    tmp_path: Path,
    sleeper_command,
    recorder,
) -> None:
    async def scenario():
        registry = AgentRegistry(worker_command=sleeper_command, event_handler=recorder)
        handle = await registry.spawn("sleepy", _invocation(tmp_path))
        running_before = registry.running_agent_ids()
        await registry.cancel("sleepy")
        outcome = await handle.wait()
        # The stdout reader sees EOF after the kill but must stay silent.
        await asyncio.sleep(0.1)
        return registry, running_before, outcome, handle.process.returncode

    registry, running_before, outcome, returncode = asyncio.run(scenario())

    assert running_before == ["sleepy"]
    assert registry.running_agent_ids() == []
    assert outcome.cancelled is True
    assert outcome.success is False
    assert returncode is not None
    assert recorder.exits == [("sleepy", False, True)]


def test_duplicate_agent_id_is_rejected(tmp_path: Path, sleeper_command, recorder) -> None:
    async def scenario():
        registry = AgentRegistry(worker_command=sleeper_command, event_handler=recorder)
        await registry.spawn("dup", _invocation(tmp_path))
        try:
            with pytest.raises(DuplicateAgent):
                await registry.spawn("dup", _invocation(tmp_path))
            return registry.running_agent_ids()
        finally:
            await registry.cancel_all()

    assert asyncio.run(scenario()) == ["dup"]


def test_cancel_unknown_agent_does_not_touch_others(
    tmp_path: Path,
    sleeper_command,
    recorder,
) -> None:
    async def scenario():
        registry = AgentRegistry(worker_command=sleeper_command, event_handler=recorder)
        await registry.spawn("keeper", _invocation(tmp_path))
        try:
            with pytest.raises(AgentNotFound, match="not found"):
                await registry.cancel("ghost")
            return registry.running_agent_ids(), list(recorder.exits)
        finally:
            await registry.cancel_all()

    running, exits = asyncio.run(scenario())

    assert running == ["keeper"]
    assert exits == []


def test_cancel_all_reports_unkillable_agent_and_stops_the_rest(
    tmp_path: Path,
    sleeper_command,
    recorder,
) -> None:
    async def scenario():
        registry = AgentRegistry(worker_command=sleeper_command, event_handler=recorder)
        handles = {
            agent_id: await registry.spawn(agent_id, _invocation(tmp_path))
            for agent_id in ("a", "b", "c")
        }

        def refuse_kill() -> None:
            raise PermissionError("operation not permitted")

        handles["b"].process.kill = refuse_kill
        report = await registry.cancel_all()
        still_running = registry.running_agent_ids()

        os.kill(handles["b"].pid, signal.SIGKILL)
        await handles["b"].wait()
        return report, still_running, registry.running_agent_ids()

    report, still_running, after_cleanup = asyncio.run(scenario())

    assert sorted(report.cancelled) == ["a", "c"]
    assert list(report.failed) == ["b"]
    assert report.ok is False
    assert still_running == ["b"]
    assert after_cleanup == []


def test_missing_executable_fails_without_registry_entry(tmp_path: Path, recorder) -> None:
    async def scenario():
        registry = AgentRegistry(
            worker_command=(str(tmp_path / "no-such-worker"),),
            event_handler=recorder,
        )
        with pytest.raises(SpawnFailed):
            await registry.spawn("broken", _invocation(tmp_path))
        return registry.is_any_running()

    assert asyncio.run(scenario()) is False
    assert recorder.exits == []


def test_handler_errors_do_not_break_streaming(tmp_path: Path, echo_command) -> None:
    class ExplodingHandler:
        def __init__(self) -> None:
            self.exits: list[bool] = []

        def on_message(self, agent_id: str, line: str) -> None:
            raise RuntimeError("boom")

        def on_exit(self, agent_id: str, *, success: bool, cancelled: bool) -> None:
            self.exits.append(success)

    handler = ExplodingHandler()

    async def scenario():
        registry = AgentRegistry(worker_command=echo_command, event_handler=handler)
        handle = await registry.spawn("noisy", _invocation(tmp_path))
        return await handle.wait()

    assert asyncio.run(scenario()).success is True
    assert handler.exits == [True]


def test_overlong_output_line_ends_agent_as_failed(tmp_path: Path, recorder) -> None:
    loud_worker = (
        sys.executable,
        "-c",
        "import sys; sys.stdin.readline(); print('x' * 5000, flush=True)",
    )

    async def scenario():
        registry = AgentRegistry(
            worker_command=loud_worker,
            event_handler=recorder,
            max_line_bytes=1024,
        )
        handle = await registry.spawn("loud", _invocation(tmp_path))
        outcome = await asyncio.wait_for(handle.wait(), timeout=10)
        return registry, outcome

    registry, outcome = asyncio.run(scenario())

    assert outcome.success is False
    assert outcome.cancelled is False
    assert registry.running_agent_ids() == []
    assert recorder.exits == [("loud", False, False)]


def test_agent_mid_spawn_counts_as_running(tmp_path: Path, echo_command, recorder) -> None:
    async def scenario():
        registry = AgentRegistry(worker_command=echo_command, event_handler=recorder)
        release = asyncio.Event()
        start = registry._start

        async def gated_start(agent_id, invocation):
            await release.wait()
            return await start(agent_id, invocation)

        registry._start = gated_start
        spawning = asyncio.create_task(registry.spawn("slow", _invocation(tmp_path)))
        await asyncio.sleep(0.05)
        during = (registry.running_agent_ids(), registry.is_any_running())
        release.set()
        outcome = await (await spawning).wait()
        return during, outcome, registry.is_any_running()

    during, outcome, running_after = asyncio.run(scenario())

    assert during == (["slow"], True)
    assert outcome.success is True
    assert running_after is False


def test_agent_exiting_while_kill_fails_is_not_left_registered(tmp_path: Path, recorder) -> None:
    short_worker = (
        sys.executable,
        "-c",
        "import sys, time; sys.stdin.readline(); time.sleep(0.2)",
    )

    async def scenario():
        registry = AgentRegistry(worker_command=short_worker, event_handler=recorder)
        handle = await registry.spawn("brief", _invocation(tmp_path))

        async def failing_kill() -> int:
            await handle.process.wait()
            # Give the output reader time to see EOF and find no entry.
            await asyncio.sleep(0.3)
            raise PermissionError("operation not permitted")

        handle.kill = failing_kill
        await registry.cancel("brief")
        outcome = await asyncio.wait_for(handle.wait(), timeout=10)
        return registry, outcome

    registry, outcome = asyncio.run(scenario())

    assert outcome.cancelled is False
    assert outcome.exit_code == 0
    assert registry.running_agent_ids() == []
    assert recorder.exits == [("brief", True, False)]
