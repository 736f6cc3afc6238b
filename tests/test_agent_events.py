from __future__ import annotations

import json

import allure

from skill_builder.agents import AgentInvocation, ConsoleEventHandler, parse_agent_message

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Worker Protocol"),
]


def test_invocation_payload_uses_camel_case_and_omits_unset() -> None:
    minimal = AgentInvocation(prompt="p", model="haiku", api_key="k", cwd="/ws")
    full = AgentInvocation(
        prompt="p",
        model="opus",
        api_key="k",
        cwd="/ws",
        allowed_tools=("Read", "Write"),
        max_turns=100,
        permission_mode="bypassPermissions",
        session_id="resume-1",
    )

    assert minimal.to_payload() == {"prompt": "p", "model": "haiku", "apiKey": "k", "cwd": "/ws"}
    line = full.to_json_line()
    assert line.endswith(b"\n")
    assert line.count(b"\n") == 1
    assert json.loads(line) == {
        "prompt": "p",
        "model": "opus",
        "apiKey": "k",
        "cwd": "/ws",
        "allowedTools": ["Read", "Write"],
        "maxTurns": 100,
        "permissionMode": "bypassPermissions",
        "sessionId": "resume-1",
    }


def test_parse_agent_message_classifies_lines() -> None:
    assert parse_agent_message('{"type": "result", "subtype": "success"}').kind == "result"
    assert parse_agent_message('{"type": "stream_event"}').kind == "unknown"
    assert parse_agent_message("[1, 2]").kind == "text"
    plain = parse_agent_message("Loading tools...")
    assert plain.kind == "text"
    assert plain.payload == {}


def test_console_handler_renders_summaries() -> None:
    lines: list[str] = []
    handler = ConsoleEventHandler(lines.append)

    handler.on_message("a1", json.dumps({"type": "system", "subtype": "init", "model": "opus"}))
    handler.on_message(
        "a1",
        json.dumps(
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "Hi"}]}},
        ),
    )
    handler.on_message("a1", json.dumps({"type": "user", "message": {"content": []}}))
    handler.on_message("a1", json.dumps({"type": "result", "subtype": "success", "num_turns": 4}))
    handler.on_exit("a1", success=False, cancelled=True)

    assert lines == [
        "[a1] init: model=opus",
        "[a1] Hi",
        "[a1] result: success turns=4",
        "[a1] cancelled",
    ]


def test_console_handler_tolerates_malformed_assistant_content() -> None:
    lines: list[str] = []
    handler = ConsoleEventHandler(lines.append)

    handler.on_message("a1", json.dumps({"type": "assistant", "message": {"content": None}}))
    handler.on_message("a1", json.dumps({"type": "assistant", "message": {"content": 42}}))
    handler.on_message("a1", json.dumps({"type": "assistant", "message": {"content": "Plain"}}))

    assert lines == ["[a1] Plain"]
