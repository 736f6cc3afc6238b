"""Agent stream events: message classification and relay sinks."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)

KNOWN_MESSAGE_KINDS = frozenset({"system", "assistant", "user", "result", "error"})
_PREVIEW_CHARS = 200


class AgentEventHandler(Protocol):
    """Receives ordered stdout lines and one terminal notification per agent."""

    def on_message(self, agent_id: str, line: str) -> None:
        """Relay one stdout line."""

    def on_exit(self, agent_id: str, *, success: bool, cancelled: bool) -> None:
        """Agent finished (naturally or by cancellation)."""


@dataclass(slots=True)
class AgentMessage:
    """One classified line from a worker's primary output."""

    kind: str
    raw: str
    payload: dict[str, Any] = field(default_factory=dict)


def parse_agent_message(line: str) -> AgentMessage:
    """Classify a worker line by its JSON ``type`` field; anything else is text."""

    stripped = line.strip()
    try:
        parsed = json.loads(stripped)
    except ValueError:
        return AgentMessage(kind="text", raw=line)
    if not isinstance(parsed, dict):
        return AgentMessage(kind="text", raw=line)
    kind = parsed.get("type")
    if not isinstance(kind, str) or kind not in KNOWN_MESSAGE_KINDS:
        kind = "unknown"
    return AgentMessage(kind=kind, raw=line, payload=parsed)


def summarize_message(message: AgentMessage) -> str | None:
    """Short human-readable rendering, or None for messages not worth showing."""

    payload = message.payload
    if message.kind == "text":
        return _preview(message.raw)
    if message.kind == "error":
        return f"error: {payload.get('error', message.raw)}"
    if message.kind == "result":
        parts = [f"result: {payload.get('subtype', 'done')}"]
        if "num_turns" in payload:
            parts.append(f"turns={payload['num_turns']}")
        if "total_cost_usd" in payload:
            parts.append(f"cost_usd={payload['total_cost_usd']}")
        return " ".join(parts)
    if message.kind == "assistant":
        text = _assistant_text(payload)
        return _preview(text) if text else None
    if message.kind == "system" and payload.get("subtype") == "init":
        return f"init: model={payload.get('model', '?')}"
    return None


def _assistant_text(payload: dict[str, Any]) -> str:
    content = payload.get("message", {})
    if isinstance(content, dict):
        content = content.get("content", [])
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        content = []
    texts = [
        block.get("text", "")
        for block in content
        if isinstance(block, dict) and block.get("type") == "text"
    ]
    return " ".join(text for text in texts if text)


def _preview(text: str) -> str:
    single_line = " ".join(text.split())
    if len(single_line) <= _PREVIEW_CHARS:
        return single_line
    return single_line[: _PREVIEW_CHARS - 3] + "..."


class LoggingEventHandler:
    """Log sink for agent messages; used when no console is attached."""

    def on_message(self, agent_id: str, line: str) -> None:
        message = parse_agent_message(line)
        if message.kind in {"error", "result"}:
            logger.info("[agent:%s] %s", agent_id, summarize_message(message))
        else:
            logger.debug("[agent:%s] %s", agent_id, line)

    def on_exit(self, agent_id: str, *, success: bool, cancelled: bool) -> None:
        if cancelled:
            logger.info("Agent %s cancelled", agent_id)
        elif success:
            logger.info("Agent %s finished", agent_id)
        else:
            logger.warning("Agent %s failed", agent_id)


class ConsoleEventHandler(LoggingEventHandler):
    """Renders one summary line per interesting message through ``emit``."""

    def __init__(self, emit: Callable[[str], None]) -> None:
        self._emit = emit

    def on_message(self, agent_id: str, line: str) -> None:
        super().on_message(agent_id, line)
        summary = summarize_message(parse_agent_message(line))
        if summary:
            self._emit(f"[{agent_id}] {summary}")

    def on_exit(self, agent_id: str, *, success: bool, cancelled: bool) -> None:
        super().on_exit(agent_id, success=success, cancelled=cancelled)
        outcome = "cancelled" if cancelled else ("finished" if success else "failed")
        self._emit(f"[{agent_id}] {outcome}")
