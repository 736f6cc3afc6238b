"""Worker invocation contract: one JSON line of configuration on stdin."""

from __future__ import annotations

import json
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class AgentInvocation:
    """Configuration handed to a worker process at spawn time."""

    prompt: str
    model: str
    api_key: str
    cwd: str
    allowed_tools: tuple[str, ...] | None = None
    max_turns: int | None = None
    permission_mode: str | None = None
    session_id: str | None = None

    def to_payload(self) -> dict[str, object]:
        """Wire payload with camelCase keys; unset optionals are omitted."""

        payload: dict[str, object] = {
            "prompt": self.prompt,
            "model": self.model,
            "apiKey": self.api_key,
            "cwd": self.cwd,
        }
        if self.allowed_tools is not None:
            payload["allowedTools"] = list(self.allowed_tools)
        if self.max_turns is not None:
            payload["maxTurns"] = self.max_turns
        if self.permission_mode is not None:
            payload["permissionMode"] = self.permission_mode
        if self.session_id is not None:
            payload["sessionId"] = self.session_id
        return payload

    def to_json_line(self) -> bytes:
        return (json.dumps(self.to_payload(), ensure_ascii=False) + "\n").encode("utf-8")
