"""Local deterministic worker for integration tests and smoke runs.

Speaks the worker protocol: reads one JSON config line from stdin, streams
JSON lines on stdout, writes the output file named in the prompt, and exits.

Environment switches:

- ``SKILL_BUILDER_ECHO_FAIL_ON``: exit 1 when this substring occurs in the prompt.
- ``SKILL_BUILDER_ECHO_SLEEP_SECONDS``: delay before producing output.
"""

from __future__ import annotations

import argparse
import json
import os
import re
import sys
import time
from pathlib import Path

_OUTPUT_PATTERN = re.compile(r"Write output to (?P<path>\S+?)\.?$", re.MULTILINE)


def main(argv: list[str] | None = None) -> int:
    """Run one fake agent conversation."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--exit-code", type=int, default=None)
    args = parser.parse_args(argv)

    line = sys.stdin.readline()
    if not line:
        _emit({"type": "error", "error": "stdin closed before receiving config"})
        return 1
    try:
        config = json.loads(line)
    except ValueError as error:
        _emit({"type": "error", "error": f"Failed to read config: {error}"})
        return 1

    prompt = str(config.get("prompt", ""))
    _emit({"type": "system", "subtype": "init", "model": config.get("model"), "cwd": config.get("cwd")})

    delay = float(os.getenv("SKILL_BUILDER_ECHO_SLEEP_SECONDS", "0"))
    if delay > 0:
        time.sleep(delay)

    fail_marker = os.getenv("SKILL_BUILDER_ECHO_FAIL_ON", "")
    if (fail_marker and fail_marker in prompt) or args.exit_code not in (None, 0):
        print(f"echo agent failing on purpose: {fail_marker or args.exit_code}", file=sys.stderr)
        _emit({"type": "error", "error": "echo agent failure requested"})
        return args.exit_code or 1

    match = _OUTPUT_PATTERN.search(prompt)
    if match is not None:
        output_path = Path(str(config.get("cwd", "."))) / match.group("path")
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(f"# Echo output\n\n{prompt}\n", "utf-8")

    _emit(
        {
            "type": "assistant",
            "message": {"content": [{"type": "text", "text": f"Echo: {prompt}"}]},
        },
    )
    _emit({"type": "result", "subtype": "success", "num_turns": 1, "total_cost_usd": 0})
    return 0


def _emit(payload: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(payload) + "\n")
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
