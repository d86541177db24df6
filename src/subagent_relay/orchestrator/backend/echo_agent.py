"""Local stand-in for the agent CLI, used by integration tests and demos.

Speaks the same JSON-lines protocol as the real agent in ``--mode json``.
Directives embedded in the task text change its behavior:

- ``[sleep:<seconds>]`` pause after echoing the user message
- ``[tool]`` emit a tool call and its result before answering
- ``[garbage]`` emit malformed lines between events
- ``[error]`` answer with ``stopReason: error``
- ``[fail]`` write to stderr and exit with status 3
- ``[ignore-term]`` ignore SIGTERM so only SIGKILL stops the process
"""

from __future__ import annotations

import argparse
import json
import re
import signal
import sys
import time
from pathlib import Path
from typing import Any

_SLEEP_DIRECTIVE = re.compile(r"\[sleep:([\d.]+)\]")
_TASK_PREFIX = "Task: "


def main(argv: list[str] | None = None) -> int:
    """Answer one task, optionally continuing a persisted session."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--mode", default="text")
    parser.add_argument("-p", dest="print_mode", action="store_true")
    parser.add_argument("--model", default="echo-model")
    parser.add_argument("--thinking", default=None)
    parser.add_argument("--tools", default="")
    parser.add_argument("--append-system-prompt", default=None)
    parser.add_argument("--session", default=None)
    parser.add_argument("--continue", dest="continue_session", action="store_true")
    parser.add_argument("--no-session", action="store_true")
    parser.add_argument("prompt")
    args = parser.parse_args(argv)

    task = args.prompt[len(_TASK_PREFIX) :] if args.prompt.startswith(_TASK_PREFIX) else args.prompt
    session_path = Path(args.session) if args.session else None
    history = _load_history(session_path) if args.continue_session else []
    garbage = "[garbage]" in task
    if "[ignore-term]" in task:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    new_messages: list[dict[str, Any]] = []

    _emit({"type": "agent_start"})
    user_message = {"role": "user", "content": [{"type": "text", "text": task}]}
    new_messages.append(user_message)
    _emit({"type": "message_end", "message": user_message})
    if garbage:
        _emit_raw("{not json")

    sleep_match = _SLEEP_DIRECTIVE.search(task)
    if sleep_match:
        time.sleep(float(sleep_match.group(1)))

    if "[fail]" in task:
        sys.stderr.write(f"echo agent failure for task: {task}\n")
        sys.stderr.flush()
        return 3

    if "[tool]" in task:
        tool_call = {
            "role": "assistant",
            "content": [{"type": "toolCall", "name": "bash", "arguments": {"command": "ls"}}],
            "model": args.model,
            "stopReason": "toolUse",
            "usage": _usage(input_tokens=4, output_tokens=2),
        }
        tool_result = {
            "role": "toolResult",
            "toolName": "bash",
            "content": [{"type": "text", "text": "README.md"}],
        }
        new_messages.extend([tool_call, tool_result])
        _emit({"type": "message_end", "message": tool_call})
        _emit({"type": "tool_result_end", "message": tool_result})
        if garbage:
            _emit_raw("[1, 2, 3]")

    reply_text = f"echo: {task}"
    prior_tasks = [_first_text(message) for message in history if message.get("role") == "user"]
    if prior_tasks:
        reply_text += " | history: " + " / ".join(prior_tasks)
    if args.append_system_prompt:
        reply_text += " | instructions: " + _first_line(Path(args.append_system_prompt))
    if args.tools:
        reply_text += f" | tools: {args.tools}"

    is_error = "[error]" in task
    assistant_message: dict[str, Any] = {
        "role": "assistant",
        "content": [{"type": "text", "text": reply_text}],
        "model": args.model,
        "stopReason": "error" if is_error else "stop",
        "usage": _usage(input_tokens=10, output_tokens=5),
    }
    if is_error:
        assistant_message["errorMessage"] = "echo agent reported an error"
    new_messages.append(assistant_message)
    _emit({"type": "message_end", "message": assistant_message})
    _emit({"type": "agent_end"})

    if session_path is not None and not args.no_session:
        _save_history(session_path, [*history, *new_messages])
    return 0


def _usage(*, input_tokens: int, output_tokens: int) -> dict[str, Any]:
    return {
        "input": input_tokens,
        "output": output_tokens,
        "cacheRead": 0,
        "cacheWrite": 0,
        "totalTokens": input_tokens + output_tokens,
        "cost": {"total": 0.001},
    }


def _emit(payload: dict[str, Any]) -> None:
    _emit_raw(json.dumps(payload))


def _emit_raw(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()


def _load_history(path: Path | None) -> list[dict[str, Any]]:
    if path is None or not path.exists():
        return []
    messages: list[dict[str, Any]] = []
    for line in path.read_text("utf-8").splitlines():
        if line.strip():
            messages.append(json.loads(line))
    return messages


def _save_history(path: Path, messages: list[dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(json.dumps(message) + "\n" for message in messages), "utf-8")


def _first_text(message: dict[str, Any]) -> str:
    for part in message.get("content", []):
        if isinstance(part, dict) and part.get("type") == "text":
            return str(part.get("text", ""))
    return ""


def _first_line(path: Path) -> str:
    lines = path.read_text("utf-8").strip().splitlines()
    return lines[0] if lines else ""


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
