"""Plain-text rendering of delegation results, progress and jobs."""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from subagent_relay.orchestrator.models import (
    AgentMessage,
    DelegationDetails,
    DelegationMode,
    DelegationOutcome,
    InvocationResult,
    JobStatus,
    TextPart,
    ToolCallPart,
    UsageStats,
)

if TYPE_CHECKING:
    from subagent_relay.orchestrator.jobs import BackgroundJob

PROGRESS_PREVIEW_LIMIT = 120
PROGRESS_MAX_ITEMS = 6
JOB_WIDGET_PREVIEW_LIMIT = 80
JOB_WIDGET_MAX_ITEMS = 4
NO_OUTPUT_YET = "(no output yet)"
NO_OUTPUT = "(no output)"

_WHITESPACE = re.compile(r"\s+")
_JOB_ICONS = {
    JobStatus.RUNNING: "⏳",
    JobStatus.COMPLETED: "✓",
    JobStatus.FAILED: "✗",
}

DisplayItem = TextPart | ToolCallPart


def format_tokens(count: int) -> str:
    if count < 1000:
        return str(count)
    if count < 10_000:
        return f"{count / 1000:.1f}k"
    if count < 1_000_000:
        return f"{int(count / 1000 + 0.5)}k"
    return f"{count / 1_000_000:.1f}M"


def format_usage_stats(usage: UsageStats, model: str | None = None) -> str:
    """One-line usage summary; zero counters are omitted."""

    parts: list[str] = []
    if usage.turns:
        parts.append(f"{usage.turns} turn{'s' if usage.turns > 1 else ''}")
    if usage.input:
        parts.append(f"↑{format_tokens(usage.input)}")
    if usage.output:
        parts.append(f"↓{format_tokens(usage.output)}")
    if usage.cache_read:
        parts.append(f"R{format_tokens(usage.cache_read)}")
    if usage.cache_write:
        parts.append(f"W{format_tokens(usage.cache_write)}")
    if usage.cost:
        parts.append(f"${usage.cost:.4f}")
    if usage.context_tokens > 0:
        parts.append(f"ctx:{format_tokens(usage.context_tokens)}")
    if model:
        parts.append(model)
    return " ".join(parts)


def get_final_output(messages: Sequence[AgentMessage]) -> str:
    """First text part of the last assistant message that has one."""

    for message in reversed(messages):
        if message.role != "assistant":
            continue
        for part in message.content:
            if isinstance(part, TextPart):
                return part.text
    return ""


def get_display_items(messages: Sequence[AgentMessage]) -> list[DisplayItem]:
    items: list[DisplayItem] = []
    for message in messages:
        if message.role != "assistant":
            continue
        items.extend(part for part in message.content if isinstance(part, TextPart | ToolCallPart))
    return items


def shorten_path(path: str) -> str:
    home = str(Path.home())
    return f"~{path[len(home):]}" if path.startswith(home) else path


def format_tool_call(name: str, arguments: dict[str, Any]) -> str:  # noqa: C901, PLR0911
    """Compact description of one tool call, e.g. ``read ~/x.py:10-29``."""

    path_arg = str(arguments.get("file_path") or arguments.get("path") or "...")
    match name:
        case "bash":
            command = str(arguments.get("command") or "...")
            return f"$ {_truncate(command, 60)}"
        case "read":
            text = f"read {shorten_path(path_arg)}"
            offset = arguments.get("offset")
            limit = arguments.get("limit")
            if offset is not None or limit is not None:
                start = offset if isinstance(offset, int) else 1
                end = f"-{start + limit - 1}" if isinstance(limit, int) else ""
                text += f":{start}{end}"
            return text
        case "write":
            lines = str(arguments.get("content") or "").count("\n") + 1
            suffix = f" ({lines} lines)" if lines > 1 else ""
            return f"write {shorten_path(path_arg)}{suffix}"
        case "edit":
            return f"edit {shorten_path(path_arg)}"
        case "ls":
            return f"ls {shorten_path(str(arguments.get('path') or '.'))}"
        case "find":
            pattern = arguments.get("pattern") or "*"
            return f"find {pattern} in {shorten_path(str(arguments.get('path') or '.'))}"
        case "grep":
            pattern = arguments.get("pattern") or ""
            return f"grep /{pattern}/ in {shorten_path(str(arguments.get('path') or '.'))}"
        case _:
            return f"{name} {_truncate(json.dumps(arguments, separators=(',', ':')), 50)}"


def format_preview_text(text: str, max_length: int = PROGRESS_PREVIEW_LIMIT) -> str:
    cleaned = _WHITESPACE.sub(" ", text).strip()
    if not cleaned:
        return NO_OUTPUT_YET
    return _truncate(cleaned, max_length)


def format_display_item(item: DisplayItem) -> str:
    if isinstance(item, TextPart):
        return format_preview_text(item.text)
    return f"→ {format_tool_call(item.name, item.arguments)}"


def summarize_progress(details: DelegationDetails, *, is_running: bool) -> str:
    """Compress a details snapshot into a few human-readable lines."""

    results = details.results
    if not results:
        return NO_OUTPUT_YET

    if details.mode is DelegationMode.SINGLE and len(results) == 1:
        result = results[0]
        status = "running" if is_running else _status_for(result)
        return f"{result.agent} ({status}) {_latest_preview(result)}"

    total = len(results)
    if details.mode is DelegationMode.CHAIN:
        noun = f"step{'s' if total > 1 else ''}"
        lines = [f"Chain {'running' if is_running else 'completed'}: {total} {noun}"]
        start = max(0, total - PROGRESS_MAX_ITEMS)
        if start > 0:
            lines.append(f"... {start} earlier step{'s' if start > 1 else ''} hidden")
        for index in range(start, total):
            result = results[index]
            label = result.step if result.step is not None else index + 1
            status = "running" if is_running and index == total - 1 else _status_for(result)
            lines.append(f"{label}. {result.agent} ({status}) {_latest_preview(result)}")
        return "\n".join(lines)

    running = sum(1 for result in results if not result.completed)
    succeeded = sum(1 for result in results if result.completed and not result.is_error)
    if is_running:
        header = f"Parallel running: {total - running}/{total} done, {running} running"
    else:
        header = f"Parallel completed: {succeeded}/{total} succeeded"
    lines = [header]
    shown = min(total, PROGRESS_MAX_ITEMS)
    for index, result in enumerate(results[:shown], start=1):
        lines.append(f"{index}. {result.agent} ({_status_for(result)}) {_latest_preview(result)}")
    if total > shown:
        lines.append(f"... +{total - shown} more")
    return "\n".join(lines)


def format_job_summary(job: BackgroundJob, now: datetime) -> str:
    """``✓ job-3 [single] scout: find the config (completed, 4.2s)``"""

    return (
        f"{_JOB_ICONS[job.status]} {job.id} [{job.mode.value}] {job.agent}: "
        f"{_truncate(job.task, 60)} ({job.status.value}, {job.elapsed_seconds(now):.1f}s)"
    )


def format_job_status_line(job: BackgroundJob, now: datetime) -> str:
    summary = (
        format_preview_text(job.last_summary, JOB_WIDGET_PREVIEW_LIMIT)
        if job.last_summary
        else NO_OUTPUT_YET
    )
    return f"• {job.id} {job.agent} ({job.elapsed_seconds(now):.0f}s): {summary}"


def format_running_jobs(jobs: Sequence[BackgroundJob], now: datetime) -> list[str]:
    """Status block for running jobs; empty when nothing is running."""

    if not jobs:
        return []
    lines = [f"⏳ {len(jobs)} background job{'s' if len(jobs) > 1 else ''} running"]
    lines.extend(format_job_status_line(job, now) for job in jobs[:JOB_WIDGET_MAX_ITEMS])
    if len(jobs) > JOB_WIDGET_MAX_ITEMS:
        lines.append(f"… +{len(jobs) - JOB_WIDGET_MAX_ITEMS} more")
    return lines


def format_job_notification(job: BackgroundJob, now: datetime) -> str:
    icon = _JOB_ICONS[JobStatus.COMPLETED if job.status is JobStatus.COMPLETED else JobStatus.FAILED]
    return (
        f"{icon} Background job {job.id} {job.status.value} ({job.elapsed_seconds(now):.1f}s)\n"
        f"Agent: {job.agent}\n"
        f'Use subagent_jobs with action "get" and jobId "{job.id}" to retrieve the result.'
    )


def render_outcome_lines(outcome: DelegationOutcome) -> list[str]:
    """CLI rendering: outcome text followed by one usage line per invocation.

    Failed invocations always get a line, tagged with their failure class.
    """

    lines = outcome.text.splitlines() or [NO_OUTPUT]
    usage_lines: list[str] = []
    for result in outcome.details.results:
        usage = format_usage_stats(result.usage, result.model)
        if not usage and not result.is_error:
            continue
        prefix = f"{result.step}. " if result.step is not None else ""
        status = _outcome_status(result)
        usage_lines.append(f"  {prefix}{result.agent} [{status}] {usage}".rstrip())
    if usage_lines:
        lines.extend(["", "Usage:", *usage_lines])
    return lines


def _outcome_status(result: InvocationResult) -> str:
    if not result.is_error:
        return "ok"
    if result.failure_class is None:
        return "failed"
    return f"failed: {result.failure_class.value}"


def _status_for(result: InvocationResult) -> str:
    if not result.completed:
        return "running"
    return "failed" if result.is_error else "done"


def _latest_preview(result: InvocationResult) -> str:
    items = get_display_items(result.messages)
    if not items:
        return NO_OUTPUT_YET
    return format_display_item(items[-1])


def _truncate(text: str, limit: int) -> str:
    return f"{text[:limit]}..." if len(text) > limit else text
