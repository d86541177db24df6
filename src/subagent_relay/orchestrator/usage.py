"""Usage accumulation helpers for streamed assistant messages."""

from __future__ import annotations

from typing import Any

from subagent_relay.orchestrator.models import AgentMessage, UsageStats


def accumulate_usage(stats: UsageStats, message: AgentMessage) -> None:
    """Fold one assistant turn into the running counters.

    Token counts and cost add up across turns; ``context_tokens`` tracks the
    size reported by the latest turn only.
    """

    stats.turns += 1
    usage = message.usage
    if usage is None:
        return
    stats.input += _as_int(usage.get("input"))
    stats.output += _as_int(usage.get("output"))
    stats.cache_read += _as_int(usage.get("cacheRead"))
    stats.cache_write += _as_int(usage.get("cacheWrite"))
    stats.cost += _cost_total(usage.get("cost"))
    stats.context_tokens = _as_int(usage.get("totalTokens"))


def _cost_total(raw: Any) -> float:
    if isinstance(raw, dict):
        raw = raw.get("total")
    if isinstance(raw, bool):
        return 0.0
    if isinstance(raw, int | float):
        return float(raw)
    return 0.0


def _as_int(raw: Any) -> int:
    if isinstance(raw, bool):
        return 0
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw)
    return 0
