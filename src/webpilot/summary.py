"""Deterministic run summaries and diary narration.

Nothing here calls a provider or reads the clock, so the same executed steps
always render to the same text.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence

from webpilot.events import ToolExecutionEvent, ToolPhase
from webpilot.state import ExecutedStep

TRAJECTORY_LIMIT = 50


def final_url(steps: Sequence[ExecutedStep]) -> str | None:
    for record in reversed(steps):
        if record.url:
            return record.url
    return None


def build_trajectory(steps: Sequence[ExecutedStep], *, limit: int = TRAJECTORY_LIMIT) -> str:
    if not steps:
        return "- (no actions executed)"
    lines = []
    for record in list(steps)[-limit:]:
        where = f" @ {record.url}" if record.url else ""
        outcome = "(ok)" if record.success else f"({record.status})"
        lines.append(f"- step {record.step}: {record.action}{where} {outcome}")
    return "\n".join(lines)


def tool_usage_counts(history: Iterable[ToolExecutionEvent]) -> dict[str, int]:
    counts: Counter[str] = Counter()
    for event in history:
        if event.phase == ToolPhase.STARTING:
            counts[event.tool_name] += 1
    return dict(sorted(counts.items()))


def build_fallback_summary(
    steps: Sequence[ExecutedStep],
    *,
    reason: str | None = None,
    tool_counts: dict[str, int] | None = None,
) -> str:
    succeeded = sum(1 for record in steps if record.success)
    lines = [
        "## Summary",
        "",
        f"{len(steps)} step(s) executed, {succeeded} succeeded.",
    ]
    url = final_url(steps)
    lines.append(f"Final URL: {url}" if url else "Final URL: (unknown)")
    if reason:
        lines.append("")
        lines.append(f"*Note: {reason}*")
    if tool_counts:
        lines.append("")
        lines.append("### Tool usage")
        lines.extend(f"- {name}: {count}" for name, count in sorted(tool_counts.items()))
    lines.append("")
    lines.append("### Trajectory")
    lines.append(build_trajectory(steps))
    return "\n".join(lines) + "\n"


def narrate_step(position: int, record: ExecutedStep) -> str:
    if record.action == "navigate":
        head = f'At step {position}, you took the **navigate** action to: "{record.target}".'
    elif record.target:
        head = f'At step {position}, you took the **{record.action}** action on: "{record.target}".'
    else:
        head = f"At step {position}, you took the **{record.action}** action."

    if record.success:
        tail = "You succeeded."
        if record.url and record.action != "navigate":
            tail = f"You succeeded and ended up on {record.url}."
    elif record.status == "skipped":
        tail = f"It was skipped: {record.error or 'an earlier critical step failed'}."
    elif record.repeated_failure:
        tail = (
            f"But it failed {record.attempts} times with the same error: "
            f"{record.error or 'unknown error'}. You appear to be stuck repeating this action."
        )
    else:
        tail = f"But it failed: {record.error or 'unknown error'}."
    return f"{head}\n{tail}"
