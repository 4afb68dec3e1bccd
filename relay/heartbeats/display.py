"""
Markdown rendering of heartbeat status snapshots.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, Optional

EMPTY_CELL = "\N{EM DASH}"


def format_time(value: Optional[datetime]) -> str:
    if value is None:
        return EMPTY_CELL
    return value.strftime("%Y-%m-%d %H:%M")


def status_label(status: Dict[str, Any]) -> str:
    if status.get("running"):
        return "\N{LARGE GREEN CIRCLE} Running"
    if status.get("last_error"):
        return "\N{LARGE RED CIRCLE} Error"
    return "\N{MEDIUM WHITE CIRCLE} Idle"


def format_heartbeat_table(statuses: Iterable[Dict[str, Any]]) -> str:
    """
    Render ``HeartbeatScheduler.status()`` output as a markdown table.
    """
    rows = [
        f"| {item['name']} | {format_time(item.get('next_run_at'))} | "
        f"{format_time(item.get('last_run_at'))} | {item.get('run_count', 0)} | {status_label(item)} |"
        for item in statuses
    ]
    if not rows:
        return "No heartbeats configured."
    header = [
        "#### \N{ANATOMICAL HEART} Heartbeat Status",
        "| Name | Next Run | Last Run | Runs | Status |",
        "|------|----------|----------|------|--------|",
    ]
    return "\n".join(header + rows)
