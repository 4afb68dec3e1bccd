"""
Heartbeat definition, schedule and runtime state models.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .cron import CronExpression

DEFAULT_TIMEOUT_SECONDS = 600
DEFAULT_PERMISSION_MODE = "interactive"


@dataclass(frozen=True)
class RunAtSchedule:
    """One-shot schedule at an absolute instant."""

    run_at: datetime

    def next_run(self, now: datetime) -> Optional[datetime]:
        # A missed one-shot fires immediately.
        return self.run_at if self.run_at > now else now

    def describe(self) -> str:
        return f"at {self.run_at.isoformat()}"


@dataclass(frozen=True)
class CronSchedule:
    """Recurring schedule driven by a cron expression."""

    expression: CronExpression

    def next_run(self, now: datetime) -> Optional[datetime]:
        return self.expression.next_occurrence(now)

    def describe(self) -> str:
        return f"cron '{self.expression}'"


@dataclass(frozen=True)
class IntervalSchedule:
    """Recurring schedule every ``seconds`` seconds."""

    seconds: float

    def __post_init__(self) -> None:
        if self.seconds <= 0:
            raise ValueError("interval must be > 0 seconds")

    def next_run(self, now: datetime) -> Optional[datetime]:
        return now + timedelta(seconds=self.seconds)

    def describe(self) -> str:
        return f"every {self.seconds:g}s"


HeartbeatSchedule = Union[RunAtSchedule, CronSchedule, IntervalSchedule]


@dataclass(frozen=True)
class HeartbeatDefinition:
    """
    A single heartbeat: schedule, target channel, prompt and run options.
    """

    name: str
    schedule: HeartbeatSchedule
    channel_id: str
    prompt: str
    description: str = ""
    working_dir: Optional[Path] = None
    permission_mode: str = DEFAULT_PERMISSION_MODE
    persistent: bool = False
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    enabled: bool = True
    once: bool = False

    def __post_init__(self) -> None:
        name = str(self.name or "").strip()
        if not name:
            raise ValueError("HeartbeatDefinition.name is required")
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "description", str(self.description or "").strip() or name)
        object.__setattr__(
            self,
            "permission_mode",
            str(self.permission_mode or DEFAULT_PERMISSION_MODE).strip().lower(),
        )
        if self.timeout <= 0:
            raise ValueError(f"Heartbeat '{name}' timeout must be > 0")

    @property
    def active(self) -> bool:
        return bool(self.enabled and self.channel_id and self.prompt)

    @property
    def auto_permission(self) -> bool:
        return self.permission_mode == "auto"


@dataclass
class HeartbeatState:
    """
    Runtime state of one heartbeat, owned by the scheduler.

    ``run_thread``, ``session`` and ``cancel_event`` are only set while the
    heartbeat is running.
    """

    definition: HeartbeatDefinition
    next_run_at: Optional[datetime] = None
    running: bool = False
    run_count: int = 0
    last_run_at: Optional[datetime] = None
    last_completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    session_id: Optional[str] = None
    run_thread: Optional[threading.Thread] = None
    session: Any = None
    cancel_event: Optional[threading.Event] = None

    @property
    def name(self) -> str:
        return self.definition.name

    def update_definition_if_idle(self, definition: HeartbeatDefinition) -> bool:
        if self.running:
            return False
        self.definition = definition
        return True

    def mark_dispatched(self, now: datetime, thread: threading.Thread) -> None:
        self.running = True
        self.last_run_at = now
        self.last_error = None
        self.cancel_event = threading.Event()
        self.run_thread = thread

    def mark_completed(self, now: datetime, next_run: Optional[datetime]) -> None:
        self.running = False
        self.run_count += 1
        self.last_completed_at = now
        self.next_run_at = next_run
        self.run_thread = None
        self.session = None
        self.cancel_event = None

    def to_status(self) -> Dict[str, Any]:
        return {
            "name": self.definition.name,
            "description": self.definition.description,
            "next_run_at": self.next_run_at,
            "last_run_at": self.last_run_at,
            "last_completed_at": self.last_completed_at,
            "run_count": self.run_count,
            "running": self.running,
            "last_error": self.last_error,
        }
