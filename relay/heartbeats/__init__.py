"""
Heartbeat scheduling package.
"""

from .config import HeartbeatConfig, build_definition, build_schedule
from .cron import CronExpression, MalformedScheduleError
from .display import format_heartbeat_table
from .models import (
    CronSchedule,
    HeartbeatDefinition,
    HeartbeatSchedule,
    HeartbeatState,
    IntervalSchedule,
    RunAtSchedule,
)
from .scheduler import HeartbeatScheduler

__all__ = [
    "CronExpression",
    "MalformedScheduleError",
    "CronSchedule",
    "IntervalSchedule",
    "RunAtSchedule",
    "HeartbeatSchedule",
    "HeartbeatDefinition",
    "HeartbeatState",
    "HeartbeatConfig",
    "build_definition",
    "build_schedule",
    "HeartbeatScheduler",
    "format_heartbeat_table",
]
