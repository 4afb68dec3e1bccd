"""
Heartbeat definition loader.

Reads ``heartbeats.yml`` from the config root::

    heartbeats:
      morning-digest:
        description: Morning digest
        schedule:
          cron: "30 9 * * 1-5"
        channel_id: abc123
        working_dir: ~/projects/notes
        prompt: Summarize yesterday's changes.
        permission_mode: auto
        timeout: 900

Entries that are disabled, lack ``channel_id``/``prompt`` or have no valid
schedule are skipped. Loading never raises.
"""

from __future__ import annotations

import os
import tempfile
import threading
from datetime import date, datetime, time as dt_time
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from relay.logging import get_logger
from relay.paths import get_heartbeats_path, resolve_working_dir

from .cron import CronExpression
from .models import (
    DEFAULT_PERMISSION_MODE,
    DEFAULT_TIMEOUT_SECONDS,
    CronSchedule,
    HeartbeatDefinition,
    HeartbeatSchedule,
    IntervalSchedule,
    RunAtSchedule,
)

logger = get_logger(__name__)

_SCHEDULE_KEYS = ("run_at", "cron", "interval")


def _parse_run_at(value: Any) -> datetime:
    if isinstance(value, bool):
        raise ValueError(f"Invalid run_at: {value!r}")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value).astimezone()
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, dt_time.min)
    else:
        text = str(value or "").strip()
        if not text:
            raise ValueError("run_at is empty")
        parsed = datetime.fromisoformat(text)
    # Naive timestamps are local wall-clock times.
    return parsed.astimezone() if parsed.tzinfo is None else parsed


def build_schedule(raw: Dict[str, Any]) -> HeartbeatSchedule:
    """
    Resolve a raw ``schedule`` mapping into one schedule variant.

    Priority: run_at > cron > interval.

    Raises:
        ValueError: If no schedule key is present or its value is invalid
            (MalformedScheduleError for bad cron expressions).
    """
    if raw.get("run_at") is not None:
        return RunAtSchedule(run_at=_parse_run_at(raw["run_at"]))
    if raw.get("cron") is not None:
        return CronSchedule(expression=CronExpression.parse(str(raw["cron"])))
    if raw.get("interval") is not None:
        interval = raw["interval"]
        if isinstance(interval, bool):
            raise ValueError(f"Invalid interval: {interval!r}")
        return IntervalSchedule(seconds=float(interval))
    raise ValueError("schedule requires one of: run_at, cron, interval")


def build_definition(name: str, raw: Dict[str, Any]) -> HeartbeatDefinition:
    """
    Build a HeartbeatDefinition from one raw YAML entry.

    Raises:
        ValueError: If the schedule or an option is invalid.
    """
    schedule_raw = raw.get("schedule")
    if not isinstance(schedule_raw, dict):
        raise ValueError("schedule must be a mapping")

    return HeartbeatDefinition(
        name=str(name),
        description=str(raw.get("description") or ""),
        schedule=build_schedule(schedule_raw),
        channel_id=str(raw.get("channel_id") or "").strip(),
        prompt=str(raw.get("prompt") or "").strip(),
        working_dir=resolve_working_dir(raw.get("working_dir")),
        permission_mode=str(raw.get("permission_mode") or DEFAULT_PERMISSION_MODE),
        persistent=bool(raw.get("persistent", False)),
        timeout=float(raw.get("timeout", DEFAULT_TIMEOUT_SECONDS)),
        enabled=bool(raw.get("enabled", True)),
        once=bool(raw.get("once", False)),
    )


def _write_yaml_atomically(path: Path, data: Dict[str, Any]) -> None:
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class HeartbeatConfig:
    """
    Loads heartbeat definitions from YAML and patches single entries in place.
    """

    def __init__(self, path: Optional[str | Path] = None) -> None:
        self.path = Path(path).expanduser() if path is not None else get_heartbeats_path()
        self._write_lock = threading.Lock()

    def definitions(self) -> List[HeartbeatDefinition]:
        """
        Return the active definitions, or an empty list when the file is
        missing or unreadable.
        """
        try:
            return self._load_definitions()
        except Exception as exc:
            logger.warning("Failed to load heartbeat config from %s: %s", self.path, exc)
            return []

    def load_raw(self) -> Dict[str, Any]:
        """
        Return the raw ``heartbeats`` mapping, or an empty dict.

        Raises:
            yaml.YAMLError: If the file is not valid YAML.
        """
        if not self.path.exists():
            return {}
        data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        heartbeats = data.get("heartbeats") if isinstance(data, dict) else None
        return heartbeats if isinstance(heartbeats, dict) else {}

    def mtime(self) -> Optional[float]:
        try:
            return self.path.stat().st_mtime
        except OSError:
            return None

    def disable(self, name: str) -> bool:
        """
        Set ``enabled: false`` on one entry, rewriting the whole document.

        Returns False (without raising) when the file or entry is missing or
        the write fails.
        """
        with self._write_lock:
            try:
                if not self.path.exists():
                    return False
                data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
                if not isinstance(data, dict):
                    return False
                heartbeats = data.get("heartbeats")
                entry = heartbeats.get(name) if isinstance(heartbeats, dict) else None
                if not isinstance(entry, dict):
                    return False
                entry["enabled"] = False
                _write_yaml_atomically(self.path, data)
            except (OSError, yaml.YAMLError) as exc:
                logger.warning("Failed to disable heartbeat '%s': %s", name, exc)
                return False
        logger.info("One-off heartbeat '%s' disabled in %s", name, self.path)
        return True

    def _load_definitions(self) -> List[HeartbeatDefinition]:
        definitions: List[HeartbeatDefinition] = []
        for name, raw in self.load_raw().items():
            if not isinstance(raw, dict):
                continue
            schedule = raw.get("schedule")
            if not isinstance(schedule, dict) or not any(key in schedule for key in _SCHEDULE_KEYS):
                continue
            try:
                definition = build_definition(str(name), raw)
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping heartbeat '%s': %s", name, exc)
                continue
            if definition.active:
                definitions.append(definition)
        return definitions
