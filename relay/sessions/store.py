"""
Durable thread-id to session mapping persisted as a single JSON document.

Every mutation rewrites the whole file through a temporary file in the same
directory followed by ``os.replace``, so readers never observe a partial
write. I/O failures are logged and swallowed; the previous file stays intact.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from relay.logging import get_logger
from relay.paths import get_sessions_path

logger = get_logger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class PersistedSession:
    """
    Snapshot of an agent session's metadata for resuming after a restart.
    """

    claude_session_id: str
    channel_id: str
    working_dir: Optional[str] = None
    started_at: str = ""
    last_activity_at: str = ""
    is_paused: bool = False
    message_count: int = 0
    total_cost: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "PersistedSession":
        """
        Build a record from a decoded JSON object, ignoring unknown keys.

        Raises:
            TypeError: If a required field is missing.
        """
        known = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in raw.items() if key in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SessionStore:
    """
    Thread-safe, lazily loaded, atomically written session store.
    """

    def __init__(self, path: Optional[str | Path] = None) -> None:
        self.path = Path(path).expanduser() if path is not None else get_sessions_path()
        self._lock = threading.Lock()
        self._cache: Optional[Dict[str, PersistedSession]] = None

    def load(self) -> Dict[str, PersistedSession]:
        """Return copies of every persisted session keyed by thread id."""
        with self._lock:
            return {key: replace(record) for key, record in self._ensure_cache().items()}

    def get(self, key: str) -> Optional[PersistedSession]:
        with self._lock:
            record = self._ensure_cache().get(key)
            return replace(record) if record is not None else None

    def save(self, key: str, record: PersistedSession) -> None:
        with self._lock:
            self._ensure_cache()[key] = replace(record)
            self._write_locked()

    def remove(self, key: str) -> None:
        with self._lock:
            self._ensure_cache().pop(key, None)
            self._write_locked()

    def touch(self, key: str) -> None:
        """Refresh ``last_activity_at`` for an existing entry."""
        with self._lock:
            record = self._ensure_cache().get(key)
            if record is None:
                return
            record.last_activity_at = _now_iso()
            self._write_locked()

    def _ensure_cache(self) -> Dict[str, PersistedSession]:
        if self._cache is None:
            self._cache = self._read()
        return self._cache

    def _read(self) -> Dict[str, PersistedSession]:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read session store %s: %s", self.path, exc)
            return {}

        if not isinstance(raw, dict):
            logger.warning("Session store %s is not a JSON object; ignoring it", self.path)
            return {}

        sessions: Dict[str, PersistedSession] = {}
        for key, attrs in raw.items():
            if not isinstance(attrs, dict):
                logger.warning("Skipping malformed session entry '%s'", key)
                continue
            try:
                sessions[str(key)] = PersistedSession.from_dict(attrs)
            except TypeError as exc:
                logger.warning("Skipping malformed session entry '%s': %s", key, exc)
        return sessions

    def _write_locked(self) -> None:
        tmp_name: Optional[str] = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            payload = {key: record.to_dict() for key, record in (self._cache or {}).items()}
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                dir=str(self.path.parent),
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            os.replace(tmp_name, self.path)
            tmp_name = None
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Failed to write session store %s: %s", self.path, exc)
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
