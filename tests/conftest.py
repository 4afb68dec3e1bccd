"""
Shared pytest fixtures for Relay tests.

Provides fake collaborators (clock, chat client, agent sessions) and a helper
for writing heartbeat definition files.
"""

import itertools
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest
import yaml


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.current = start
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self.current

    def advance(self, **kwargs) -> datetime:
        with self._lock:
            self.current = self.current + timedelta(**kwargs)
            return self.current


class FakeChatClient:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.posts: List[Dict[str, Any]] = []
        self.updates: List[Dict[str, Any]] = []
        self.typing: List[Dict[str, Any]] = []
        self.fail_create = False

    def create_post(self, channel_id: str, message: str, root_id: Optional[str] = None):
        with self._lock:
            if self.fail_create:
                return None
            post = {
                "id": f"post-{next(self._ids)}",
                "channel_id": channel_id,
                "message": message,
                "root_id": root_id,
            }
            self.posts.append(post)
            return dict(post)

    def update_post(self, post_id: str, message: str):
        with self._lock:
            self.updates.append({"post_id": post_id, "message": message})
            return {"id": post_id}

    def send_typing(self, channel_id: str, parent_id: Optional[str] = None) -> None:
        with self._lock:
            self.typing.append({"channel_id": channel_id, "parent_id": parent_id})


_session_ids = itertools.count(1)


class FakeSession:
    """
    Agent session double. With ``auto_complete`` the reply and completion are
    delivered from ``send_message``; otherwise the test calls ``finish()``.
    """

    def __init__(
        self,
        *,
        session_id: Optional[str] = None,
        auto_complete: bool = True,
        reply_text: str = "All quiet.",
    ) -> None:
        self.session_id = session_id or f"sess-{next(_session_ids)}"
        self.auto_complete = auto_complete
        self.reply_text = reply_text
        self.process_pid = None
        self.started = False
        self.killed = False
        self.messages: List[str] = []
        self.message_received = threading.Event()
        self._on_text: Optional[Callable[[str], None]] = None
        self._on_tool_use: Optional[Callable[[Dict[str, Any]], None]] = None
        self._on_complete: Optional[Callable[[Any], None]] = None

    def on_text(self, callback) -> None:
        self._on_text = callback

    def on_tool_use(self, callback) -> None:
        self._on_tool_use = callback

    def on_complete(self, callback) -> None:
        self._on_complete = callback

    def start(self) -> None:
        self.started = True

    def send_message(self, text: str) -> bool:
        self.messages.append(text)
        self.message_received.set()
        if self.auto_complete:
            self.finish()
        return True

    def finish(self) -> None:
        if self._on_text is not None:
            self._on_text(self.reply_text)
        if self._on_complete is not None:
            self._on_complete({"type": "result"})

    def kill(self) -> None:
        self.killed = True


class FakeSessionFactory:
    def __init__(self, *, auto_complete: bool = True) -> None:
        self.auto_complete = auto_complete
        self.error: Optional[BaseException] = None
        self.calls: List[Dict[str, Any]] = []
        self.sessions: List[FakeSession] = []
        self.created = threading.Event()
        self._lock = threading.Lock()

    def __call__(self, **kwargs) -> FakeSession:
        with self._lock:
            self.calls.append(dict(kwargs))
            if self.error is not None:
                raise self.error
            session = FakeSession(
                session_id=kwargs.get("session_id"),
                auto_complete=self.auto_complete,
            )
            self.sessions.append(session)
        self.created.set()
        return session


def _write_heartbeats(path: Path, entries: Dict[str, Any]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump({"heartbeats": entries}, sort_keys=False), encoding="utf-8")
    return path


def _heartbeat_entry(**overrides: Any) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "description": "Check the inbox",
        "schedule": {"interval": 60},
        "channel_id": "chan-1",
        "prompt": "Anything new?",
        "permission_mode": "auto",
        "timeout": 5,
    }
    entry.update(overrides)
    return entry


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 2, 13, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def chat() -> FakeChatClient:
    return FakeChatClient()


@pytest.fixture
def session_factory() -> FakeSessionFactory:
    return FakeSessionFactory()


@pytest.fixture
def heartbeats_path(tmp_path: Path) -> Path:
    return tmp_path / "config" / "heartbeats.yml"


@pytest.fixture
def make_entry() -> Callable[..., Dict[str, Any]]:
    """Build a raw heartbeat entry; keyword arguments override defaults."""
    return _heartbeat_entry


@pytest.fixture
def write_heartbeats(heartbeats_path: Path) -> Callable[[Dict[str, Any]], Path]:
    """Write ``{"heartbeats": entries}`` to the test definitions file."""

    def _write(entries: Dict[str, Any]) -> Path:
        return _write_heartbeats(heartbeats_path, entries)

    return _write
