"""
Streams agent output into a single reply post in a chat thread.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Dict, List, Optional

from relay.logging import get_logger

logger = get_logger(__name__)

TOOL_ICONS = {
    "Bash": "\N{WRENCH}",
    "Read": "\N{OPEN BOOK}",
    "WebFetch": "\N{GLOBE WITH MERIDIANS}",
    "WebSearch": "\N{GLOBE WITH MERIDIANS}",
    "Edit": "\N{PENCIL}",
    "Write": "\N{MEMO}",
    "Glob": "\N{LEFT-POINTING MAGNIFYING GLASS}",
    "Grep": "\N{LEFT-POINTING MAGNIFYING GLASS}",
}
DEFAULT_TOOL_ICON = "\N{GEAR}"


def format_tool_use(tool_use: Dict[str, Any]) -> str:
    name = str(tool_use.get("name") or "tool")
    icon = TOOL_ICONS.get(name, DEFAULT_TOOL_ICON)
    tool_input = tool_use.get("input") if isinstance(tool_use.get("input"), dict) else {}
    detail = (
        tool_input.get("command")
        or tool_input.get("file_path")
        or tool_input.get("pattern")
        or tool_input.get("url")
        or tool_input.get("query")
    )
    if detail:
        return f"{icon} `{name}`: `{str(detail)[:120]}`"
    return f"{icon} `{name}`"


class StreamingResponse:
    """
    Reply post lifecycle for one agent turn.

    The first text segment creates the reply post; later segments edit it,
    debounced so a burst of segments costs one update. A typing indicator is
    refreshed until the first segment arrives.
    """

    def __init__(
        self,
        chat_client: Any,
        channel_id: str,
        thread_id: str,
        *,
        debounce_seconds: float = 0.3,
        typing_interval: float = 3.0,
    ) -> None:
        self.chat_client = chat_client
        self.channel_id = channel_id
        self.thread_id = thread_id
        self.debounce_seconds = float(debounce_seconds)
        self.typing_interval = float(typing_interval)

        self._lock = threading.Lock()
        self._segments: List[str] = []
        self._reply_post_id: Optional[str] = None
        self._create_failed = False
        self._last_update_at = 0.0
        self._debounce_timer: Optional[threading.Timer] = None
        self._typing_stop = threading.Event()
        self._typing_thread: Optional[threading.Thread] = None

    @property
    def reply_post_id(self) -> Optional[str]:
        return self._reply_post_id

    @property
    def full_text(self) -> str:
        with self._lock:
            return "\n\n".join(self._segments)

    def start_typing(self) -> None:
        self._typing_thread = threading.Thread(
            target=self._typing_loop,
            daemon=True,
            name=f"Typing-{self.thread_id[:8]}",
        )
        self._typing_thread.start()

    def stop_typing(self) -> None:
        self._typing_stop.set()

    def on_text(self, text: str) -> None:
        try:
            with self._lock:
                self._segments.append(str(text))
                self.stop_typing()
                if self._create_failed:
                    return
                if self._reply_post_id is None:
                    self._create_reply_locked()
                else:
                    self._schedule_update_locked()
        except Exception:
            logger.exception("Streaming error in thread %s", self.thread_id[:8])

    def on_tool_use(self, tool_use: Dict[str, Any]) -> None:
        self.on_text(format_tool_use(tool_use if isinstance(tool_use, dict) else {}))

    def on_complete(self, _result: Any = None) -> None:
        try:
            with self._lock:
                self.stop_typing()
                if self._debounce_timer is not None:
                    self._debounce_timer.cancel()
                    self._debounce_timer = None
                if self._reply_post_id is not None:
                    self._update_post_locked()
        except Exception:
            logger.exception("Completion error in thread %s", self.thread_id[:8])

    def _typing_loop(self) -> None:
        while not self._typing_stop.is_set():
            try:
                self.chat_client.send_typing(self.channel_id, parent_id=self.thread_id)
            except Exception as exc:
                logger.warning("Typing indicator failed in thread %s: %s", self.thread_id[:8], exc)
                return
            self._typing_stop.wait(self.typing_interval)

    def _create_reply_locked(self) -> None:
        post = self.chat_client.create_post(
            self.channel_id,
            "\n\n".join(self._segments),
            root_id=self.thread_id,
        )
        post_id = (post or {}).get("id")
        if not post_id:
            self._create_failed = True
            logger.error(
                "Failed to create reply in thread %s; further output is dropped",
                self.thread_id[:8],
            )
            return
        self._reply_post_id = str(post_id)
        self._last_update_at = time.monotonic()

    def _schedule_update_locked(self) -> None:
        elapsed = time.monotonic() - self._last_update_at
        if elapsed >= self.debounce_seconds:
            self._update_post_locked()
            return
        if self._debounce_timer is None:
            self._debounce_timer = threading.Timer(
                self.debounce_seconds - elapsed,
                self._flush_debounced,
            )
            self._debounce_timer.daemon = True
            self._debounce_timer.start()

    def _flush_debounced(self) -> None:
        with self._lock:
            if self._debounce_timer is None:
                return
            self._update_post_locked()

    def _update_post_locked(self) -> None:
        self._debounce_timer = None
        self.chat_client.update_post(self._reply_post_id, "\n\n".join(self._segments))
        self._last_update_at = time.monotonic()
