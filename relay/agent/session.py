"""
Agent session wrapper.

``BaseAgentSession`` is the contract the heartbeat scheduler drives;
``ClaudeSession`` implements it over the ``claude`` CLI in stream-json mode.
"""

from __future__ import annotations

import json
import os
import subprocess
import tempfile
import threading
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from relay.logging import get_logger

logger = get_logger(__name__)

PERMISSION_SERVER_ENV_VAR = "RELAY_PERMISSION_SERVER"
DEFAULT_PERMISSION_SERVER = "relay-permission-server"

TextCallback = Callable[[str], None]
ToolUseCallback = Callable[[Dict[str, Any]], None]
CompleteCallback = Callable[[Any], None]


class BaseAgentSession(ABC):
    """
    Abstract agent session with text, tool-use and completion callbacks.
    """

    def __init__(self, session_id: Optional[str] = None) -> None:
        self.session_id = session_id or str(uuid.uuid4())
        self._on_text: Optional[TextCallback] = None
        self._on_tool_use: Optional[ToolUseCallback] = None
        self._on_complete: Optional[CompleteCallback] = None

    def on_text(self, callback: TextCallback) -> None:
        self._on_text = callback

    def on_tool_use(self, callback: ToolUseCallback) -> None:
        self._on_tool_use = callback

    def on_complete(self, callback: CompleteCallback) -> None:
        self._on_complete = callback

    @property
    def process_pid(self) -> Optional[int]:
        return None

    @abstractmethod
    def start(self) -> None:
        """Launch the underlying agent."""

    @abstractmethod
    def send_message(self, text: str) -> bool:
        """Send one user message; returns False when the agent is not running."""

    @abstractmethod
    def kill(self) -> None:
        """Forcibly terminate the agent."""

    def _emit_text(self, text: str) -> None:
        if self._on_text is not None:
            self._on_text(text)

    def _emit_tool_use(self, tool_use: Dict[str, Any]) -> None:
        if self._on_tool_use is not None:
            self._on_tool_use(tool_use)

    def _emit_complete(self, result: Any) -> None:
        if self._on_complete is not None:
            self._on_complete(result)


class ClaudeSession(BaseAgentSession):
    """
    One ``claude`` CLI subprocess speaking stream-json on stdin/stdout.
    """

    def __init__(
        self,
        *,
        session_id: Optional[str] = None,
        resume: bool = False,
        working_dir: Optional[str | Path] = None,
        permission_config: Optional[Mapping[str, str]] = None,
        executable: str = "claude",
    ) -> None:
        super().__init__(session_id)
        self.resume = bool(resume)
        self.working_dir = Path(working_dir) if working_dir else None
        self.permission_config = dict(permission_config) if permission_config else None
        self.executable = executable
        self._process: Optional[subprocess.Popen[bytes]] = None
        self._write_lock = threading.Lock()
        self._reader_threads: List[threading.Thread] = []
        self._mcp_config_path: Optional[Path] = None

    @property
    def process_pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def build_command(self) -> List[str]:
        args = [
            self.executable,
            "--input-format", "stream-json",
            "--output-format", "stream-json",
            "--verbose",
        ]
        if self.resume:
            args += ["--resume", self.session_id]
        else:
            args += ["--session-id", self.session_id]
        if self.permission_config is None:
            args.append("--dangerously-skip-permissions")
        else:
            args += [
                "--permission-prompt-tool", "mcp__relay__permission_prompt",
                "--mcp-config", str(self._write_mcp_config()),
            ]
        return args

    def start(self) -> None:
        if self.is_running():
            return
        env = os.environ.copy()
        env.pop("TMUX", None)
        env.pop("TMUX_PANE", None)
        logger.info(
            "Spawning agent session %s (resume with: claude --resume %s)",
            self.session_id,
            self.session_id,
        )
        self._process = subprocess.Popen(
            self.build_command(),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=str(self.working_dir) if self.working_dir else None,
            env=env,
        )
        self._reader_threads = [
            threading.Thread(target=self._read_stdout, daemon=True, name=f"AgentOut-{self.session_id[:8]}"),
            threading.Thread(target=self._read_stderr, daemon=True, name=f"AgentErr-{self.session_id[:8]}"),
        ]
        for thread in self._reader_threads:
            thread.start()

    def send_message(self, text: str) -> bool:
        proc = self._process
        if proc is None or proc.stdin is None or proc.poll() is not None:
            logger.warning("Cannot send message to session %s: process not running", self.session_id[:8])
            return False
        payload = {"type": "user", "message": {"role": "user", "content": text}}
        data = (json.dumps(payload) + "\n").encode("utf-8")
        with self._write_lock:
            try:
                proc.stdin.write(data)
                proc.stdin.flush()
            except (BrokenPipeError, OSError, ValueError) as exc:
                logger.error("Failed to write to session %s: %s", self.session_id[:8], exc)
                return False
        return True

    def kill(self) -> None:
        proc = self._process
        if proc is None:
            return
        logger.info("Killing agent session %s (pid=%s)", self.session_id[:8], proc.pid)
        try:
            if proc.poll() is None:
                proc.terminate()
                try:
                    proc.wait(timeout=3)
                except subprocess.TimeoutExpired:
                    proc.kill()
        except OSError:
            logger.exception("Failed to terminate agent session %s", self.session_id[:8])
        finally:
            if proc.stdin is not None:
                try:
                    proc.stdin.close()
                except OSError:
                    pass
            self._cleanup_mcp_config()

    def handle_event(self, event: Dict[str, Any]) -> None:
        """Dispatch one decoded stream-json event to the registered callbacks."""
        event_type = event.get("type")
        if event_type == "assistant":
            content = (event.get("message") or {}).get("content")
            if not isinstance(content, list):
                return
            text = "".join(
                str(item.get("text") or "")
                for item in content
                if isinstance(item, dict) and item.get("type") == "text"
            )
            if text:
                self._emit_text(text)
            for item in content:
                if isinstance(item, dict) and item.get("type") == "tool_use":
                    self._emit_tool_use(
                        {"id": item.get("id"), "name": item.get("name"), "input": item.get("input")}
                    )
        elif event_type == "result":
            logger.info(
                "Agent session %s turn complete (cost=%s)",
                self.session_id[:8],
                event.get("total_cost_usd"),
            )
            self._emit_complete(event)
        elif event_type == "system":
            logger.debug("Agent session %s system event: %s", self.session_id[:8], event.get("subtype"))

    def _read_stdout(self) -> None:
        proc = self._process
        if proc is None or proc.stdout is None:
            return
        for raw_line in proc.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Unparsable agent output (session %s): %s", self.session_id[:8], line[:200])
                continue
            if not isinstance(event, dict):
                continue
            try:
                self.handle_event(event)
            except Exception:
                logger.exception("Agent event handler failed (session %s)", self.session_id[:8])

    def _read_stderr(self) -> None:
        proc = self._process
        if proc is None or proc.stderr is None:
            return
        for raw_line in proc.stderr:
            logger.debug("Agent stderr: %s", raw_line.decode("utf-8", errors="replace").rstrip())

    def _write_mcp_config(self) -> Path:
        if self._mcp_config_path is not None:
            return self._mcp_config_path
        config = {
            "mcpServers": {
                "relay": {
                    "command": os.environ.get(PERMISSION_SERVER_ENV_VAR, DEFAULT_PERMISSION_SERVER),
                    "args": [],
                    "env": dict(self.permission_config or {}),
                }
            }
        }
        # mkstemp creates the file with 0600 permissions; the env carries the bot token.
        fd, name = tempfile.mkstemp(prefix=f"relay-mcp-{self.session_id[:8]}-", suffix=".json")
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(config, handle)
        self._mcp_config_path = Path(name)
        return self._mcp_config_path

    def _cleanup_mcp_config(self) -> None:
        path = self._mcp_config_path
        self._mcp_config_path = None
        if path is not None:
            try:
                path.unlink()
            except FileNotFoundError:
                pass


def create_claude_session(
    *,
    working_dir: Optional[str | Path] = None,
    permission_config: Optional[Mapping[str, str]] = None,
    session_id: Optional[str] = None,
    resume: bool = False,
) -> ClaudeSession:
    """Session factory with the signature the heartbeat scheduler expects."""
    return ClaudeSession(
        session_id=session_id,
        resume=resume,
        working_dir=working_dir,
        permission_config=permission_config,
    )
