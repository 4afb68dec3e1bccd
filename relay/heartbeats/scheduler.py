"""
Heartbeat scheduler service.

Runs heartbeat prompts on cron, interval or one-shot schedules. Each due
heartbeat gets its own thread that announces the run in its chat channel,
drives an agent session until it completes or times out, and then computes
the next run. The definitions file is reloaded whenever its mtime changes.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from relay.chat.streaming import StreamingResponse
from relay.config import PlatformConfig
from relay.logging import format_exception_summary, get_logger

from .config import HeartbeatConfig
from .models import HeartbeatDefinition, HeartbeatState

logger = get_logger(__name__)

HEARTBEAT_MARKER = "\N{ANATOMICAL HEART}"
DEFAULT_TICK_SECONDS = 30.0
DEFAULT_POLL_INTERVAL = 1.0


def _local_now() -> datetime:
    return datetime.now().astimezone()


class HeartbeatScheduler:
    """
    Dispatches heartbeats from a background loop thread.

    Each heartbeat is either Idle or Running. ``should_run`` is the only gate
    from Idle to Running, and ``finalize_heartbeat`` always returns a run to
    Idle, so one heartbeat never overlaps itself while distinct heartbeats run
    in parallel. All state-map access goes through ``self._lock``.
    """

    def __init__(
        self,
        heartbeat_config: HeartbeatConfig,
        chat_client: Any,
        session_factory: Callable[..., Any],
        *,
        platform_config: Optional[PlatformConfig] = None,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.heartbeat_config = heartbeat_config
        self.chat_client = chat_client
        self.session_factory = session_factory
        self.platform_config = platform_config
        self.tick_seconds = max(0.01, float(tick_seconds))
        self.poll_interval = max(0.001, float(poll_interval))
        self.now_fn = now_fn or _local_now

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._states: Dict[str, HeartbeatState] = {}
        self._config_mtime: Optional[float] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> threading.Thread:
        """
        Build the initial state map and start the loop thread.

        The loop starts even with zero definitions so later edits to the
        definitions file are picked up.
        """
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return self._thread

        definitions = self.heartbeat_config.definitions()
        now = self.now_fn()
        with self._lock:
            self._config_mtime = self.heartbeat_config.mtime()
            for definition in definitions:
                if definition.name not in self._states:
                    self._states[definition.name] = self._build_state(definition, now)
            # A loop left over from a timed-out stop keeps its own, already set, event.
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._loop,
                args=(self._stop_event,),
                daemon=True,
                name="HeartbeatScheduler",
            )
            self._thread.start()
            thread = self._thread

        logger.info("Heartbeat scheduler starting with %d heartbeat(s)", len(definitions))
        return thread

    def stop(self, *, join_timeout_s: float = 1.0) -> None:
        """
        Stop the loop and forcibly cancel every running heartbeat.

        In-flight sessions are killed, not drained.
        """
        with self._lock:
            self._stop_event.set()
            thread = self._thread
            self._thread = None
            running = [state for state in self._states.values() if state.running]
            for state in running:
                if state.cancel_event is not None:
                    state.cancel_event.set()
                state.run_thread = None
            sessions = [(state.name, state.session) for state in running]

        for name, session in sessions:
            if session is None:
                continue
            try:
                session.kill()
            except Exception:
                logger.exception("Failed to kill session for heartbeat '%s'", name)

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(0.0, float(join_timeout_s)))
        logger.info("Heartbeat scheduler stopped")

    def tick(self, now: Optional[datetime] = None) -> None:
        """
        Run one scheduler pass: reload changed definitions, then dispatch.
        """
        self.check_for_reload()
        self.check_and_dispatch(now)

    def status(self) -> List[Dict[str, Any]]:
        """Return a snapshot per tracked heartbeat, sorted by name."""
        with self._lock:
            return [self._states[name].to_status() for name in sorted(self._states)]

    def state_for(self, name: str) -> Optional[HeartbeatState]:
        with self._lock:
            return self._states.get(name)

    def wait_until_idle(self, *, timeout_s: float = 5.0) -> bool:
        """
        Wait until no heartbeat is running.
        """
        deadline = time.monotonic() + max(0.0, float(timeout_s))
        while True:
            with self._lock:
                running = any(state.running for state in self._states.values())
            if not running:
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)

    def _loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Heartbeat scheduler tick failed")
            stop_event.wait(self.tick_seconds)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    @staticmethod
    def should_run(state: HeartbeatState, now: datetime) -> bool:
        return (
            not state.running
            and state.next_run_at is not None
            and now >= state.next_run_at
        )

    def check_and_dispatch(self, now: Optional[datetime] = None) -> List[str]:
        """
        Dispatch every due, idle heartbeat.

        Returns:
            Names of the heartbeats dispatched by this call.
        """
        current = now or self.now_fn()
        dispatched: List[str] = []
        with self._lock:
            for state in self._states.values():
                if self.should_run(state, current):
                    self._dispatch_heartbeat_locked(state, current)
                    dispatched.append(state.name)
        return dispatched

    def dispatch_heartbeat(self, state: HeartbeatState, now: datetime) -> None:
        """Mark ``state`` Running and start its execution thread."""
        with self._lock:
            self._dispatch_heartbeat_locked(state, now)

    def _dispatch_heartbeat_locked(self, state: HeartbeatState, now: datetime) -> None:
        thread = threading.Thread(
            target=self.execute_heartbeat,
            args=(state,),
            daemon=True,
            name=f"Heartbeat-{state.name}",
        )
        state.mark_dispatched(now, thread)
        thread.start()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_heartbeat(self, state: HeartbeatState) -> None:
        """
        Run one heartbeat to completion on the calling thread.

        Never raises; failures land in ``last_error`` and the run is always
        finalized.
        """
        with self._lock:
            definition = state.definition
            cancel_event = state.cancel_event
        logger.info("Heartbeat '%s' starting", definition.name)
        try:
            thread_id = self._post_header(definition)
            if thread_id is None:
                logger.warning(
                    "Heartbeat '%s' skipped: could not post announcement to channel %s",
                    definition.name,
                    definition.channel_id,
                )
                with self._lock:
                    state.last_error = "Failed to post heartbeat announcement"
                return
            self._run_session(state, definition, thread_id, cancel_event)
        except Exception as exc:
            logger.exception("Heartbeat '%s' failed", definition.name)
            with self._lock:
                state.last_error = format_exception_summary(exc)
        finally:
            self.finalize_heartbeat(state)

    def _post_header(self, definition: HeartbeatDefinition) -> Optional[str]:
        post = self.chat_client.create_post(
            definition.channel_id,
            f"{HEARTBEAT_MARKER} **{definition.description}**",
        )
        post_id = (post or {}).get("id")
        return str(post_id) if post_id else None

    def _run_session(
        self,
        state: HeartbeatState,
        definition: HeartbeatDefinition,
        thread_id: str,
        cancel_event: Optional[threading.Event],
    ) -> None:
        session = self._build_session(state, definition)
        with self._lock:
            state.session = session

        completed = threading.Event()
        response = StreamingResponse(self.chat_client, definition.channel_id, thread_id)

        def _on_complete(result: Any) -> None:
            response.on_complete(result)
            completed.set()

        session.on_text(response.on_text)
        session.on_tool_use(response.on_tool_use)
        session.on_complete(_on_complete)

        response.start_typing()
        try:
            session.start()
            session.send_message(definition.prompt)
            finished = self.wait_for_completion(
                session,
                completed.is_set,
                definition.timeout,
                cancel_event=cancel_event,
            )
        finally:
            response.stop_typing()

        if finished:
            logger.info("Heartbeat '%s' completed (run #%d)", definition.name, state.run_count + 1)
        elif cancel_event is not None and cancel_event.is_set():
            logger.info("Heartbeat '%s' cancelled", definition.name)
        else:
            with self._lock:
                state.last_error = f"Timed out after {definition.timeout:g}s"

    def _build_session(self, state: HeartbeatState, definition: HeartbeatDefinition) -> Any:
        with self._lock:
            saved_session_id = state.session_id if definition.persistent else None

        session = self.session_factory(
            working_dir=definition.working_dir,
            permission_config=self.permission_config_for(definition),
            session_id=saved_session_id,
            resume=saved_session_id is not None,
        )
        if definition.persistent:
            with self._lock:
                state.session_id = session.session_id
        return session

    def permission_config_for(self, definition: HeartbeatDefinition) -> Optional[Dict[str, str]]:
        """
        None for ``auto`` heartbeats, otherwise the environment that lets the
        agent route permission prompts through the chat channel.
        """
        if definition.auto_permission or self.platform_config is None:
            return None
        return self.platform_config.permission_env(channel_id=definition.channel_id)

    def wait_for_completion(
        self,
        session: Any,
        predicate: Callable[[], bool],
        timeout: float,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> bool:
        """
        Poll ``predicate`` until it holds, the timeout elapses or the run is
        cancelled. Timeout and cancellation kill the session.

        Returns:
            True when the predicate became true.
        """
        deadline = time.monotonic() + float(timeout)
        while not predicate():
            if cancel_event is not None and cancel_event.is_set():
                session.kill()
                return False
            if time.monotonic() >= deadline:
                logger.warning("Heartbeat session timed out after %ss", timeout)
                session.kill()
                return False
            if cancel_event is not None:
                cancel_event.wait(self.poll_interval)
            else:
                time.sleep(self.poll_interval)
        return True

    def finalize_heartbeat(self, state: HeartbeatState) -> None:
        """
        Return ``state`` to Idle and schedule its next run.

        One-shot heartbeats get no next run and are disabled in the
        definitions file so they stay off across restarts.
        """
        now = self.now_fn()
        with self._lock:
            definition = state.definition
            next_run = None if definition.once else self.compute_next_run(definition, now)
            state.mark_completed(now, next_run)

        if definition.once:
            self.heartbeat_config.disable(definition.name)

    @staticmethod
    def compute_next_run(definition: HeartbeatDefinition, now: datetime) -> Optional[datetime]:
        return definition.schedule.next_run(now)

    # ------------------------------------------------------------------
    # Hot reload
    # ------------------------------------------------------------------

    def check_for_reload(self) -> bool:
        """
        Reload definitions when the definitions file mtime changed.

        Returns:
            True when a reload happened.
        """
        mtime = self.heartbeat_config.mtime()
        with self._lock:
            if mtime == self._config_mtime:
                return False
            self._config_mtime = mtime
        self.reload_definitions()
        return True

    def reload_definitions(self) -> None:
        """
        Apply the current definitions file to the state map.

        Running heartbeats are never touched; idle ones pick up their new
        definition with counters preserved; new names get fresh states;
        vanished idle names are dropped.
        """
        definitions = self.heartbeat_config.definitions()
        now = self.now_fn()
        with self._lock:
            self._apply_definitions_locked(definitions, now)
        logger.info("Heartbeat config reloaded: %d definition(s)", len(definitions))

    def _apply_definitions_locked(
        self,
        definitions: Iterable[HeartbeatDefinition],
        now: datetime,
    ) -> None:
        new_names = set()
        for definition in definitions:
            name = definition.name
            new_names.add(name)
            state = self._states.get(name)
            if state is None:
                self._states[name] = self._build_state(definition, now)
                logger.info("Heartbeat reload: added '%s'", name)
            elif state.definition != definition:
                previous_schedule = state.definition.schedule
                if not state.update_definition_if_idle(definition):
                    continue
                if definition.schedule != previous_schedule:
                    state.next_run_at = self.compute_next_run(definition, now)
                logger.info("Heartbeat reload: updated '%s'", name)

        for name in list(self._states):
            if name in new_names or self._states[name].running:
                continue
            del self._states[name]
            logger.info("Heartbeat reload: removed '%s'", name)

    def _build_state(self, definition: HeartbeatDefinition, now: datetime) -> HeartbeatState:
        return HeartbeatState(
            definition=definition,
            next_run_at=self.compute_next_run(definition, now),
        )
