from __future__ import annotations

import os
import threading
import time
from datetime import timedelta

import pytest

from relay.config import PlatformConfig
from relay.heartbeats import (
    HeartbeatConfig,
    HeartbeatScheduler,
    HeartbeatState,
    IntervalSchedule,
    build_definition,
)
from relay.heartbeats.scheduler import HEARTBEAT_MARKER


def _scheduler(heartbeats_path, chat, session_factory, clock, **kwargs) -> HeartbeatScheduler:
    options = {"tick_seconds": 3600, "poll_interval": 0.01, "now_fn": clock.now}
    options.update(kwargs)
    return HeartbeatScheduler(HeartbeatConfig(heartbeats_path), chat, session_factory, **options)


def _run_once(scheduler: HeartbeatScheduler, clock, seconds: int = 60) -> None:
    clock.advance(seconds=seconds)
    scheduler.check_and_dispatch()
    assert scheduler.wait_until_idle(timeout_s=2.0)


def test_initial_state_schedules_from_now(heartbeats_path, chat, session_factory, clock, write_heartbeats, make_entry) -> None:
    write_heartbeats({"inbox": make_entry()})
    scheduler = _scheduler(heartbeats_path, chat, session_factory, clock)
    scheduler.reload_definitions()

    state = scheduler.state_for("inbox")
    assert state is not None
    assert state.running is False
    assert state.run_count == 0
    assert state.next_run_at == clock.now() + timedelta(seconds=60)


def test_should_run_requires_idle_and_due(clock, make_entry) -> None:
    definition = build_definition("inbox", make_entry())
    state = HeartbeatState(definition=definition, next_run_at=clock.now())

    assert HeartbeatScheduler.should_run(state, clock.now()) is True
    assert HeartbeatScheduler.should_run(state, clock.now() - timedelta(seconds=1)) is False

    state.running = True
    assert HeartbeatScheduler.should_run(state, clock.now()) is False

    state.running = False
    state.next_run_at = None
    assert HeartbeatScheduler.should_run(state, clock.now()) is False


def test_nothing_dispatched_before_due(heartbeats_path, chat, session_factory, clock, write_heartbeats, make_entry) -> None:
    write_heartbeats({"inbox": make_entry()})
    scheduler = _scheduler(heartbeats_path, chat, session_factory, clock)
    scheduler.reload_definitions()

    assert scheduler.check_and_dispatch() == []
    assert chat.posts == []


def test_due_heartbeat_runs_session_and_reschedules(heartbeats_path, chat, session_factory, clock, write_heartbeats, make_entry) -> None:
    write_heartbeats({"inbox": make_entry()})
    scheduler = _scheduler(heartbeats_path, chat, session_factory, clock)
    scheduler.reload_definitions()

    dispatched_at = clock.advance(seconds=60)
    assert scheduler.check_and_dispatch() == ["inbox"]
    assert scheduler.wait_until_idle(timeout_s=2.0)

    state = scheduler.state_for("inbox")
    assert state.running is False
    assert state.run_count == 1
    assert state.last_error is None
    assert state.last_run_at == dispatched_at
    assert state.last_completed_at == dispatched_at
    assert state.next_run_at == dispatched_at + timedelta(seconds=60)
    assert state.run_thread is None
    assert state.session is None

    header, reply = chat.posts[0], chat.posts[1]
    assert header["channel_id"] == "chan-1"
    assert header["message"] == f"{HEARTBEAT_MARKER} **Check the inbox**"
    assert header["root_id"] is None
    assert reply["root_id"] == header["id"]
    assert reply["message"] == "All quiet."

    session = session_factory.sessions[0]
    assert session.started is True
    assert session.messages == ["Anything new?"]
    assert session_factory.calls == [
        {"working_dir": None, "permission_config": None, "session_id": None, "resume": False}
    ]


def test_running_heartbeat_is_not_redispatched(heartbeats_path, chat, session_factory, clock, write_heartbeats, make_entry) -> None:
    write_heartbeats({"inbox": make_entry()})
    session_factory.auto_complete = False
    scheduler = _scheduler(heartbeats_path, chat, session_factory, clock)
    scheduler.reload_definitions()

    try:
        clock.advance(seconds=60)
        assert scheduler.check_and_dispatch() == ["inbox"]
        assert session_factory.created.wait(2.0)
        session = session_factory.sessions[0]
        assert session.message_received.wait(2.0)

        clock.advance(minutes=10)
        assert scheduler.check_and_dispatch() == []
        assert scheduler.state_for("inbox").running is True

        session.finish()
        assert scheduler.wait_until_idle(timeout_s=2.0)
        assert scheduler.state_for("inbox").run_count == 1
        assert len(session_factory.sessions) == 1
    finally:
        scheduler.stop()


def test_distinct_heartbeats_run_in_parallel(heartbeats_path, chat, session_factory, clock, write_heartbeats, make_entry) -> None:
    write_heartbeats({"alpha": make_entry(), "beta": make_entry(channel_id="chan-2")})
    session_factory.auto_complete = False
    scheduler = _scheduler(heartbeats_path, chat, session_factory, clock)
    scheduler.reload_definitions()

    try:
        clock.advance(seconds=60)
        assert sorted(scheduler.check_and_dispatch()) == ["alpha", "beta"]
        statuses = scheduler.status()
        assert [item["name"] for item in statuses] == ["alpha", "beta"]
        assert all(item["running"] for item in statuses)
    finally:
        scheduler.stop()
    assert scheduler.wait_until_idle(timeout_s=2.0)


def test_failed_announcement_finalizes_without_session(heartbeats_path, chat, session_factory, clock, write_heartbeats, make_entry) -> None:
    write_heartbeats({"inbox": make_entry()})
    chat.fail_create = True
    scheduler = _scheduler(heartbeats_path, chat, session_factory, clock)
    scheduler.reload_definitions()

    _run_once(scheduler, clock)

    state = scheduler.state_for("inbox")
    assert state.last_error == "Failed to post heartbeat announcement"
    assert state.run_count == 1
    assert state.next_run_at == clock.now() + timedelta(seconds=60)
    assert session_factory.calls == []


def test_session_error_is_recorded_and_finalized(heartbeats_path, chat, session_factory, clock, write_heartbeats, make_entry) -> None:
    write_heartbeats({"inbox": make_entry()})
    session_factory.error = RuntimeError("claude not found")
    scheduler = _scheduler(heartbeats_path, chat, session_factory, clock)
    scheduler.reload_definitions()

    _run_once(scheduler, clock)

    state = scheduler.state_for("inbox")
    assert state.running is False
    assert state.run_count == 1
    assert state.last_error == "RuntimeError: claude not found"


def test_next_dispatch_clears_previous_error(heartbeats_path, chat, session_factory, clock, write_heartbeats, make_entry) -> None:
    write_heartbeats({"inbox": make_entry()})
    session_factory.error = RuntimeError("boom")
    scheduler = _scheduler(heartbeats_path, chat, session_factory, clock)
    scheduler.reload_definitions()

    _run_once(scheduler, clock)
    assert scheduler.state_for("inbox").last_error is not None

    session_factory.error = None
    _run_once(scheduler, clock)
    state = scheduler.state_for("inbox")
    assert state.last_error is None
    assert state.run_count == 2


def test_timeout_kills_session(heartbeats_path, chat, session_factory, clock, write_heartbeats, make_entry) -> None:
    write_heartbeats({"inbox": make_entry(timeout=0.05)})
    session_factory.auto_complete = False
    scheduler = _scheduler(heartbeats_path, chat, session_factory, clock)
    scheduler.reload_definitions()

    _run_once(scheduler, clock)

    state = scheduler.state_for("inbox")
    assert session_factory.sessions[0].killed is True
    assert state.last_error == "Timed out after 0.05s"
    assert state.running is False
    assert state.next_run_at is not None


def test_one_shot_runs_once_and_disables_itself(heartbeats_path, chat, session_factory, clock, write_heartbeats, make_entry) -> None:
    write_heartbeats(
        {"reminder": make_entry(schedule={"run_at": "2026-02-13T11:00:00+00:00"}, once=True)}
    )
    scheduler = _scheduler(heartbeats_path, chat, session_factory, clock)
    scheduler.reload_definitions()

    # Missed one-shots fire immediately.
    assert scheduler.state_for("reminder").next_run_at == clock.now()
    assert scheduler.check_and_dispatch() == ["reminder"]
    run_thread = scheduler.state_for("reminder").run_thread
    run_thread.join(timeout=2.0)
    assert not run_thread.is_alive()

    state = scheduler.state_for("reminder")
    assert state.run_count == 1
    assert state.next_run_at is None
    clock.advance(days=1)
    assert scheduler.check_and_dispatch() == []

    config = HeartbeatConfig(heartbeats_path)
    assert config.load_raw()["reminder"]["enabled"] is False
    assert config.definitions() == []

    scheduler.reload_definitions()
    assert scheduler.state_for("reminder") is None


def _bump_mtime(path, seconds: int) -> None:
    stamp = path.stat().st_mtime + seconds
    os.utime(path, (stamp, stamp))


def test_reload_leaves_running_heartbeat_untouched(heartbeats_path, chat, session_factory, clock, write_heartbeats, make_entry) -> None:
    write_heartbeats({"inbox": make_entry()})
    session_factory.auto_complete = False
    scheduler = _scheduler(heartbeats_path, chat, session_factory, clock)
    assert scheduler.check_for_reload() is True

    try:
        clock.advance(seconds=60)
        scheduler.check_and_dispatch()
        assert session_factory.created.wait(2.0)
        session = session_factory.sessions[0]
        assert session.message_received.wait(2.0)

        write_heartbeats({"inbox": make_entry(prompt="Changed prompt")})
        _bump_mtime(heartbeats_path, 10)
        assert scheduler.check_for_reload() is True

        state = scheduler.state_for("inbox")
        assert state.running is True
        assert state.run_thread is not None
        assert state.run_count == 0
        assert state.definition.prompt == "Anything new?"

        session.finish()
        assert scheduler.wait_until_idle(timeout_s=2.0)

        # Reloads are driven by the file mtime: an edit applied while the
        # heartbeat was running is only picked up once the file changes again.
        state = scheduler.state_for("inbox")
        assert state.run_count == 1
        assert state.definition.prompt == "Anything new?"
        assert scheduler.check_for_reload() is False

        _bump_mtime(heartbeats_path, 20)
        assert scheduler.check_for_reload() is True
        assert scheduler.state_for("inbox").definition.prompt == "Changed prompt"
    finally:
        scheduler.stop()


def test_reload_updates_idle_schedule_and_keeps_counters(heartbeats_path, chat, session_factory, clock, write_heartbeats, make_entry) -> None:
    write_heartbeats({"inbox": make_entry()})
    scheduler = _scheduler(heartbeats_path, chat, session_factory, clock)
    scheduler.reload_definitions()
    _run_once(scheduler, clock)

    write_heartbeats({"inbox": make_entry(schedule={"interval": 300})})
    scheduler.reload_definitions()

    state = scheduler.state_for("inbox")
    assert state.definition.schedule == IntervalSchedule(seconds=300.0)
    assert state.next_run_at == clock.now() + timedelta(seconds=300)
    assert state.run_count == 1
    assert state.last_run_at is not None


def test_reload_without_schedule_change_keeps_next_run(heartbeats_path, chat, session_factory, clock, write_heartbeats, make_entry) -> None:
    write_heartbeats({"inbox": make_entry()})
    scheduler = _scheduler(heartbeats_path, chat, session_factory, clock)
    scheduler.reload_definitions()
    original_next = scheduler.state_for("inbox").next_run_at

    clock.advance(seconds=30)
    write_heartbeats({"inbox": make_entry(prompt="Different words")})
    scheduler.reload_definitions()

    state = scheduler.state_for("inbox")
    assert state.definition.prompt == "Different words"
    assert state.next_run_at == original_next


def test_reload_adds_and_removes_heartbeats(heartbeats_path, chat, session_factory, clock, write_heartbeats, make_entry) -> None:
    write_heartbeats({"alpha": make_entry(), "beta": make_entry(schedule={"interval": 600})})
    session_factory.auto_complete = False
    scheduler = _scheduler(heartbeats_path, chat, session_factory, clock)
    scheduler.reload_definitions()

    try:
        clock.advance(seconds=60)
        assert scheduler.check_and_dispatch() == ["alpha"]
        assert session_factory.created.wait(2.0)
        session = session_factory.sessions[0]
        assert session.message_received.wait(2.0)

        write_heartbeats({"gamma": make_entry()})
        scheduler.reload_definitions()
        names = [item["name"] for item in scheduler.status()]
        assert names == ["alpha", "gamma"]

        session.finish()
        assert scheduler.wait_until_idle(timeout_s=2.0)
        scheduler.reload_definitions()
        assert [item["name"] for item in scheduler.status()] == ["gamma"]
    finally:
        scheduler.stop()


def test_check_for_reload_follows_file_mtime(heartbeats_path, chat, session_factory, clock, write_heartbeats, make_entry) -> None:
    write_heartbeats({"inbox": make_entry()})
    scheduler = _scheduler(heartbeats_path, chat, session_factory, clock)

    assert scheduler.check_for_reload() is True
    assert scheduler.state_for("inbox") is not None
    assert scheduler.check_for_reload() is False

    write_heartbeats({"inbox": make_entry(), "extra": make_entry()})
    stamp = heartbeats_path.stat().st_mtime + 10
    os.utime(heartbeats_path, (stamp, stamp))

    assert scheduler.check_for_reload() is True
    assert scheduler.state_for("extra") is not None


def test_persistent_heartbeat_resumes_session(heartbeats_path, chat, session_factory, clock, write_heartbeats, make_entry) -> None:
    write_heartbeats({"journal": make_entry(persistent=True)})
    scheduler = _scheduler(heartbeats_path, chat, session_factory, clock)
    scheduler.reload_definitions()

    _run_once(scheduler, clock)
    _run_once(scheduler, clock)

    first_id = session_factory.sessions[0].session_id
    assert session_factory.calls[0]["session_id"] is None
    assert session_factory.calls[0]["resume"] is False
    assert session_factory.calls[1]["session_id"] == first_id
    assert session_factory.calls[1]["resume"] is True
    assert scheduler.state_for("journal").session_id == first_id


def test_non_persistent_heartbeat_starts_fresh(heartbeats_path, chat, session_factory, clock, write_heartbeats, make_entry) -> None:
    write_heartbeats({"inbox": make_entry()})
    scheduler = _scheduler(heartbeats_path, chat, session_factory, clock)
    scheduler.reload_definitions()

    _run_once(scheduler, clock)
    _run_once(scheduler, clock)

    assert [call["resume"] for call in session_factory.calls] == [False, False]
    assert scheduler.state_for("inbox").session_id is None


def test_permission_config_for_modes(heartbeats_path, chat, session_factory, clock, make_entry) -> None:
    platform = PlatformConfig(
        url="https://chat.example.com/",
        bot_token="tok",
        bot_id="bot-1",
        allowed_users=["alice", "bob"],
    )
    scheduler = _scheduler(heartbeats_path, chat, session_factory, clock, platform_config=platform)

    interactive = build_definition("inbox", make_entry(permission_mode="interactive"))
    env = scheduler.permission_config_for(interactive)
    assert env["PLATFORM_URL"] == "https://chat.example.com"
    assert env["PLATFORM_CHANNEL_ID"] == "chan-1"
    assert env["ALLOWED_USERS"] == "alice,bob"

    auto = build_definition("inbox", make_entry(permission_mode="auto"))
    assert scheduler.permission_config_for(auto) is None

    bare = _scheduler(heartbeats_path, chat, session_factory, clock)
    assert bare.permission_config_for(interactive) is None


def test_stop_cancels_running_heartbeats(heartbeats_path, chat, session_factory, clock, write_heartbeats, make_entry) -> None:
    write_heartbeats({"inbox": make_entry(timeout=30)})
    session_factory.auto_complete = False
    scheduler = _scheduler(heartbeats_path, chat, session_factory, clock)
    scheduler.start()

    clock.advance(seconds=60)
    scheduler.check_and_dispatch()
    assert session_factory.created.wait(2.0)
    session = session_factory.sessions[0]
    assert session.message_received.wait(2.0)

    scheduler.stop()

    assert scheduler.wait_until_idle(timeout_s=2.0)
    assert session.killed is True
    state = scheduler.state_for("inbox")
    assert state.running is False
    assert state.last_error is None


def test_start_without_definitions_file_keeps_loop_alive(heartbeats_path, chat, session_factory, clock) -> None:
    scheduler = _scheduler(heartbeats_path, chat, session_factory, clock)
    thread = scheduler.start()
    try:
        assert thread.is_alive()
        assert scheduler.start() is thread
        assert scheduler.status() == []
    finally:
        scheduler.stop()
    assert not thread.is_alive()


class _GatedConfig(HeartbeatConfig):
    """Holds loop-thread mtime checks until ``gate`` is set."""

    def __init__(self, path) -> None:
        super().__init__(path)
        self.gate = threading.Event()
        self.entered = threading.Event()

    def mtime(self):
        if threading.current_thread().name == "HeartbeatScheduler":
            self.entered.set()
            self.gate.wait(5.0)
        return super().mtime()


def test_restart_after_slow_stop_leaves_one_loop(heartbeats_path, chat, session_factory, clock) -> None:
    config = _GatedConfig(heartbeats_path)
    scheduler = HeartbeatScheduler(config, chat, session_factory, tick_seconds=0.01, now_fn=clock.now)

    old_loop = scheduler.start()
    try:
        assert config.entered.wait(2.0)
        scheduler.stop(join_timeout_s=0.05)
        assert old_loop.is_alive()

        new_loop = scheduler.start()
        assert new_loop is not old_loop

        config.gate.set()
        old_loop.join(timeout=2.0)
        assert not old_loop.is_alive()
        assert new_loop.is_alive()
    finally:
        config.gate.set()
        scheduler.stop()
    assert not new_loop.is_alive()


def test_loop_dispatches_due_heartbeats(heartbeats_path, chat, session_factory, clock, write_heartbeats, make_entry) -> None:
    write_heartbeats({"inbox": make_entry()})
    scheduler = _scheduler(heartbeats_path, chat, session_factory, clock, tick_seconds=0.02)
    scheduler.start()
    try:
        clock.advance(seconds=60)
        assert session_factory.created.wait(2.0)
        assert scheduler.wait_until_idle(timeout_s=2.0)
        assert scheduler.state_for("inbox").run_count == 1
    finally:
        scheduler.stop()


def test_loop_picks_up_definitions_added_after_start(heartbeats_path, chat, session_factory, clock, write_heartbeats, make_entry) -> None:
    scheduler = _scheduler(heartbeats_path, chat, session_factory, clock, tick_seconds=0.02)
    scheduler.start()
    try:
        write_heartbeats({"inbox": make_entry()})
        for _ in range(100):
            if scheduler.state_for("inbox") is not None:
                break
            time.sleep(0.02)
        assert scheduler.state_for("inbox") is not None
    finally:
        scheduler.stop()


@pytest.mark.parametrize(
    "schedule",
    [{"cron": "0 13 * * *"}, {"interval": 3600}],
)
def test_compute_next_run_is_one_hour_out(clock, make_entry, schedule) -> None:
    definition = build_definition("inbox", make_entry(schedule=schedule))
    assert HeartbeatScheduler.compute_next_run(definition, clock.now()) == clock.now() + timedelta(hours=1)
