"""
Main CLI entry point for Relay.

Provides subcommands to run the heartbeat scheduler and to inspect heartbeat
definitions and persisted sessions.
"""

import argparse
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

from relay.logging import configure_logging_from_args, get_logger
from relay.paths import get_heartbeats_path, get_sessions_path

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """
    Build the main argument parser with subcommands.

    Returns:
        Configured ArgumentParser
    """
    parser = argparse.ArgumentParser(
        prog="relay",
        description="Relay - scheduled agent heartbeats for chat channels",
        epilog="Use 'relay <command> --help' for more information on a specific command.",
    )
    parser.add_argument(
        "--config-root",
        type=Path,
        default=None,
        help="Configuration folder (default: $RELAY_CONFIG_ROOT or ~/.config/relay)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output (DEBUG level)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set logging level (overrides --verbose)",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        help="Write logs to file",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        required=True,
    )

    run_parser = subparsers.add_parser(
        "run",
        help="Run the heartbeat scheduler until interrupted",
    )
    run_parser.add_argument(
        "--tick-seconds",
        type=float,
        default=30.0,
        help="Seconds between scheduler checks (default: 30)",
    )

    heartbeats_parser = subparsers.add_parser("heartbeats", help="Inspect heartbeat definitions")
    heartbeats_subparsers = heartbeats_parser.add_subparsers(
        dest="heartbeats_command",
        required=True,
    )
    heartbeats_subparsers.add_parser("list", help="List active heartbeat definitions")
    heartbeats_subparsers.add_parser("status", help="Show the heartbeat status table with next run times")

    sessions_parser = subparsers.add_parser("sessions", help="Inspect persisted sessions")
    sessions_subparsers = sessions_parser.add_subparsers(
        dest="sessions_command",
        required=True,
    )
    sessions_subparsers.add_parser("list", help="List persisted sessions")
    forget_parser = sessions_subparsers.add_parser("forget", help="Remove a persisted session")
    forget_parser.add_argument("thread_id", help="Thread id to forget")

    return parser


def run_heartbeats_list(config_root: Optional[Path]) -> int:
    from relay.heartbeats import HeartbeatConfig

    config = HeartbeatConfig(get_heartbeats_path(config_root))
    definitions = config.definitions()
    if not definitions:
        print(f"No active heartbeats in {config.path}")
        return 0

    print(f"Heartbeats ({len(definitions)}):\n")
    for definition in definitions:
        flags = [
            flag
            for flag, enabled in (("persistent", definition.persistent), ("once", definition.once))
            if enabled
        ]
        print(f"- {definition.name}: {definition.description}")
        print(f"    schedule: {definition.schedule.describe()}")
        print(f"    channel: {definition.channel_id}  permission: {definition.permission_mode}")
        print(f"    timeout: {definition.timeout:g}s" + (f"  ({', '.join(flags)})" if flags else ""))
    return 0


def run_heartbeats_status(config_root: Optional[Path]) -> int:
    """
    Print the status table a freshly started scheduler would report.
    """
    from relay.heartbeats import HeartbeatConfig, HeartbeatScheduler, HeartbeatState, format_heartbeat_table

    now = datetime.now().astimezone()
    states = [
        HeartbeatState(
            definition=definition,
            next_run_at=HeartbeatScheduler.compute_next_run(definition, now),
        )
        for definition in HeartbeatConfig(get_heartbeats_path(config_root)).definitions()
    ]
    statuses = [state.to_status() for state in sorted(states, key=lambda item: item.name)]
    print(format_heartbeat_table(statuses))
    return 0


def run_sessions_command(args: argparse.Namespace) -> int:
    from relay.sessions import SessionStore

    store = SessionStore(get_sessions_path(args.config_root))
    if args.sessions_command == "forget":
        if store.get(args.thread_id) is None:
            print(f"No persisted session for thread {args.thread_id}", file=sys.stderr)
            return 1
        store.remove(args.thread_id)
        print(f"Forgot session for thread {args.thread_id}")
        return 0

    sessions = store.load()
    if not sessions:
        print(f"No persisted sessions in {store.path}")
        return 0
    for thread_id, record in sorted(sessions.items(), key=lambda item: item[1].last_activity_at, reverse=True):
        paused = " (paused)" if record.is_paused else ""
        print(
            f"{thread_id[:8]}  session={record.claude_session_id[:8]}  "
            f"messages={record.message_count}  last={record.last_activity_at or '-'}{paused}"
        )
    return 0


def run_scheduler(args: argparse.Namespace) -> int:
    from relay.agent import create_claude_session
    from relay.chat import MattermostClient
    from relay.config import PlatformConfig
    from relay.heartbeats import HeartbeatConfig, HeartbeatScheduler

    try:
        platform = PlatformConfig.from_env()
    except ValueError as exc:
        logger.error("%s", exc)
        return 2

    scheduler = HeartbeatScheduler(
        HeartbeatConfig(get_heartbeats_path(args.config_root)),
        MattermostClient(platform),
        create_claude_session,
        platform_config=platform,
        tick_seconds=args.tick_seconds,
    )
    scheduler.start()
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        scheduler.stop()
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging_from_args(
        verbose=args.verbose,
        log_level=args.log_level,
        log_file=str(args.log_file) if args.log_file else None,
    )

    if args.command == "run":
        return run_scheduler(args)
    if args.command == "heartbeats":
        if args.heartbeats_command == "status":
            return run_heartbeats_status(args.config_root)
        return run_heartbeats_list(args.config_root)
    if args.command == "sessions":
        return run_sessions_command(args)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
