from __future__ import annotations

import argparse
import json
import signal
import time
from collections.abc import Iterator
from pathlib import Path

from loguru import logger

from .coach import CoachSession, MatchClock
from .db import SqliteStore, initialize_database
from .llm_client import OllamaClient
from .logging_config import configure_logging
from .models import Snapshot
from .rule_config import load_rules
from .scheduler import CoachScheduler
from .settings import settings


_shutdown_requested = False


def _signal_handler(signum, frame) -> None:
    global _shutdown_requested
    _shutdown_requested = True
    logger.warning("Graceful stop requested; finishing the current snapshot")


def read_snapshots(path: Path) -> Iterator[Snapshot]:
    """Yield snapshots from a JSON-lines file, skipping lines that do not parse."""
    with Path(path).open(encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield Snapshot.from_dict(json.loads(line))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping line {} of {}: {}", line_number, path, exc)


def print_summary(summary: dict) -> None:
    runtime = summary["runtime"]
    print()
    print("=" * 62)
    print("  SESSION SUMMARY")
    print("=" * 62)
    print(f"  Snapshots:   {runtime['snapshots_processed']} processed, {runtime['snapshots_rejected']} rejected")
    print(f"  Decisions:   {runtime['decisions_made']} made, {runtime['plans_rejected']} plans rejected")
    totals = summary["executor_totals"]
    print(f"  Executor:    {totals['plans']} plans, {totals['fallbacks']} fallbacks, {totals['timeouts']} timeouts")
    if summary["patterns"]:
        print("  Patterns:")
        for description in summary["patterns"]:
            print(f"    - {description}")
    if summary["objectives"]:
        print("  Outcomes by objective:")
        for row in summary["objectives"]:
            print(
                f"    {row['objective']:24s} n={row['total']:<3d} success {row['success_rate']:.0%}"
                f"  followed {row['follow_rate']:.0%}  impact {row['average_impact']:+.2f}"
            )
    print("  Rules:")
    for rule in summary["rules"]:
        print(
            f"    {rule['rule_id']:28s} conf {rule['confidence']:.2f}  rate {rule['success_rate']:.2f}"
            f"  {rule['priority']:9s} cooldown {rule['cooldown']:.0f}s  applied {rule['applications']}"
        )
    print("=" * 62)


def replay(path: Path, speed: float | None = None, once: bool = False) -> dict:
    """Feed a recorded session through a CoachSession.

    In realtime mode the gaps between snapshot timestamps are slept (divided by
    ``speed``) and background jobs run on the scheduler; in fast mode the match
    timestamps drive every clock and maintenance runs inline.
    """
    realtime = speed is not None or settings.replay_mode == "realtime"
    speed = speed or 1.0

    initialize_database()
    store = SqliteStore()
    match_clock = MatchClock()
    session = CoachSession(
        store=store,
        rules=load_rules(),
        llm=OllamaClient(),
        clock=time.time if realtime else match_clock,
        inline_patterns=not realtime,
    )
    scheduler = CoachScheduler(session) if realtime else None
    if scheduler is not None:
        scheduler.start()

    logger.info("Replaying {} in {} mode", path, f"realtime x{speed:g}" if realtime else "fast")
    previous_timestamp: float | None = None
    try:
        for snapshot in read_snapshots(path):
            if _shutdown_requested:
                break
            timestamp = snapshot.timestamp.timestamp()
            if realtime and previous_timestamp is not None:
                time.sleep(max(0.0, (timestamp - previous_timestamp) / speed))
            match_clock.advance(timestamp)
            previous_timestamp = timestamp

            session.process(snapshot)
            if not realtime:
                session.wait()
            for output in session.drain_outputs():
                print(f"[{output.priority.value.upper()}] {output.title}: {output.message}")
                for item in output.action_items:
                    print(f"    - {item}")

        session.wait(timeout=settings.max_plan_duration_seconds)
        if realtime and not once:
            deadline = time.time() + settings.max_monitoring_window_seconds
            while session.monitor.active_count() and time.time() < deadline and not _shutdown_requested:
                time.sleep(settings.monitor_sweep_interval_seconds)
        else:
            now = session.clock() + settings.max_monitoring_window_seconds
            session.monitor.sweep(now)
    finally:
        if scheduler is not None:
            scheduler.stop()
        session.close()

    return session.summary()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Replay recorded match snapshots through the coaching core",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  coach-replay match.jsonl              # fast replay on match time
  coach-replay match.jsonl --speed 1    # realtime replay with background jobs
  coach-replay match.jsonl --speed 4 --once
        """,
    )
    parser.add_argument("snapshots", type=Path, help="JSON-lines file with one snapshot per line")
    parser.add_argument("--speed", type=float, default=None, help="Realtime replay speed multiplier")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Exit right after the last snapshot, expiring outcomes still being monitored",
    )
    args = parser.parse_args(argv)

    configure_logging(settings.log_level, settings.log_file)
    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    if not args.snapshots.exists():
        logger.error("Snapshot file {} does not exist", args.snapshots)
        return 1
    if args.speed is not None and args.speed <= 0:
        logger.error("--speed must be positive")
        return 1

    print_summary(replay(args.snapshots, speed=args.speed, once=args.once))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
