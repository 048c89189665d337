from __future__ import annotations

from collections.abc import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from .coach import CoachSession
from .settings import settings


class CoachScheduler:
    """Background maintenance for a live session: persistence, cleanup, pattern mining, outcome sweeps."""

    def __init__(self, session: CoachSession) -> None:
        self.session = session
        self.scheduler = BackgroundScheduler(timezone="UTC")

    def start(self) -> None:
        jobs: list[tuple[str, Callable[[], object], float]] = [
            ("persist_history", self.session.history.persist, settings.persistence_interval_seconds),
            ("cleanup_history", self.session.history.cleanup, settings.cleanup_interval_seconds),
            ("mine_patterns", self.session.history.detect_patterns, settings.pattern_interval_seconds),
            ("sweep_outcomes", self.session.monitor.sweep, settings.monitor_sweep_interval_seconds),
        ]
        for job_id, func, seconds in jobs:
            self.scheduler.add_job(
                self._guarded(job_id, func),
                trigger=IntervalTrigger(seconds=seconds),
                id=job_id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        self.scheduler.start()
        logger.info(
            "Scheduler started: persist every {}s, cleanup every {}s, patterns every {}s, sweep every {}s",
            settings.persistence_interval_seconds,
            settings.cleanup_interval_seconds,
            settings.pattern_interval_seconds,
            settings.monitor_sweep_interval_seconds,
        )

    def _guarded(self, job_id: str, func: Callable[[], object]) -> Callable[[], None]:
        def run() -> None:
            try:
                func()
            except Exception as exc:
                logger.exception("Background job {} failed: {}", job_id, exc)
                self.session.events.error(f"Background job {job_id} failed: {exc}", component="scheduler")

        return run

    def stop(self) -> None:
        self.scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
