from coach_core.coach import CoachSession, MatchClock
from coach_core.events import ERROR
from coach_core.scheduler import CoachScheduler

from factories import echo_registry


def test_background_jobs_are_registered():
    session = CoachSession(registry=echo_registry(), clock=MatchClock())
    scheduler = CoachScheduler(session)
    scheduler.start()
    try:
        job_ids = {job.id for job in scheduler.scheduler.get_jobs()}
    finally:
        scheduler.stop()
        session.close(persist=False)

    assert job_ids == {"persist_history", "cleanup_history", "mine_patterns", "sweep_outcomes"}


def test_failing_job_reports_error_instead_of_raising():
    session = CoachSession(registry=echo_registry(), clock=MatchClock())
    scheduler = CoachScheduler(session)

    def explode():
        raise RuntimeError("disk full")

    scheduler._guarded("persist_history", explode)()

    errors = session.events.events(ERROR)
    assert errors[-1].payload == {"component": "scheduler"}
    assert "persist_history" in errors[-1].message
    session.close(persist=False)
