"""One coaching session: sense -> decide -> act -> observe -> learn.

Snapshots are processed in arrival order on the caller's thread. Plans from a
cycle are handed to a bounded worker pool in rank order, so decisions from a
later snapshot are always submitted after those of an earlier one.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field

from loguru import logger

from .alerts import AlertRouter
from .builtin_capabilities import DefaultCapabilities
from .capabilities import CapabilityRegistry
from .db import SqliteStore, StoreRecord
from .decision_engine import DecisionEngine
from .errors import ResourceLimitError, ValidationError
from .events import EventLog
from .executor import PlanExecutor
from .history import SnapshotHistory
from .llm_client import OllamaClient
from .models import CoachingOutput, Decision, Outcome, Pattern, Snapshot, StateChange
from .monitor import OutcomeMonitor
from .rules import Rule
from .settings import settings
from .state import RuntimeState


OUTPUT_BUFFER_LIMIT = 200
MAX_CONSECUTIVE_FAILURES = 5


class MatchClock:
    """Clock that follows snapshot timestamps, for replaying recorded matches."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._lock = threading.Lock()

    def advance(self, timestamp: float) -> None:
        with self._lock:
            self._now = max(self._now, timestamp)

    def __call__(self) -> float:
        with self._lock:
            return self._now


@dataclass
class CycleReport:
    sequence_id: int
    accepted: bool
    change: StateChange | None = None
    patterns: list[Pattern] = field(default_factory=list)
    decisions: list[Decision] = field(default_factory=list)
    outcomes: list[Outcome] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)
    error: str | None = None


class CoachSession:
    def __init__(
        self,
        registry: CapabilityRegistry | None = None,
        store: SqliteStore | None = None,
        events: EventLog | None = None,
        rules: list[Rule] | None = None,
        llm: OllamaClient | None = None,
        clock: Callable[[], float] = time.time,
        max_concurrent: int | None = None,
        inline_patterns: bool = True,
        executor_options: dict | None = None,
    ) -> None:
        self.clock = clock
        self.store = store
        self.events = events if events is not None else EventLog(alerts=AlertRouter())
        self.history = SnapshotHistory(store=store, events=self.events)

        self.capabilities: DefaultCapabilities | None = None
        if registry is None:
            self.capabilities = DefaultCapabilities(self.history, store=store, llm=llm)
            registry = self.capabilities.registry()
        self.registry = registry

        self.max_concurrent = max_concurrent or settings.max_concurrent_executions
        self.engine = DecisionEngine(
            rules=rules,
            capability_specs=registry.specs,
            store=store,
            events=self.events,
            clock=clock,
        )
        self.executor = PlanExecutor(
            registry,
            events=self.events,
            max_concurrent=self.max_concurrent,
            **(executor_options or {}),
        )
        self.monitor = OutcomeMonitor(
            feedback=self._apply_feedback,
            store=store,
            events=self.events,
            clock=clock,
        )
        self.inline_patterns = inline_patterns
        self.state = RuntimeState()

        self._plans = ThreadPoolExecutor(max_workers=self.max_concurrent, thread_name_prefix="plan")
        self._in_flight: list[Future] = []
        self._outputs: deque[CoachingOutput] = deque(maxlen=OUTPUT_BUFFER_LIMIT)
        self._lock = threading.Lock()

    # ── Cycle ─────────────────────────────────────────────────────

    def process(self, snapshot: Snapshot, now: float | None = None) -> CycleReport:
        now = self.clock() if now is None else now
        self.state.mark_start()
        report = CycleReport(sequence_id=snapshot.sequence_id, accepted=False)

        try:
            report.change = self.history.update(snapshot)
        except ValidationError as exc:
            self.state.snapshots_rejected += 1
            logger.warning("Rejected snapshot {}: {}", snapshot.sequence_id, exc)
            self.events.error(str(exc), component="history", sequence_id=snapshot.sequence_id)
            report.error = str(exc)
            self.state.mark_finish()
            return report

        report.accepted = True
        self.state.snapshots_processed += 1
        try:
            report.outcomes = self.monitor.observe(snapshot, now)
            report.patterns = self.history.detect_patterns() if self.inline_patterns else self.history.patterns()
            report.decisions = self.engine.analyze(snapshot, report.patterns, now)
            self.state.decisions_made += len(report.decisions)
            for decision in report.decisions:
                if not self._submit(decision, snapshot):
                    report.rejected.append(decision.decision_id)
            self.state.consecutive_failures = 0
        except Exception as exc:
            self.state.consecutive_failures += 1
            logger.exception("Coaching cycle failed for snapshot {}: {}", snapshot.sequence_id, exc)
            self.events.error(f"Cycle failed: {exc}", component="session", sequence_id=snapshot.sequence_id)
            report.error = str(exc)
            if self.state.consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                self.state.add_note(f"{self.state.consecutive_failures} consecutive failed cycles")
        finally:
            self.state.mark_finish()
        return report

    def _submit(self, decision: Decision, baseline: Snapshot) -> bool:
        with self._lock:
            self._in_flight = [future for future in self._in_flight if not future.done()]
            if len(self._in_flight) >= self.max_concurrent:
                self.state.plans_rejected += 1
                error = ResourceLimitError(
                    f"{len(self._in_flight)} plans in flight; dropping {decision.decision_id}"
                )
                logger.warning("{}", error)
                self.events.error(str(error), component="executor", decision_id=decision.decision_id)
                return False
            self._in_flight.append(self._plans.submit(self._run_decision, decision, baseline))
        return True

    def _run_decision(self, decision: Decision, baseline: Snapshot) -> None:
        try:
            outcome = self.executor.execute(decision)
        except ResourceLimitError as exc:
            self.state.plans_rejected += 1
            logger.warning("Plan {} rejected: {}", decision.decision_id, exc)
            self.events.error(str(exc), component="executor", decision_id=decision.decision_id)
            return
        except Exception as exc:
            logger.exception("Plan {} crashed: {}", decision.decision_id, exc)
            self.events.error(f"Plan crashed: {exc}", component="executor", decision_id=decision.decision_id)
            return

        output = outcome.output
        with self._lock:
            self._outputs.append(output)
        logger.info("[{}] {}: {}", output.priority.value, output.title, output.message)
        if self.store is not None:
            self.store.write_best_effort(StoreRecord(kind="execution", payload=outcome.summary()))
        self.monitor.track(decision, baseline, output)

    def _apply_feedback(self, outcome: Outcome) -> None:
        self.engine.apply_feedback(outcome, now=outcome.concluded_at)

    # ── Queries & lifecycle ───────────────────────────────────────

    def wait(self, timeout: float | None = None) -> bool:
        """Block until in-flight plans finish; False if the timeout expired first."""
        with self._lock:
            pending = list(self._in_flight)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def drain_outputs(self) -> list[CoachingOutput]:
        with self._lock:
            items = list(self._outputs)
            self._outputs.clear()
        return items

    def status(self) -> dict:
        return {
            "runtime": self.state.to_dict(),
            "history_size": len(self.history),
            "state_summary": self.history.state_summary(),
            "executor": self.executor.status(),
            "active_tracking": self.monitor.active_count(),
            "events": dict(self.events.counts),
        }

    def summary(self) -> dict:
        return {
            "runtime": self.state.to_dict(),
            "patterns": [p.description for p in self.history.patterns()],
            "rules": self.engine.learning_stats()["rules"],
            "adaptations": list(self.engine.adaptation_history),
            "objectives": self.monitor.adaptation_stats(),
            "executor_totals": self.executor.status()["totals"],
        }

    def close(self, persist: bool = True) -> None:
        self.state.is_running = False
        self._plans.shutdown(wait=True)
        self.executor.shutdown()
        if persist:
            self.history.persist()
        logger.info(
            "Session closed after {} snapshot(s), {} decision(s)",
            self.state.snapshots_processed,
            self.state.decisions_made,
        )
