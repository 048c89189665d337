from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

from loguru import logger

from .capabilities import CapabilityRegistry, CapabilityResult, spec_for
from .errors import ResourceLimitError
from .events import EXECUTION_COMPLETED, EventLog
from .models import (
    CoachingObjective,
    CoachingOutput,
    Decision,
    ExecutionOutcome,
    InterventionPriority,
    PlanResult,
    PlanStep,
    RetryPolicy,
)
from .settings import settings


GENERIC_MESSAGE = "Coaching guidance is ready. Stay focused on the current round."
TEXT_KEYS = ("text", "message", "summary", "analysis", "recommendation")


def backoff_delay(policy: RetryPolicy, attempt: int, base: float, cap: float) -> float:
    """Delay before retry number ``attempt`` (0-based)."""
    if policy.backoff == "exponential":
        return min(base * (2 ** attempt), cap)
    return min(base * (attempt + 1), cap)


def _output_text(output: dict | None) -> str:
    if not output:
        return ""
    for key in TEXT_KEYS:
        value = output.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _output_action_items(output: dict | None) -> list[str]:
    if not output:
        return []
    items: list[str] = []
    single = output.get("action_item")
    if isinstance(single, str) and single.strip():
        items.append(single.strip())
    many = output.get("action_items")
    if isinstance(many, list):
        items.extend(str(item).strip() for item in many if str(item).strip())
    return items


class CapabilityCall:
    """One capability attempt on its own daemon thread.

    An attempt that outlives its timeout is abandoned: its thread runs until
    the capability returns, but it never holds up another attempt.
    """

    def __init__(self, registry: CapabilityRegistry, capability: str, payload: dict, timeout: float) -> None:
        self.capability = capability
        self.result: CapabilityResult | None = None
        self.error: Exception | None = None
        self._done = threading.Event()
        self._thread = threading.Thread(
            target=self._invoke,
            args=(registry, payload, timeout),
            name=f"capability-{capability}",
            daemon=True,
        )

    def _invoke(self, registry: CapabilityRegistry, payload: dict, timeout: float) -> None:
        try:
            self.result = registry.invoke(self.capability, payload, timeout)
        except Exception as exc:
            self.error = exc
        finally:
            self._done.set()

    def run(self, timeout: float) -> bool:
        """Start the call; False if it has not returned ``timeout`` seconds after starting."""
        self._thread.start()
        return self._done.wait(timeout)

    @property
    def finished(self) -> bool:
        return self._done.is_set()


class PlanExecutor:
    """Runs a decision's capability plan with timeouts, retries and fallbacks.

    Every capability attempt runs on its own thread, so an attempt that
    exceeds its timeout can be abandoned while the plan moves on.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        events: EventLog | None = None,
        max_concurrent: int | None = None,
        max_steps: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.registry = registry
        self.events = events
        self.max_concurrent = max_concurrent or settings.max_concurrent_executions
        self.max_steps = max_steps or settings.max_steps_per_plan
        self.base_delay = base_delay if base_delay is not None else settings.retry_base_delay_seconds
        self.max_delay = max_delay if max_delay is not None else settings.retry_max_delay_seconds
        self.sleep = sleep

        self._lock = threading.Lock()
        self._active: set[str] = set()
        self._abandoned: list[CapabilityCall] = []
        self._history: deque[dict] = deque(maxlen=settings.execution_history_capacity)
        self.totals = {"plans": 0, "rejected": 0, "attempts": 0, "fallbacks": 0, "timeouts": 0}

    # ── Plans ─────────────────────────────────────────────────────

    def execute(self, decision: Decision) -> ExecutionOutcome:
        self._admit(decision)
        started = time.perf_counter()
        try:
            attempts: list[PlanResult] = []
            results, skipped = self._run_plan(decision.plan, attempts)
        finally:
            with self._lock:
                self._active.discard(decision.decision_id)

        outcome = ExecutionOutcome(
            decision_id=decision.decision_id,
            attempts=attempts,
            results=results,
            skipped_steps=skipped,
            total_steps=len(decision.plan),
            total_time=time.perf_counter() - started,
            output=self.format_output(decision, results),
        )
        with self._lock:
            self.totals["plans"] += 1
            self._history.append(outcome.summary())

        logger.info(
            "Executed {}: {}/{} steps ok ({:.0%}) in {:.2f}s{}",
            decision.decision_id,
            outcome.successful_steps,
            outcome.total_steps,
            outcome.success_rate,
            outcome.total_time,
            f", skipped {', '.join(skipped)}" if skipped else "",
        )
        if self.events is not None:
            self.events.emit(EXECUTION_COMPLETED, f"Execution of {decision.decision_id}", outcome.summary())
        return outcome

    def _admit(self, decision: Decision) -> None:
        with self._lock:
            if len(decision.plan) > self.max_steps:
                self.totals["rejected"] += 1
                raise ResourceLimitError(
                    f"Plan for {decision.decision_id} has {len(decision.plan)} steps; limit is {self.max_steps}"
                )
            if len(self._active) >= self.max_concurrent:
                self.totals["rejected"] += 1
                raise ResourceLimitError(
                    f"{len(self._active)} plans already active; limit is {self.max_concurrent}"
                )
            self._active.add(decision.decision_id)

    def _run_plan(
        self, plan: tuple[PlanStep, ...], attempts: list[PlanResult]
    ) -> tuple[dict[str, PlanResult], list[str]]:
        results: dict[str, PlanResult] = {}
        skipped: list[str] = []
        pending = list(plan)
        known_ids = {step.step_id for step in plan}

        while pending:
            ready: list[PlanStep] = []
            blocked: list[PlanStep] = []
            for step in pending:
                unknown = [dep for dep in step.dependencies if dep not in known_ids]
                failed = [
                    dep for dep in step.dependencies
                    if dep in skipped or (dep in results and not results[dep].success)
                ]
                if unknown or failed:
                    logger.warning(
                        "Skipping {} ({}): dependency {} did not succeed",
                        step.step_id,
                        step.capability,
                        ", ".join(unknown or failed),
                    )
                    skipped.append(step.step_id)
                elif all(dep in results for dep in step.dependencies):
                    ready.append(step)
                else:
                    blocked.append(step)

            if not ready:
                if blocked and len(blocked) == len(pending):
                    # Dependency cycle: nothing can ever become ready.
                    skipped.extend(step.step_id for step in blocked)
                    logger.warning("Dependency cycle among {}", ", ".join(s.step_id for s in blocked))
                    break
                pending = blocked
                continue

            for step, result in self._run_wave(ready, results, attempts):
                results[step.step_id] = result
            pending = blocked

        return results, skipped

    def _run_wave(
        self,
        steps: list[PlanStep],
        results: dict[str, PlanResult],
        attempts: list[PlanResult],
    ) -> list[tuple[PlanStep, PlanResult]]:
        prepared = [self._with_previous(step, results) for step in steps]
        if len(prepared) == 1:
            return [(steps[0], self.execute_step(prepared[0], attempts))]

        wave: list[tuple[PlanStep, PlanResult]] = []
        with ThreadPoolExecutor(max_workers=len(prepared), thread_name_prefix="plan-wave") as pool:
            futures = [(step, pool.submit(self.execute_step, ready, attempts)) for step, ready in zip(steps, prepared)]
            for step, future in futures:
                wave.append((step, future.result()))
        return wave

    @staticmethod
    def _with_previous(step: PlanStep, results: dict[str, PlanResult]) -> PlanStep:
        if not step.dependencies:
            return step
        previous = {dep: results[dep].output or {} for dep in step.dependencies if dep in results}
        return PlanStep(
            step_id=step.step_id,
            capability=step.capability,
            input={**step.input, "previous": previous},
            dependencies=step.dependencies,
            timeout=step.timeout,
            retry_policy=step.retry_policy,
            fallback=step.fallback,
        )

    # ── Steps ─────────────────────────────────────────────────────

    def execute_step(self, step: PlanStep, attempts: list[PlanResult] | None = None) -> PlanResult:
        log = attempts if attempts is not None else []
        max_attempts = max(0, step.retry_policy.max_retries) + 1
        last: PlanResult | None = None

        for attempt in range(max_attempts):
            last = self._attempt(step, step.capability, attempt + 1)
            log.append(last)
            if last.success:
                return last
            logger.warning(
                "Step {} [{}] attempt {}/{} failed: {}",
                step.step_id,
                step.capability,
                attempt + 1,
                max_attempts,
                last.error,
            )
            if attempt + 1 < max_attempts:
                self.sleep(backoff_delay(step.retry_policy, attempt, self.base_delay, self.max_delay))

        if step.fallback:
            fallback_timeout = spec_for(self.registry.specs, step.fallback, step.timeout).timeout
            fallback = self._attempt(step, step.fallback, max_attempts + 1, fallback_timeout)
            fallback = PlanResult(
                step_id=fallback.step_id,
                capability=fallback.capability,
                success=fallback.success,
                output=fallback.output,
                error=fallback.error,
                elapsed=fallback.elapsed,
                attempt=fallback.attempt,
                used_fallback=True,
                original_error=last.error if last else None,
            )
            log.append(fallback)
            with self._lock:
                self.totals["fallbacks"] += 1
            logger.info(
                "Step {} fell back from {} to {}: {}",
                step.step_id,
                step.capability,
                step.fallback,
                "ok" if fallback.success else fallback.error,
            )
            return fallback
        return last

    def _attempt(self, step: PlanStep, capability: str, attempt: int, timeout: float | None = None) -> PlanResult:
        timeout = step.timeout if timeout is None else timeout
        started = time.perf_counter()
        with self._lock:
            self.totals["attempts"] += 1
        call = CapabilityCall(self.registry, capability, dict(step.input), timeout)
        if not call.run(timeout):
            with self._lock:
                self.totals["timeouts"] += 1
                self._abandoned = [pending for pending in self._abandoned if not pending.finished]
                self._abandoned.append(call)
            return PlanResult(
                step_id=step.step_id,
                capability=capability,
                success=False,
                error=f"{capability} timed out after {timeout:.2f}s",
                elapsed=time.perf_counter() - started,
                attempt=attempt,
            )
        if call.error is not None or call.result is None:
            exc = call.error
            return PlanResult(
                step_id=step.step_id,
                capability=capability,
                success=False,
                error=f"{type(exc).__name__}: {exc}" if exc is not None else f"{capability} returned nothing",
                elapsed=time.perf_counter() - started,
                attempt=attempt,
            )

        result = call.result
        return PlanResult(
            step_id=step.step_id,
            capability=capability,
            success=bool(result.success),
            output=result.data if result.success else None,
            error=None if result.success else (result.error or f"{capability} reported failure"),
            elapsed=time.perf_counter() - started,
            attempt=attempt,
        )

    # ── Output ────────────────────────────────────────────────────

    @staticmethod
    def format_output(decision: Decision, results: dict[str, PlanResult]) -> CoachingOutput:
        ordered = [results[step.step_id] for step in decision.plan if step.step_id in results]
        successes = [result for result in ordered if result.success]
        if not successes:
            failures = "; ".join(result.error or "unknown error" for result in ordered) or "no steps ran"
            return CoachingOutput(
                title="Execution Error",
                message=f"Coaching plan {decision.rule_id} failed to produce guidance.",
                action_items=[],
                objective=CoachingObjective.ERROR_CORRECTION,
                priority=InterventionPriority.LOW,
                timing="next_opportunity",
                is_error=True,
                details=failures,
            )

        message = ""
        for result in reversed(successes):
            message = _output_text(result.output)
            if message:
                break

        action_items: list[str] = []
        for result in successes:
            for item in _output_action_items(result.output):
                if item not in action_items:
                    action_items.append(item)
        if not action_items:
            action_items = list(decision.action_items)
        if not action_items and decision.plan:
            action_items = [f"Follow guidance from {decision.plan[0].capability}"]

        return CoachingOutput(
            title=decision.rationale.split(" - ")[0],
            message=message or GENERIC_MESSAGE,
            action_items=action_items,
            objective=decision.objective,
            priority=decision.priority,
            timing="immediate" if decision.priority == InterventionPriority.IMMEDIATE else "next_opportunity",
            details=decision.rationale,
        )

    # ── Status ────────────────────────────────────────────────────

    def status(self) -> dict:
        with self._lock:
            self._abandoned = [call for call in self._abandoned if not call.finished]
            return {
                "active_plans": sorted(self._active),
                "abandoned_calls": len(self._abandoned),
                "max_concurrent": self.max_concurrent,
                "totals": dict(self.totals),
                "recent": list(self._history)[-10:],
            }

    def history(self) -> list[dict]:
        with self._lock:
            return list(self._history)

    def shutdown(self) -> None:
        with self._lock:
            running = [call.capability for call in self._abandoned if not call.finished]
            self._abandoned.clear()
        if running:
            logger.warning("Leaving {} abandoned capability call(s) running: {}", len(running), ", ".join(running))
