import threading
import time

import pytest

from coach_core.capabilities import CapabilitySpec, LocalCapabilityRegistry
from coach_core.errors import CapabilityError, ResourceLimitError
from coach_core.events import EXECUTION_COMPLETED, EventLog
from coach_core.executor import PlanExecutor, backoff_delay
from coach_core.models import CoachingObjective, InterventionPriority, PlanStep, RetryPolicy

from factories import chain, make_decision


def failing(name):
    def handler(payload):
        raise CapabilityError(name, "unavailable")

    return handler


def answering(text, **extra):
    return lambda payload: {"message": text, **extra}


def make_executor(registry, **options):
    options.setdefault("base_delay", 0.0)
    options.setdefault("max_delay", 0.0)
    return PlanExecutor(registry, **options)


def test_backoff_delays():
    exponential = RetryPolicy(5, "exponential")
    linear = RetryPolicy(5, "linear")
    assert [backoff_delay(exponential, a, 1.0, 10.0) for a in range(5)] == [1.0, 2.0, 4.0, 8.0, 10.0]
    assert [backoff_delay(linear, a, 1.0, 10.0) for a in range(3)] == [1.0, 2.0, 3.0]


def test_step_is_attempted_max_retries_plus_one_times():
    registry = LocalCapabilityRegistry(handlers={"Flaky": failing("Flaky")})
    delays = []
    executor = make_executor(registry, base_delay=1.0, max_delay=10.0, sleep=delays.append)
    step = PlanStep("step_0", "Flaky", retry_policy=RetryPolicy(2, "linear"), timeout=1.0)

    result = executor.execute_step(step)

    assert not result.success
    assert result.attempt == 3
    assert registry.call_counts["Flaky"] == 3
    assert delays == [1.0, 2.0]


def test_retry_succeeds_after_transient_failure():
    calls = []

    def flaky(payload):
        calls.append(1)
        if len(calls) < 3:
            raise CapabilityError("Flaky", "busy")
        return {"message": "third time lucky"}

    executor = make_executor(LocalCapabilityRegistry(handlers={"Flaky": flaky}))
    result = executor.execute_step(PlanStep("step_0", "Flaky", retry_policy=RetryPolicy(3), timeout=1.0))

    assert result.success
    assert result.attempt == 3
    assert result.output == {"message": "third time lucky"}


def test_fallback_runs_once_after_retries_are_exhausted():
    registry = LocalCapabilityRegistry(
        handlers={"Primary": failing("Primary"), "Backup": answering("backup answer")}
    )
    executor = make_executor(registry)
    step = PlanStep("step_0", "Primary", retry_policy=RetryPolicy(1), fallback="Backup", timeout=1.0)

    attempts = []
    result = executor.execute_step(step, attempts)

    assert result.success
    assert result.used_fallback
    assert result.capability == "Backup"
    assert "unavailable" in result.original_error
    assert registry.call_counts == {"Primary": 2, "Backup": 1}
    assert len(attempts) == 3


def test_failed_fallback_is_not_retried():
    registry = LocalCapabilityRegistry(handlers={"Primary": failing("Primary"), "Backup": failing("Backup")})
    executor = make_executor(registry)
    step = PlanStep("step_0", "Primary", retry_policy=RetryPolicy(2), fallback="Backup", timeout=1.0)

    result = executor.execute_step(step)

    assert not result.success
    assert result.used_fallback
    assert registry.call_counts["Backup"] == 1


def test_step_after_failed_dependency_is_never_attempted():
    registry = LocalCapabilityRegistry(
        handlers={"First": answering("first"), "Second": failing("Second"), "Third": answering("third")}
    )
    executor = make_executor(registry)
    decision = make_decision(plan=chain("First", "Second", "Third", retry_policy=RetryPolicy(2)))

    outcome = executor.execute(decision)

    assert "Third" not in registry.call_counts
    assert registry.call_counts["Second"] == 3
    assert outcome.skipped_steps == ["step_2"]
    assert outcome.success_rate == pytest.approx(1 / 3)
    assert not outcome.success


def test_unknown_dependency_is_skipped():
    registry = LocalCapabilityRegistry(handlers={"Only": answering("only")})
    executor = make_executor(registry)
    plan = (PlanStep("step_0", "Only", dependencies=("ghost",), timeout=1.0),)

    outcome = executor.execute(make_decision(plan=plan))

    assert outcome.skipped_steps == ["step_0"]
    assert registry.call_counts == {}


def test_independent_steps_run_concurrently():
    barrier = threading.Barrier(2, timeout=2.0)

    def meet(payload):
        barrier.wait()
        return {"message": "met"}

    registry = LocalCapabilityRegistry(handlers={"Left": meet, "Right": meet, "Join": answering("joined")})
    executor = make_executor(registry)
    plan = (
        PlanStep("left", "Left", timeout=3.0),
        PlanStep("right", "Right", timeout=3.0),
        PlanStep("join", "Join", dependencies=("left", "right"), timeout=1.0),
    )

    outcome = executor.execute(make_decision(plan=plan))

    assert outcome.success_rate == 1.0
    assert outcome.output.message == "joined"


def test_dependency_outputs_are_passed_forward():
    seen = {}

    def second(payload):
        seen.update(payload["previous"])
        return {"message": "done"}

    registry = LocalCapabilityRegistry(handlers={"First": answering("first text"), "Second": second})
    executor = make_executor(registry)
    executor.execute(make_decision(plan=chain("First", "Second")))

    assert seen == {"step_0": {"message": "first text"}}


def test_slow_capability_times_out():
    release = threading.Event()

    def hang(payload):
        release.wait(5.0)
        return {"message": "too late"}

    executor = make_executor(LocalCapabilityRegistry(handlers={"Slow": hang}))
    started = time.perf_counter()
    try:
        result = executor.execute_step(PlanStep("step_0", "Slow", timeout=0.1))
    finally:
        release.set()

    assert not result.success
    assert "timed out" in result.error
    assert time.perf_counter() - started < 2.0
    assert executor.status()["totals"]["timeouts"] == 1


def test_hung_calls_do_not_starve_later_capabilities():
    release = threading.Event()

    def hang(payload):
        release.wait(5.0)
        return {"message": "too late"}

    registry = LocalCapabilityRegistry(handlers={"Hang": hang, "Quick": answering("right away")})
    executor = make_executor(registry)
    try:
        hung = executor.execute_step(PlanStep("step_0", "Hang", retry_policy=RetryPolicy(1), timeout=0.1))
        quick = executor.execute_step(PlanStep("step_1", "Quick", timeout=0.5))
        abandoned = executor.status()["abandoned_calls"]
    finally:
        release.set()

    assert not hung.success
    assert registry.call_counts["Hang"] == 2
    assert quick.success
    assert quick.output == {"message": "right away"}
    assert abandoned >= 1


def test_timeouts_exhaust_retries_before_a_single_fallback():
    release = threading.Event()

    def hang(payload):
        release.wait(5.0)
        return {"message": "too late"}

    registry = LocalCapabilityRegistry(handlers={"Hang": hang, "Backup": answering("backup answer")})
    executor = make_executor(registry)
    step = PlanStep("step_0", "Hang", retry_policy=RetryPolicy(2), fallback="Backup", timeout=0.1)
    attempts = []
    try:
        result = executor.execute_step(step, attempts)
    finally:
        release.set()

    assert result.success and result.used_fallback
    assert "timed out" in result.original_error
    assert registry.call_counts == {"Hang": 3, "Backup": 1}
    assert [a.attempt for a in attempts] == [1, 2, 3, 4]
    assert executor.status()["totals"]["timeouts"] == 3


def test_fallback_gets_its_own_declared_timeout():
    def deliberate(payload):
        time.sleep(0.3)
        return {"message": "worth the wait", "timeout": payload["timeout_seconds"]}

    registry = LocalCapabilityRegistry(handlers={"Primary": failing("Primary")})
    registry.register("Careful", deliberate, CapabilitySpec("Careful", 2.0, 1))
    executor = make_executor(registry)
    step = PlanStep("step_0", "Primary", retry_policy=RetryPolicy(0), fallback="Careful", timeout=0.1)

    result = executor.execute_step(step)

    assert result.success and result.used_fallback
    assert result.output["timeout"] == 2.0


def test_oversized_plan_is_rejected_before_running():
    registry = LocalCapabilityRegistry(handlers={"Step": answering("x")})
    executor = make_executor(registry, max_steps=2)

    with pytest.raises(ResourceLimitError):
        executor.execute(make_decision(plan=chain("Step", "Step", "Step")))
    assert registry.call_counts == {}


def test_concurrent_plan_limit():
    release = threading.Event()
    started = threading.Event()

    def block(payload):
        started.set()
        release.wait(5.0)
        return {"message": "done"}

    registry = LocalCapabilityRegistry(handlers={"Block": block, "Quick": answering("quick")})
    executor = make_executor(registry, max_concurrent=1)
    first = threading.Thread(
        target=executor.execute,
        args=(make_decision(plan=chain("Block", timeout=5.0), decision_id="first"),),
    )
    first.start()
    try:
        assert started.wait(2.0)
        with pytest.raises(ResourceLimitError):
            executor.execute(make_decision(plan=chain("Quick"), decision_id="second"))
    finally:
        release.set()
        first.join(5.0)

    assert executor.execute(make_decision(plan=chain("Quick"), decision_id="third")).success


def test_fully_failed_plan_formats_error_output():
    registry = LocalCapabilityRegistry(handlers={"Broken": failing("Broken")})
    executor = make_executor(registry)

    outcome = executor.execute(make_decision(plan=chain("Broken")))

    output = outcome.output
    assert output.is_error
    assert output.title == "Execution Error"
    assert output.objective == CoachingObjective.ERROR_CORRECTION
    assert output.priority == InterventionPriority.LOW


def test_output_uses_last_text_and_gathered_action_items():
    registry = LocalCapabilityRegistry(
        handlers={
            "Analyze": answering("analysis text", action_item="Hold the corner"),
            "Speak": lambda payload: {"queued": True},
        }
    )
    executor = make_executor(registry)
    decision = make_decision(
        plan=chain("Analyze", "Speak"),
        priority=InterventionPriority.IMMEDIATE,
        rationale="Reposition now - low health",
        action_items=("Unused hint",),
    )

    output = executor.execute(decision).output

    assert output.title == "Reposition now"
    assert output.message == "analysis text"
    assert output.action_items == ["Hold the corner"]
    assert output.timing == "immediate"


def test_output_falls_back_to_hints_then_capability_name():
    registry = LocalCapabilityRegistry(handlers={"Quiet": lambda payload: {"queued": True}})
    executor = make_executor(registry)

    with_hints = executor.execute(make_decision(plan=chain("Quiet"), action_items=("Buy armor",))).output
    without = executor.execute(make_decision(plan=chain("Quiet"), decision_id="bare")).output

    assert with_hints.action_items == ["Buy armor"]
    assert with_hints.timing == "next_opportunity"
    assert without.action_items == ["Follow guidance from Quiet"]
    assert without.message


def test_execution_emits_event_and_history():
    events = EventLog()
    executor = make_executor(LocalCapabilityRegistry(handlers={"Step": answering("x")}), events=events)
    executor.execute(make_decision(plan=chain("Step")))

    assert len(events.events(EXECUTION_COMPLETED)) == 1
    assert executor.history()[0]["success"] is True
