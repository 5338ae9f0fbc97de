"""Durable steps: checkpoints, replay, retries and resume."""

import asyncio

import pytest
from sqlmodel import select

from nima.models import RunStatus, StepStatus, WorkflowRun, WorkflowStep
from nima.workflows.engine import (
    PermanentStepError,
    RetryExhaustedError,
    RetryPolicy,
    StepFailedError,
    WorkflowManager,
    call_with_retry,
)
from nima.workflows.scheduler import BackgroundScheduler

FAST = RetryPolicy(max_attempts=3, initial_backoff=0, backoff_base=2)


def _manager() -> WorkflowManager:
    return WorkflowManager(max_parallelism=2, background=BackgroundScheduler())


def _steps(session, run_id):
    session.expire_all()
    return {
        s.step_key: s
        for s in session.exec(select(WorkflowStep).where(WorkflowStep.run_id == run_id)).all()
    }


def test_retry_policy_backs_off_exponentially():
    policy = RetryPolicy(max_attempts=4, initial_backoff=1.0, backoff_base=2.0)
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]


def test_call_with_retry_recovers_from_transient_errors():
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("blip")
        return "ok"

    assert asyncio.run(call_with_retry(flaky, policy=FAST, label="flaky")) == "ok"
    assert len(attempts) == 3


def test_call_with_retry_stops_on_permanent_errors():
    attempts = []

    def broken():
        attempts.append(1)
        raise PermanentStepError("no photo")

    with pytest.raises(RetryExhaustedError) as excinfo:
        asyncio.run(call_with_retry(broken, policy=FAST, label="broken"))
    assert len(attempts) == 1
    assert str(excinfo.value.last_error) == "no photo"


def test_run_records_steps_and_result(session):
    manager = _manager()

    @manager.define("double")
    async def double(ctx, value):
        doubled = await ctx.run_step("double", lambda v: v * 2, value)
        return {"value": doubled}

    async def scenario():
        run_id = manager.start(session, "double", value=21)
        await manager.background.drain()
        return run_id

    run_id = asyncio.run(scenario())
    session.expire_all()
    run = session.get(WorkflowRun, run_id)
    assert run.status == RunStatus.COMPLETED.value
    assert run.result == {"value": 42}
    step = _steps(session, run_id)["double"]
    assert step.status == StepStatus.COMPLETED.value
    assert step.attempts == 1


def test_replay_skips_checkpointed_steps(session):
    manager = _manager()
    calls = {"a": 0, "b": 0}
    crash = {"on": True}

    def step_a():
        calls["a"] += 1
        return "a-done"

    def step_b():
        calls["b"] += 1
        return "b-done"

    @manager.define("two-steps")
    async def two_steps(ctx, user_id):
        a = await ctx.run_step("a", step_a)
        if crash["on"]:
            raise RuntimeError("process died")
        b = await ctx.run_step("b", step_b)
        return {"a": a, "b": b}

    async def first_attempt():
        run_id = manager.start(session, "two-steps", user_id=1)
        await manager.background.drain()
        return run_id

    run_id = asyncio.run(first_attempt())

    # Pretend the process died mid-run: the run is still 'running'.
    session.expire_all()
    run = session.get(WorkflowRun, run_id)
    run.status = RunStatus.RUNNING.value
    session.add(run)
    session.commit()
    crash["on"] = False

    async def resume():
        resumed = manager.resume_incomplete()
        await manager.background.drain()
        return resumed

    assert asyncio.run(resume()) == [run_id]
    session.expire_all()
    run = session.get(WorkflowRun, run_id)
    assert run.status == RunStatus.COMPLETED.value
    assert run.result == {"a": "a-done", "b": "b-done"}
    assert calls == {"a": 1, "b": 1}


def test_failed_step_is_checkpointed_and_surfaces_as_step_failed(session):
    manager = _manager()
    seen = {}

    def always_fails():
        raise ValueError("model unavailable")

    @manager.define("fragile")
    async def fragile(ctx):
        try:
            await ctx.run_step("fragile", always_fails, retry=FAST)
        except StepFailedError as exc:
            seen["message"] = exc.message
            raise

    async def scenario():
        run_id = manager.start(session, "fragile")
        await manager.background.drain()
        return run_id

    run_id = asyncio.run(scenario())
    session.expire_all()
    run = session.get(WorkflowRun, run_id)
    assert run.status == RunStatus.FAILED.value
    assert "model unavailable" in run.error
    assert seen["message"] == "model unavailable"
    step = _steps(session, run_id)["fragile"]
    assert step.status == StepStatus.FAILED.value
    assert step.attempts == 3


def test_unknown_workflow_is_rejected(session):
    with pytest.raises(ValueError):
        _manager().start(session, "nope")


def test_workflow_names_are_unique():
    manager = _manager()

    @manager.define("once")
    async def once(ctx):
        return None

    with pytest.raises(ValueError):
        manager.define("once")(once)
