"""
nima/workflows/engine.py
────────────────────────
Durable, checkpointed workflows on top of the database.

A workflow is an async handler that performs its side effects through
ctx.run_step(). Each step's outcome is written to the workflow_steps table
under a key unique within the run; when a run is replayed (after a restart,
or a resume call) finished steps return their stored outcome and only the
remaining steps execute.

Retries
───────
Steps are retried with exponential backoff when they raise. A step raises
PermanentStepError to fail without further attempts. Once a step has
failed for good, StepFailedError is raised into the handler, which decides
whether that ends the run or only one branch of it.
"""

import asyncio
import hashlib
import inspect
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlmodel import Session, select

from nima.core.config import get_settings
from nima.database import session_scope
from nima.models import RunStatus, StepStatus, WorkflowRun, WorkflowStep
from nima.workflows.scheduler import BackgroundScheduler, scheduler

logger = logging.getLogger(__name__)
settings = get_settings()

Handler = Callable[..., Awaitable[Any]]


class PermanentStepError(Exception):
    """Raised inside a step when retrying cannot help."""


class RetryExhaustedError(Exception):
    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(str(last_error))
        self.attempts = attempts
        self.last_error = last_error


class StepFailedError(Exception):
    def __init__(self, step_key: str, message: str) -> None:
        super().__init__(f"Step '{step_key}' failed: {message}")
        self.step_key = step_key
        self.message = message


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    initial_backoff: float
    backoff_base: float

    def delay_for(self, attempt: int) -> float:
        return self.initial_backoff * self.backoff_base ** (attempt - 1)


def default_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.STEP_MAX_ATTEMPTS,
        initial_backoff=settings.STEP_RETRY_INITIAL_BACKOFF_SECONDS,
        backoff_base=settings.STEP_RETRY_BACKOFF_BASE,
    )


NO_RETRY = RetryPolicy(max_attempts=1, initial_backoff=0, backoff_base=1)


async def call_with_retry(fn: Callable[..., Any], *args: Any, policy: RetryPolicy, label: str, **kwargs: Any) -> Any:
    """Call a sync or async function, retrying failures according to `policy`."""
    result, _ = await _call_counting_attempts(fn, args, kwargs, policy, label)
    return result


async def _call_counting_attempts(
    fn: Callable[..., Any],
    args: tuple,
    kwargs: dict,
    policy: RetryPolicy,
    label: str,
) -> tuple[Any, int]:
    attempt = 0
    while True:
        attempt += 1
        try:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result, attempt
        except PermanentStepError as exc:
            logger.warning("%s failed permanently on attempt %d: %s", label, attempt, exc)
            raise RetryExhaustedError(attempt, exc) from exc
        except Exception as exc:
            if attempt >= policy.max_attempts:
                logger.error("%s failed after %d attempt(s): %s", label, attempt, exc)
                raise RetryExhaustedError(attempt, exc) from exc
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed on attempt %d/%d (%s); retrying in %.2fs",
                label, attempt, policy.max_attempts, exc, delay,
            )
            await asyncio.sleep(delay)


def _input_hash(args: tuple, kwargs: dict) -> str:
    payload = json.dumps([list(args), kwargs], sort_keys=True, default=str)
    return hashlib.sha256(payload.encode()).hexdigest()


class WorkflowContext:
    """Handed to a workflow handler; the only way it should touch the world."""

    def __init__(self, manager: "WorkflowManager", run_id: str, name: str) -> None:
        self.manager = manager
        self.run_id = run_id
        self.name = name

    def _load_checkpoint(self, step_key: str) -> Optional[WorkflowStep]:
        with session_scope() as session:
            return session.exec(
                select(WorkflowStep).where(
                    WorkflowStep.run_id == self.run_id,
                    WorkflowStep.step_key == step_key,
                )
            ).first()

    def _save_checkpoint(
        self,
        step_key: str,
        input_hash: str,
        status: StepStatus,
        attempts: int,
        output: Any = None,
        error: Optional[str] = None,
    ) -> None:
        with session_scope() as session:
            session.add(
                WorkflowStep(
                    run_id=self.run_id,
                    step_key=step_key,
                    input_hash=input_hash,
                    status=status.value,
                    attempts=attempts,
                    output=output,
                    error=error,
                )
            )
            session.commit()

    async def run_step(
        self,
        step_key: str,
        fn: Callable[..., Any],
        *args: Any,
        retry: bool | RetryPolicy = True,
        **kwargs: Any,
    ) -> Any:
        """
        Execute `fn(*args, **kwargs)` once per run and checkpoint the outcome.

        The return value must be JSON-serialisable. A step that already
        finished in this run is not executed again: its stored output is
        returned, or its stored failure re-raised as StepFailedError.
        """
        input_hash = _input_hash(args, kwargs)
        checkpoint = self._load_checkpoint(step_key)
        if checkpoint is not None:
            if checkpoint.input_hash != input_hash:
                logger.warning(
                    "[WORKFLOW:%s] Step %s replayed with different input (run %s)",
                    self.name, step_key, self.run_id,
                )
            if checkpoint.status == StepStatus.COMPLETED.value:
                logger.info("[WORKFLOW:%s] Step %s already done, reusing output", self.name, step_key)
                return checkpoint.output
            raise StepFailedError(step_key, checkpoint.error or "unknown error")

        if retry is True:
            policy = default_retry_policy()
        elif retry is False:
            policy = NO_RETRY
        else:
            policy = retry

        label = f"[WORKFLOW:{self.name}] step {step_key}"
        async with self.manager.step_slot():
            try:
                output, attempts = await _call_counting_attempts(fn, args, kwargs, policy, label)
            except RetryExhaustedError as exc:
                self._save_checkpoint(
                    step_key, input_hash, StepStatus.FAILED, exc.attempts, error=str(exc.last_error)
                )
                raise StepFailedError(step_key, str(exc.last_error)) from exc.last_error

        self._save_checkpoint(step_key, input_hash, StepStatus.COMPLETED, attempts, output=output)
        return output


class WorkflowManager:
    """
    Registry and driver for named workflows.

    start() records a run and schedules its driver in the background; the
    caller gets the run id straight away and polls for progress.
    """

    def __init__(
        self,
        max_parallelism: int,
        background: Optional[BackgroundScheduler] = None,
    ) -> None:
        self.max_parallelism = max_parallelism
        self.background = background or scheduler
        self._handlers: dict[str, Handler] = {}
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._semaphore_loop: Optional[asyncio.AbstractEventLoop] = None

    def define(self, name: str) -> Callable[[Handler], Handler]:
        def decorator(handler: Handler) -> Handler:
            if name in self._handlers:
                raise ValueError(f"Workflow '{name}' is already defined.")
            self._handlers[name] = handler
            return handler

        return decorator

    def step_slot(self) -> asyncio.Semaphore:
        """Semaphore capping concurrently executing steps on this loop."""
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self.max_parallelism)
            self._semaphore_loop = loop
        return self._semaphore

    def start(self, session: Session, name: str, **args: Any) -> str:
        """Persist a new run and schedule it. Must be called on the event loop."""
        if name not in self._handlers:
            raise ValueError(f"Unknown workflow '{name}'.")
        run = WorkflowRun(
            id=uuid.uuid4().hex,
            name=name,
            user_id=args.get("user_id"),
            args=args,
        )
        session.add(run)
        session.commit()
        logger.info("[WORKFLOW:%s] Started run %s", name, run.id)
        self.background.schedule(self.drive, run.id, name=f"workflow:{name}:{run.id}")
        return run.id

    async def drive(self, run_id: str) -> None:
        """Run (or replay) a workflow to its end and record the outcome."""
        with session_scope() as session:
            run = session.get(WorkflowRun, run_id)
            if run is None:
                logger.error("Workflow run %s not found", run_id)
                return
            if run.status != RunStatus.RUNNING.value:
                logger.info("Workflow run %s already %s", run_id, run.status)
                return
            name, args = run.name, dict(run.args or {})

        handler = self._handlers.get(name)
        if handler is None:
            self._finish(run_id, RunStatus.FAILED, error=f"Unknown workflow '{name}'")
            return

        ctx = WorkflowContext(self, run_id, name)
        started = datetime.now(timezone.utc)
        try:
            result = await handler(ctx, **args)
        except Exception as exc:
            logger.exception("[WORKFLOW:%s] Run %s failed", name, run_id)
            self._finish(run_id, RunStatus.FAILED, error=str(exc))
            return

        elapsed = (datetime.now(timezone.utc) - started).total_seconds()
        logger.info("[WORKFLOW:%s] Run %s completed in %.1fs", name, run_id, elapsed)
        self._finish(run_id, RunStatus.COMPLETED, result=result)

    def _finish(
        self,
        run_id: str,
        status: RunStatus,
        result: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        with session_scope() as session:
            run = session.get(WorkflowRun, run_id)
            if run is None:
                return
            run.status = status.value
            run.result = result
            run.error = error
            run.completed_at = datetime.now(timezone.utc)
            session.add(run)
            session.commit()

    def resume_incomplete(self) -> list[str]:
        """Reschedule every run left 'running' by a previous process."""
        with session_scope() as session:
            run_ids = list(
                session.exec(
                    select(WorkflowRun.id).where(WorkflowRun.status == RunStatus.RUNNING.value)
                ).all()
            )
        for run_id in run_ids:
            logger.info("Resuming workflow run %s", run_id)
            self.background.schedule(self.drive, run_id, name=f"workflow:resume:{run_id}")
        return run_ids

    def get_run(self, session: Session, run_id: str) -> Optional[WorkflowRun]:
        return session.get(WorkflowRun, run_id)

    def get_steps(self, session: Session, run_id: str) -> list[WorkflowStep]:
        return list(
            session.exec(
                select(WorkflowStep)
                .where(WorkflowStep.run_id == run_id)
                .order_by(WorkflowStep.id)  # type: ignore[arg-type]
            ).all()
        )


workflow = WorkflowManager(max_parallelism=settings.WORKFLOW_MAX_PARALLELISM)
