"""Workflow orchestrator: runs a step table in order with timeouts and retries.

Per step:

    PENDING -> RUNNING -> SUCCEEDED
                       -> RETRYING -> RUNNING ...
                       -> FAILED

Each attempt runs on a worker thread so that it can be bounded by the step
timeout. A timed-out attempt has its cancel event set, is given a bounded
grace period to stop before the next attempt starts, and counts as one
failed attempt. After the last attempt fails, the step's on_failure policy
decides what happens to the rest of the run.
"""

import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from chat_stash.errors import ChatStashError, OrchestrationHaltError
from chat_stash.logging import get_logger
from chat_stash.workflow.context import RunContext, StepContext
from chat_stash.workflow.steps import OnFailure, StepDescriptor, StepStatus, validate_steps

logger = get_logger("orchestrator")

# Process exit statuses
EXIT_OK = 0
EXIT_HALTED = 1
EXIT_STEP_FAILED = 2
EXIT_CONFLICTS = 3

# Seconds a timed-out attempt is given to honour its cancel event
DEFAULT_CANCEL_GRACE = 5.0


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class StepOutcome:
    """Trace of one step in a run."""

    name: str
    on_failure: OnFailure
    always_run: bool = False
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    error: str | None = None
    duration: float = 0.0
    history: list[StepStatus] = field(default_factory=lambda: [StepStatus.PENDING])
    # Timed-out attempts that had not stopped by the time the run returned
    still_running: int = 0

    def transition(self, status: StepStatus) -> None:
        self.status = status
        self.history.append(status)


@dataclass
class RunResult:
    """Outcome of a workflow run with the full per-step trace."""

    run_id: str
    status: RunStatus
    steps: list[StepOutcome]
    halted_by: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    @property
    def halted(self) -> bool:
        return self.halted_by is not None

    @property
    def failed_steps(self) -> list[StepOutcome]:
        return [s for s in self.steps if s.status == StepStatus.FAILED]

    def step(self, name: str) -> StepOutcome:
        for outcome in self.steps:
            if outcome.name == name:
                return outcome
        raise KeyError(name)

    def raise_for_status(self) -> None:
        """Raise OrchestrationHaltError if the run halted before completion."""
        if self.halted:
            raise OrchestrationHaltError(self)

    def format_trace(self) -> str:
        lines = [f"Run {self.run_id}: {self.status.value}"]
        for outcome in self.steps:
            line = (
                f"  [{outcome.status.value:>9}] {outcome.name} "
                f"attempts={outcome.attempts} duration={outcome.duration:.2f}s"
            )
            if outcome.error:
                line += f" error={outcome.error}"
            if outcome.still_running:
                line += f" still_running={outcome.still_running}"
            lines.append(line)
        return "\n".join(lines)


def exit_code_for(result: RunResult, conflicts_logged: bool = False) -> int:
    """Map a run result to a process exit status.

    0: every step succeeded and no conflicts were logged
    1: halted before completion
    2: completed, but at least one step failed
    3: completed, with conflicts logged for manual resolution
    """
    if result.halted:
        return EXIT_HALTED
    if not result.succeeded:
        return EXIT_STEP_FAILED
    if conflicts_logged:
        return EXIT_CONFLICTS
    return EXIT_OK


class Orchestrator:
    """Executes declared steps strictly in sequence."""

    def __init__(
        self,
        steps: Sequence[StepDescriptor],
        sleep: Callable[[float], None] = time.sleep,
        cancel_grace: float = DEFAULT_CANCEL_GRACE,
    ) -> None:
        self._steps = validate_steps(list(steps))
        self._sleep = sleep
        self._cancel_grace = cancel_grace
        self._lingering: list[tuple[StepOutcome, Future]] = []

    @property
    def steps(self) -> list[StepDescriptor]:
        return list(self._steps)

    def run(self, context: RunContext) -> RunResult:
        """Run every step and return the trace.

        always_run steps that have not run yet are executed on every exit
        path: after a halt, and when the run is interrupted by an exception,
        before that exception propagates. halt_with_cleanup also repeats the
        always_run steps that already ran earlier in the run.

        Timed-out attempts are given the cancel grace period to stop before
        the next attempt starts and again before the run returns.
        """
        outcomes = {
            step.name: StepOutcome(name=step.name, on_failure=step.on_failure, always_run=step.always_run)
            for step in self._steps
        }
        outputs: dict[str, Any] = {}
        self._lingering = []

        logger.info("Starting workflow run: run_id=%s steps=%d", context.run_id, len(self._steps))

        try:
            halting_step = self._run_steps(context, outcomes, outputs)
        except BaseException:
            logger.warning("Workflow interrupted, running teardown steps: run_id=%s", context.run_id)
            for outcome in outcomes.values():
                if outcome.status in (StepStatus.RUNNING, StepStatus.RETRYING):
                    outcome.transition(StepStatus.FAILED)
            self._run_teardown(context, outcomes, outputs)
            self._skip_pending(outcomes)
            self._settle_lingering()
            raise

        if halting_step is not None:
            self._run_teardown(context, outcomes, outputs, halting_step)
        self._skip_pending(outcomes)
        self._settle_lingering()

        trace = [outcomes[step.name] for step in self._steps]
        all_succeeded = all(o.status == StepStatus.SUCCEEDED for o in trace)
        result = RunResult(
            run_id=context.run_id,
            status=RunStatus.SUCCEEDED if all_succeeded else RunStatus.FAILED,
            steps=trace,
            halted_by=halting_step.name if halting_step is not None else None,
        )

        if result.succeeded:
            logger.info("Workflow succeeded: run_id=%s", context.run_id)
        else:
            logger.error("Workflow failed: run_id=%s\n%s", context.run_id, result.format_trace())
        return result

    def _run_steps(
        self,
        context: RunContext,
        outcomes: dict[str, StepOutcome],
        outputs: dict[str, Any],
    ) -> StepDescriptor | None:
        """Run steps in order. Returns the step whose failure halted the run, if any."""
        for step in self._steps:
            if self._run_step(step, context, outcomes[step.name], outputs):
                continue
            if step.on_failure == OnFailure.CONTINUE:
                logger.warning("Step failed, continuing: step=%s", step.name)
                continue
            logger.error("Step failed, halting: step=%s policy=%s", step.name, step.on_failure.value)
            return step
        return None

    def _run_teardown(
        self,
        context: RunContext,
        outcomes: dict[str, StepOutcome],
        outputs: dict[str, Any],
        halting_step: StepDescriptor | None = None,
    ) -> None:
        repeat_completed = halting_step is not None and halting_step.on_failure == OnFailure.HALT_WITH_CLEANUP
        for step in self._steps:
            if not step.always_run or step is halting_step:
                continue
            outcome = outcomes[step.name]
            if outcome.status == StepStatus.PENDING:
                self._run_step(step, context, outcome, outputs)
            elif repeat_completed and outcome.status in (StepStatus.SUCCEEDED, StepStatus.FAILED):
                logger.info("Repeating teardown step: step=%s", step.name)
                self._run_step(step, context, outcome, outputs)

    def _settle_lingering(self) -> None:
        """Give timed-out attempts a last chance to stop, and record those that did not."""
        for outcome, future in self._lingering:
            wait_futures([future], timeout=self._cancel_grace)
            if not future.done():
                outcome.still_running += 1
                logger.error("Timed-out attempt still running at end of run: step=%s", outcome.name)
        self._lingering = []

    @staticmethod
    def _skip_pending(outcomes: dict[str, StepOutcome]) -> None:
        for outcome in outcomes.values():
            if outcome.status == StepStatus.PENDING:
                outcome.transition(StepStatus.SKIPPED)

    def _run_step(
        self,
        step: StepDescriptor,
        context: RunContext,
        outcome: StepOutcome,
        outputs: dict[str, Any],
    ) -> bool:
        """Run one step through its attempts. Returns True on success."""
        for attempt in range(1, step.max_attempts + 1):
            outcome.attempts = attempt
            outcome.transition(StepStatus.RUNNING)
            logger.info("Running step: step=%s attempt=%d/%d", step.name, attempt, step.max_attempts)

            cancel_event = threading.Event()
            step_ctx = StepContext(
                run=context,
                step_name=step.name,
                attempt=attempt,
                outputs=MappingProxyType(dict(outputs)),
                cancel_event=cancel_event,
            )

            retryable = True
            started = time.monotonic()
            pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"step-{step.name}")
            try:
                future = pool.submit(step.action, step_ctx)
                try:
                    value = future.result(timeout=step.timeout)
                except FutureTimeoutError:
                    cancel_event.set()
                    future.cancel()
                    outcome.error = f"timed out after {step.timeout}s"
                    # Bounded wait for the attempt to honour its cancel event
                    wait_futures([future], timeout=self._cancel_grace)
                    if not future.done():
                        logger.warning(
                            "Timed-out attempt ignored cancellation: step=%s attempt=%d grace=%.1fs",
                            step.name,
                            attempt,
                            self._cancel_grace,
                        )
                        self._lingering.append((outcome, future))
                except Exception as e:
                    outcome.error = f"{type(e).__name__}: {e}"
                    retryable = not (isinstance(e, ChatStashError) and not e.retryable)
                    logger.debug("Step raised: step=%s", step.name, exc_info=True)
                else:
                    outputs[step.action.name] = value
                    outcome.error = None
                    outcome.transition(StepStatus.SUCCEEDED)
                    return True
            finally:
                outcome.duration += time.monotonic() - started
                pool.shutdown(wait=False, cancel_futures=True)

            logger.warning(
                "Step attempt failed: step=%s attempt=%d/%d error=%s",
                step.name,
                attempt,
                step.max_attempts,
                outcome.error,
            )

            if attempt < step.max_attempts and retryable:
                outcome.transition(StepStatus.RETRYING)
                if step.retry_delay > 0:
                    self._sleep(step.retry_delay)
                continue
            break

        outcome.transition(StepStatus.FAILED)
        return False
