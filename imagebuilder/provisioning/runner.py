"""
Step runner.

Runs an ordered list of steps against one StateBag:

    NOT_STARTED -> RUNNING(i) -> CONTINUING(i+1) -> ... -> COMPLETED
                             \\-> HALTED(i)    -> unwind i..0
                             \\-> CANCELLED(i) -> unwind i..0

Unwind calls ``cleanup`` on every step whose ``run`` was entered, most
recent first. A failing cleanup is reported and the unwind carries on.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from imagebuilder.errors import StepContractError
from imagebuilder.provisioning import constants
from imagebuilder.provisioning import events as ev
from imagebuilder.provisioning.events import EventSink
from imagebuilder.provisioning.state import StateBag

logger = logging.getLogger(__name__)


class StepAction(Enum):
    """What a step tells the runner to do next."""

    CONTINUE = "continue"
    HALT = "halt"


class Step(ABC):
    """
    One provisioning action plus its compensating cleanup.

    ``run`` and ``cleanup`` must not raise: a failure is recorded with
    ``state.record_error(...)`` and reported as StepAction.HALT. Cleanup
    must be idempotent and cope with half-created resources.
    """

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    def run(self, state: StateBag) -> StepAction:
        ...

    def cleanup(self, state: StateBag) -> None:
        pass


PauseFn = Callable[[Step, StateBag], None]


class RunnerState(Enum):
    """Step runner states."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    CONTINUING = "continuing"
    HALTED = "halted"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


@dataclass
class RunResult:
    """
    How a run ended.

    Attributes:
        state: Terminal runner state (COMPLETED, HALTED or CANCELLED)
        last_index: Index of the last step whose run was entered
        steps_run: Names of the steps whose run was entered, in order
        error: First error recorded in the state bag
        cleanup_failures: (step name, exception) for every cleanup that raised
    """

    state: RunnerState
    last_index: Optional[int] = None
    steps_run: List[str] = field(default_factory=list)
    error: Optional[BaseException] = None
    cleanup_failures: List[Tuple[str, BaseException]] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.state is RunnerState.COMPLETED

    @property
    def halted(self) -> bool:
        return self.state is RunnerState.HALTED

    @property
    def cancelled(self) -> bool:
        return self.state is RunnerState.CANCELLED


class StepRunner:
    """
    Executes steps strictly in order, unwinding on halt or cancellation.

    Args:
        steps: Ordered steps
        pause_fn: Called before every step (debug / single-step mode)
        events: Event sink
        always_cleanup: Also unwind after a COMPLETED run, for pipelines
            whose cleanups tear down temporary resources

    Usage:
        runner = StepRunner([CreateService(...), CreateVm(...)])
        result = runner.run(StateBag())
        if result.halted:
            print(result.error)
    """

    def __init__(
        self,
        steps: Sequence[Step],
        pause_fn: Optional[PauseFn] = None,
        events: Optional[EventSink] = None,
        always_cleanup: bool = False,
    ):
        self.steps = list(steps)
        self.pause_fn = pause_fn
        self.always_cleanup = always_cleanup
        self._events = events
        self._state = RunnerState.NOT_STARTED
        self._index: Optional[int] = None
        self._bag: Optional[StateBag] = None
        self._cancel_requested = False
        self._lock = threading.Lock()
        self._done = threading.Event()

    @property
    def state(self) -> RunnerState:
        return self._state

    @property
    def current_index(self) -> Optional[int]:
        return self._index

    def run(self, state: StateBag) -> RunResult:
        """Run every step; returns once the run is COMPLETED or fully unwound."""
        with self._lock:
            if self._state is not RunnerState.NOT_STARTED:
                raise StepContractError("A StepRunner can only be run once")
            self._bag = state
            self._state = RunnerState.CONTINUING
            if self._cancel_requested:
                state.request_cancellation()

        started: List[Tuple[int, Step]] = []
        try:
            self._run_steps(state, started)
        except KeyboardInterrupt:
            logger.info("Interrupted by the user, cancelling the run")
            state.request_cancellation()
            state.put(constants.CANCELLED, True)
            self._transition(RunnerState.CANCELLED)
            self._unwind(state, started)
            self._done.set()
            raise
        except BaseException:
            # A step broke its contract: release what was created, then fail loudly
            self._transition(RunnerState.HALTED)
            state.put(constants.HALTED, True)
            self._unwind(state, started)
            self._done.set()
            raise

        result = RunResult(
            state=self._state,
            last_index=started[-1][0] if started else None,
            steps_run=[step.name for _, step in started],
        )

        if self._state is not RunnerState.COMPLETED or self.always_cleanup:
            result.cleanup_failures = self._unwind(state, started)

        result.error = state.error
        ev.emit(
            self._events,
            ev.RUN_FINISHED,
            outcome=result.state.value,
            step_index=result.last_index,
            error=str(result.error) if result.error else None,
        )
        self._done.set()
        return result

    def _run_steps(self, state: StateBag, started: List[Tuple[int, Step]]) -> None:
        for i, step in enumerate(self.steps):
            if self._cancelled_before(state, i):
                return

            if self.pause_fn is not None:
                self.pause_fn(step, state)
                if self._cancelled_before(state, i):
                    return

            self._index = i
            self._transition(RunnerState.RUNNING)
            started.append((i, step))
            logger.info(f"Step {i + 1}/{len(self.steps)}: {step.name}")
            ev.emit(self._events, ev.STEP_STARTED, step=step.name, step_index=i)

            try:
                action = step.run(state)
            except Exception as e:
                state.record_error(e)
                logger.error(f"Step {step.name} raised instead of halting: {e}")
                raise

            if not isinstance(action, StepAction):
                raise StepContractError(
                    f"Step {step.name} returned {action!r} instead of a StepAction"
                )

            if state.is_cancelled():
                state.put(constants.CANCELLED, True)
                self._transition(RunnerState.CANCELLED)
                ev.emit(self._events, ev.STEP_CANCELLED, step=step.name, step_index=i)
                return

            if action is StepAction.HALT:
                state.put(constants.HALTED, True)
                self._transition(RunnerState.HALTED)
                error = state.error
                ev.emit(
                    self._events,
                    ev.STEP_HALTED,
                    step=step.name,
                    step_index=i,
                    error=str(error) if error else None,
                )
                return

            self._transition(RunnerState.CONTINUING)
            ev.emit(self._events, ev.STEP_COMPLETED, step=step.name, step_index=i)

        self._transition(RunnerState.COMPLETED)

    def _cancelled_before(self, state: StateBag, i: int) -> bool:
        """Check the flag at step entry; a step never entered is never cleaned up."""
        if not state.is_cancelled():
            return False
        logger.info(f"Run cancelled before step {i + 1}/{len(self.steps)}")
        state.put(constants.CANCELLED, True)
        self._transition(RunnerState.CANCELLED)
        ev.emit(self._events, ev.STEP_CANCELLED, step=self.steps[i].name, step_index=i)
        return True

    def _unwind(self, state: StateBag, started: List[Tuple[int, Step]]) -> List[Tuple[str, BaseException]]:
        failures: List[Tuple[str, BaseException]] = []
        if started:
            logger.info(f"Cleaning up {len(started)} step(s)")

        for i, step in reversed(started):
            ev.emit(self._events, ev.STEP_CLEANUP, step=step.name, step_index=i)
            try:
                step.cleanup(state)
            except Exception as e:
                logger.warning(f"Cleanup of step {step.name} failed: {e}")
                failures.append((step.name, e))
                ev.emit(self._events, ev.STEP_CLEANUP_FAILED, step=step.name, step_index=i, error=str(e))

        return failures

    def _transition(self, new_state: RunnerState) -> None:
        logger.debug(f"Runner {self._state.value} -> {new_state.value} (step index {self._index})")
        self._state = new_state

    def cancel(self, wait: bool = True, timeout: Optional[float] = None) -> bool:
        """
        Request cancellation of the run.

        Args:
            wait: Block until the run has finished unwinding
            timeout: Maximum seconds to wait

        Returns:
            True if the run is finished (or was never started)
        """
        with self._lock:
            self._cancel_requested = True
            bag = self._bag

        if bag is None:
            logger.info("Cancellation requested before the run started")
            return True

        logger.info("Cancelling the step runner...")
        bag.request_cancellation()

        if wait:
            return self._done.wait(timeout)
        return self._done.is_set()


def console_pause_fn(input_fn: Optional[Callable[[str], str]] = None) -> PauseFn:
    """Pause function that waits for the operator to press enter before each step."""

    def _pause(step: Step, state: StateBag) -> None:
        prompt = input_fn or input
        prompt(f"Pausing before step '{step.name}'. Press enter to continue. ")

    return _pause
