"""
Reusable provisioning steps.

Business steps ("create cloud service", "capture image") are compositions of
these: the step toolkit owns the engine plumbing (executor, poller,
interruptible task, error recording, idempotent cleanup) and callers supply
only the remote calls.

Usage:
    steps = [
        OperationStep(
            "create_service",
            start=lambda state: client.start_operation("POST", "/services/hostedservices", body),
            undo=lambda state: client.start_operation("DELETE", f"/services/hostedservices/{name}"),
            executor=executor,
            exists_key=constants.SERVICE_EXISTS,
        ),
        WaitForReadyStep(
            "wait_for_vm",
            query=lambda state: client.get_power_state(name),
            poller=poller,
            terminal_states=constants.POWER_TERMINAL_STATES,
            failure_states=constants.POWER_FAILURE_STATES,
        ),
    ]
"""

import logging
from typing import Any, Callable, Collection, Optional

from imagebuilder.errors import OperationCancelledError, StepContractError
from imagebuilder.provisioning.interruptible import InterruptibleTask, InterruptibleTaskResult
from imagebuilder.provisioning.operations import AsyncOperationExecutor, OperationHandle
from imagebuilder.provisioning.poller import ResourcePoller
from imagebuilder.provisioning.retry import RetryPolicy
from imagebuilder.provisioning.runner import Step, StepAction
from imagebuilder.provisioning.state import Key, StateBag
from imagebuilder.settings import get_settings

logger = logging.getLogger(__name__)

StateFn = Callable[[StateBag], Any]
StartFn = Callable[[StateBag], Optional[OperationHandle]]


def process_interruptible_result(result: InterruptibleTaskResult, state: StateBag) -> StepAction:
    """Map an interruptible task result to a step action."""
    if result.is_cancelled:
        return StepAction.HALT

    if result.error is not None:
        state.record_error(result.error)
        return StepAction.HALT

    return StepAction.CONTINUE


class BaseStep(Step):
    """
    Step with the engine contract built in.

    - run at most once; cleanup only after run was entered
    - any exception from ``_run`` becomes HALT plus a recorded error
    - cancellation is not an error: HALT without recording anything
    """

    def __init__(self, name: str):
        self._name = name
        self._started = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def started(self) -> bool:
        return self._started

    def run(self, state: StateBag) -> StepAction:
        if self._started:
            raise StepContractError(f"Step {self._name} was already run")
        self._started = True

        try:
            return self._run(state)
        except StepContractError:
            raise
        except OperationCancelledError as e:
            if state.is_cancelled():
                logger.info(f"Step {self._name} stopped: {e}")
                return StepAction.HALT
            return self._fail(state, e)
        except Exception as e:
            return self._fail(state, e)

    def cleanup(self, state: StateBag) -> None:
        if not self._started:
            raise StepContractError(f"Cleanup of step {self._name} which was never started")
        self._cleanup(state)

    def _fail(self, state: StateBag, error: BaseException) -> StepAction:
        logger.error(f"Step {self._name} failed: {error}")
        state.record_error(error)
        return StepAction.HALT

    def _run(self, state: StateBag) -> StepAction:
        raise NotImplementedError

    def _cleanup(self, state: StateBag) -> None:
        pass


class OperationStep(BaseStep):
    """
    Run a remote async operation; undo it on cleanup while it exists.

    The exists flag lives in the state bag (``exists_key``) when given, so
    later steps can also clear it (e.g. capturing an image deletes the VM).
    """

    def __init__(
        self,
        name: str,
        start: StartFn,
        executor: AsyncOperationExecutor,
        undo: Optional[StartFn] = None,
        exists_key: Optional[Key] = None,
        policy_factory: Optional[Callable[[], RetryPolicy]] = None,
    ):
        super().__init__(name)
        self.start = start
        self.undo = undo
        self.exists_key = exists_key
        self._executor = executor
        self._policy_factory = policy_factory
        self._exists = False

    def _policy(self) -> Optional[RetryPolicy]:
        return self._policy_factory() if self._policy_factory else None

    def _run(self, state: StateBag) -> StepAction:
        submitted = []

        def _start() -> Optional[OperationHandle]:
            handle = self.start(state)
            submitted.append(handle)
            return handle

        try:
            self._executor.execute(
                _start,
                policy=self._policy(),
                name=self.name,
                is_cancelled=state.is_cancelled,
            )
        except OperationCancelledError:
            # The provider accepted the request, so the resource may be half-created
            if submitted:
                self._set_exists(state, True)
            raise
        self._set_exists(state, True)
        return StepAction.CONTINUE

    def _cleanup(self, state: StateBag) -> None:
        if self.undo is None or not self._get_exists(state):
            return

        logger.info(f"Removing resource created by {self.name}")
        # Undo runs during a cancelled unwind too
        self._executor.execute(
            lambda: self.undo(state),
            policy=self._policy(),
            name=f"{self.name} cleanup",
            is_cancelled=lambda: False,
        )
        self._set_exists(state, False)

    def _get_exists(self, state: StateBag) -> bool:
        if self.exists_key is None:
            return self._exists
        exists, _ = state.get_ok(self.exists_key)
        return bool(exists)

    def _set_exists(self, state: StateBag, exists: bool) -> None:
        self._exists = exists
        if self.exists_key is not None:
            state.put(self.exists_key, exists)


class WaitForReadyStep(BaseStep):
    """Poll a resource until it is ready; store the final state."""

    def __init__(
        self,
        name: str,
        query: StateFn,
        poller: ResourcePoller,
        terminal_states: Collection[Any],
        failure_states: Collection[Any] = (),
        result_key: Optional[Key] = None,
    ):
        super().__init__(name)
        self.query = query
        self.terminal_states = terminal_states
        self.failure_states = failure_states
        self.result_key = result_key
        self._poller = poller

    def _run(self, state: StateBag) -> StepAction:
        final_state = self._poller.poll(
            lambda: self.query(state),
            self.terminal_states,
            self.failure_states,
            name=self.name,
            is_cancelled=state.is_cancelled,
        )
        if self.result_key is not None:
            state.put(self.result_key, final_state)
        return StepAction.CONTINUE


class InterruptibleStep(BaseStep):
    """Run a blocking call that has no cancellation of its own."""

    def __init__(self, name: str, action: StateFn, poll_interval: Optional[float] = None):
        super().__init__(name)
        self.action = action
        if poll_interval is None:
            poll_interval = get_settings().poll.interrupt_check_interval
        self.poll_interval = poll_interval

    def _run(self, state: StateBag) -> StepAction:
        task = InterruptibleTask(state.is_cancelled, lambda: self.action(state), self.poll_interval, name=self.name)
        result = task.run()
        if result.error is not None:
            logger.error(f"Step {self.name} failed: {result.error}")
        return process_interruptible_result(result, state)


class CallableStep(BaseStep):
    """
    Run a provisioning hook.

    ``undo`` runs on cleanup once the action was entered, so it must cope
    with whatever the action managed to create before failing.
    """

    def __init__(
        self,
        name: str,
        action: StateFn,
        undo: Optional[StateFn] = None,
        result_key: Optional[Key] = None,
    ):
        super().__init__(name)
        self.action = action
        self.undo = undo
        self.result_key = result_key
        self._needs_undo = False

    def _run(self, state: StateBag) -> StepAction:
        self._needs_undo = True
        value = self.action(state)
        if self.result_key is not None:
            state.put(self.result_key, value)
        return StepAction.CONTINUE

    def _cleanup(self, state: StateBag) -> None:
        if self.undo is None or not self._needs_undo:
            return
        self.undo(state)
        self._needs_undo = False
