"""Tests for the reusable provisioning steps."""

import threading
from unittest.mock import MagicMock

import pytest

from imagebuilder.errors import (
    OperationCancelledError,
    PollTimeoutError,
    RemoteError,
    ResourceFailureError,
    StepContractError,
)
from imagebuilder.provisioning import constants
from imagebuilder.provisioning.interruptible import InterruptibleTaskResult
from imagebuilder.provisioning.operations import AsyncOperationExecutor, OperationState, OperationStatus
from imagebuilder.provisioning.poller import ResourcePoller
from imagebuilder.provisioning.runner import StepAction, StepRunner
from imagebuilder.provisioning.steps import (
    BaseStep,
    CallableStep,
    InterruptibleStep,
    OperationStep,
    WaitForReadyStep,
    process_interruptible_result,
)
from imagebuilder.settings import PollSettings, RetrySettings


@pytest.fixture
def executor(clock):
    return AsyncOperationExecutor(
        MagicMock(return_value=OperationStatus(OperationState.SUCCEEDED)),
        poll_interval=1.0,
        sleep=clock.sleep,
        clock=clock,
        retry_settings=RetrySettings(),
        poll_settings=PollSettings(),
    )


@pytest.fixture
def poller(clock):
    return ResourcePoller(interval=15, max_attempts=3, sleep=clock.sleep, clock=clock)


# ---------------------------------------------------------------------------
# Interruptible result mapping
# ---------------------------------------------------------------------------

class TestProcessInterruptibleResult:
    def test_cancelled_halts_without_error(self, state):
        assert process_interruptible_result(InterruptibleTaskResult(is_cancelled=True), state) is StepAction.HALT
        assert state.error is None

    def test_error_halts_and_records(self, state):
        error = RuntimeError("x")
        assert process_interruptible_result(InterruptibleTaskResult(error=error), state) is StepAction.HALT
        assert state.error is error

    def test_success_continues(self, state):
        assert process_interruptible_result(InterruptibleTaskResult(), state) is StepAction.CONTINUE


# ---------------------------------------------------------------------------
# BaseStep contract
# ---------------------------------------------------------------------------

class Exploding(BaseStep):
    def __init__(self, error):
        super().__init__("exploding")
        self.error = error

    def _run(self, state):
        raise self.error


class TestBaseStep:
    def test_exception_becomes_halt_and_error(self, state):
        error = RemoteError("InvalidParameter", "bad")

        assert Exploding(error).run(state) is StepAction.HALT
        assert state.error is error

    def test_cancellation_is_not_an_error(self, state):
        state.request_cancellation()

        assert Exploding(OperationCancelledError("stop")).run(state) is StepAction.HALT
        assert state.error is None

    def test_cancelled_error_without_request_is_recorded(self, state):
        error = OperationCancelledError("provider cancelled the deployment")

        Exploding(error).run(state)

        assert state.error is error

    def test_contract_errors_propagate(self, state):
        with pytest.raises(StepContractError):
            Exploding(StepContractError("bug")).run(state)

    def test_run_at_most_once(self, state):
        step = CallableStep("hook", action=lambda s: None)
        step.run(state)

        with pytest.raises(StepContractError):
            step.run(state)

    def test_cleanup_requires_run(self, state):
        with pytest.raises(StepContractError):
            CallableStep("hook", action=lambda s: None).cleanup(state)

    def test_name(self):
        assert CallableStep("upload_cert", action=lambda s: None).name == "upload_cert"


# ---------------------------------------------------------------------------
# OperationStep
# ---------------------------------------------------------------------------

class TestOperationStep:
    def test_run_sets_exists_flag(self, executor, state):
        step = OperationStep("create_service", start=lambda s: "req-1", executor=executor,
                             exists_key=constants.SERVICE_EXISTS)

        assert step.run(state) is StepAction.CONTINUE
        assert state.get(constants.SERVICE_EXISTS) is True

    def test_cleanup_is_idempotent(self, executor, state):
        undo = MagicMock(return_value=None)
        step = OperationStep("create_service", start=lambda s: None, undo=undo, executor=executor,
                             exists_key=constants.SERVICE_EXISTS)

        step.run(state)
        step.cleanup(state)
        step.cleanup(state)

        assert undo.call_count == 1
        assert state.get(constants.SERVICE_EXISTS) is False

    def test_no_undo_when_run_failed(self, executor, state):
        undo = MagicMock()
        start = MagicMock(side_effect=RemoteError("InvalidParameter", "bad"))
        step = OperationStep("create_service", start=start, undo=undo, executor=executor)

        assert step.run(state) is StepAction.HALT
        step.cleanup(state)

        undo.assert_not_called()
        assert state.error.code == "InvalidParameter"

    def test_flag_cleared_by_later_step(self, executor, state):
        """Capturing an image removes the VM; its undo must not run again."""
        undo = MagicMock()
        step = OperationStep("create_vm", start=lambda s: None, undo=undo, executor=executor,
                             exists_key=constants.VM_EXISTS)

        step.run(state)
        state.put(constants.VM_EXISTS, False)
        step.cleanup(state)

        undo.assert_not_called()

    def test_undo_uses_state(self, executor, state):
        state.put(constants.COMPUTE_NAME, "pkrvm123")
        seen = []
        step = OperationStep(
            "create_vm",
            start=lambda s: None,
            undo=lambda s: seen.append(s.get(constants.COMPUTE_NAME)),
            executor=executor,
        )

        step.run(state)
        step.cleanup(state)

        assert seen == ["pkrvm123"]

    def test_cleanup_errors_propagate_to_runner(self, executor, state):
        step = OperationStep(
            "create_vm",
            start=lambda s: None,
            undo=MagicMock(side_effect=RemoteError("InvalidParameter", "nope")),
            executor=executor,
        )

        result = StepRunner([step], always_cleanup=True).run(state)

        assert [name for name, _ in result.cleanup_failures] == ["create_vm"]

    def test_cancelled_run_undoes_earlier_operation(self, clock, state):
        executor = AsyncOperationExecutor(
            MagicMock(return_value=OperationStatus(OperationState.SUCCEEDED)),
            poll_interval=1.0,
            is_cancelled=state.is_cancelled,
            sleep=clock.sleep,
            clock=clock,
            retry_settings=RetrySettings(),
            poll_settings=PollSettings(),
        )
        undo = MagicMock(return_value=None)
        steps = [
            OperationStep("create_service", start=lambda s: "req-1", undo=undo, executor=executor,
                          exists_key=constants.SERVICE_EXISTS),
            CallableStep("interrupt", action=lambda s: s.request_cancellation()),
        ]

        result = StepRunner(steps).run(state)

        assert result.cancelled
        assert undo.call_count == 1
        assert result.cleanup_failures == []
        assert state.get(constants.SERVICE_EXISTS) is False

    def test_cancel_while_polling_halts_and_undoes(self, clock, state):
        def get_status(handle):
            state.request_cancellation()
            return OperationStatus(OperationState.IN_PROGRESS)

        executor = AsyncOperationExecutor(
            get_status,
            poll_interval=1.0,
            sleep=clock.sleep,
            clock=clock,
            retry_settings=RetrySettings(),
            poll_settings=PollSettings(),
        )
        undo = MagicMock(return_value=None)
        later = MagicMock(return_value=None)
        steps = [
            OperationStep("create_vm", start=lambda s: "req-1", undo=undo, executor=executor,
                          exists_key=constants.VM_EXISTS),
            CallableStep("capture", action=later),
        ]

        result = StepRunner(steps).run(state)

        assert result.cancelled
        assert result.error is None
        later.assert_not_called()
        assert undo.call_count == 1

    def test_cancel_before_submit_skips_undo(self, executor, state):
        state.request_cancellation()
        start = MagicMock(return_value="req-1")
        undo = MagicMock()
        step = OperationStep("create_vm", start=start, undo=undo, executor=executor)

        assert step.run(state) is StepAction.HALT
        step.cleanup(state)

        start.assert_not_called()
        undo.assert_not_called()

    def test_policy_factory(self, executor, state):
        policy = MagicMock()
        policy.should_retry.return_value = (False, 0)
        step = OperationStep("op", start=MagicMock(side_effect=RemoteError("X")), executor=executor,
                             policy_factory=lambda: policy)

        step.run(state)

        policy.should_retry.assert_called_once()


# ---------------------------------------------------------------------------
# WaitForReadyStep
# ---------------------------------------------------------------------------

class TestWaitForReadyStep:
    def test_stores_final_state(self, poller, state):
        step = WaitForReadyStep(
            "wait_for_vm",
            query=MagicMock(side_effect=["Starting", "Started"]),
            poller=poller,
            terminal_states=constants.POWER_TERMINAL_STATES,
            failure_states=constants.POWER_FAILURE_STATES,
            result_key="powerState",
        )

        assert step.run(state) is StepAction.CONTINUE
        assert state.get("powerState") == "Started"

    def test_failure_state_halts(self, poller, state):
        step = WaitForReadyStep(
            "wait_for_vm",
            query=lambda s: "Stopped",
            poller=poller,
            terminal_states=constants.POWER_TERMINAL_STATES,
            failure_states=constants.POWER_FAILURE_STATES,
        )

        assert step.run(state) is StepAction.HALT
        assert isinstance(state.error, ResourceFailureError)

    def test_timeout_halts(self, poller, state):
        step = WaitForReadyStep("wait_for_vm", query=lambda s: "Starting", poller=poller,
                                terminal_states=constants.POWER_TERMINAL_STATES)

        step.run(state)

        assert isinstance(state.error, PollTimeoutError)

    def test_uses_run_cancellation(self, poller, state):
        state.request_cancellation()
        query = MagicMock()
        step = WaitForReadyStep("wait_for_vm", query=query, poller=poller,
                                terminal_states=constants.POWER_TERMINAL_STATES)

        assert step.run(state) is StepAction.HALT
        assert state.error is None
        query.assert_not_called()


# ---------------------------------------------------------------------------
# InterruptibleStep
# ---------------------------------------------------------------------------

class TestInterruptibleStep:
    def test_success(self, state):
        done = []
        step = InterruptibleStep("delete_group", action=lambda s: done.append(True), poll_interval=0.01)

        assert step.run(state) is StepAction.CONTINUE
        assert done == [True]

    def test_error(self, state):
        def fail(s):
            raise RemoteError("InternalError", "boom")

        step = InterruptibleStep("delete_group", action=fail, poll_interval=0.01)

        assert step.run(state) is StepAction.HALT
        assert state.error.code == "InternalError"

    def test_cancelled(self, state):
        release = threading.Event()

        def block(s):
            s.request_cancellation()
            release.wait(10)

        step = InterruptibleStep("delete_group", action=block, poll_interval=0.01)
        try:
            assert step.run(state) is StepAction.HALT
        finally:
            release.set()

        assert state.error is None

    def test_default_interval_from_settings(self):
        step = InterruptibleStep("delete_group", action=lambda s: None)
        assert step.poll_interval == 0.1


# ---------------------------------------------------------------------------
# CallableStep
# ---------------------------------------------------------------------------

class TestCallableStep:
    def test_result_stored(self, state):
        step = CallableStep("get_address", action=lambda s: "10.0.0.4", result_key=constants.VM_ADDRESS)

        step.run(state)

        assert state.get(constants.VM_ADDRESS) == "10.0.0.4"

    def test_undo_runs_once_even_after_failure(self, state):
        undo = MagicMock()

        def fail(s):
            raise RuntimeError("half created")

        step = CallableStep("create_disk", action=fail, undo=undo)

        assert step.run(state) is StepAction.HALT
        step.cleanup(state)
        step.cleanup(state)

        undo.assert_called_once_with(state)
