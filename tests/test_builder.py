"""Tests for the build facade."""

import threading
from unittest.mock import patch

import pytest

from imagebuilder.errors import BuildHaltedError, StepContractError
from imagebuilder.provisioning import constants
from imagebuilder.provisioning.builder import BuildOutcome, ImageBuilder
from imagebuilder.provisioning.runner import StepAction
from imagebuilder.provisioning.tempname import TempNames
from imagebuilder.settings import Settings


@pytest.fixture
def builder(events):
    return ImageBuilder(settings=Settings(), events=events)


class TestPrepare:
    def test_seeds_temp_names(self, builder):
        state = builder.prepare(names=TempNames.generate("abc"))

        assert state.get(constants.COMPUTE_NAME) == "pkrvmabc"
        assert state.get(constants.DEPLOYMENT_NAME) == "pkrdpabc"
        assert state.get(constants.OS_DISK_NAME) == "pkrosabc"
        assert state.get(constants.RESOURCE_GROUP_NAME) == "packer-Resource-Group-abc"

    def test_seeds_values(self, builder):
        config = {"location": "westus"}
        state = builder.prepare({"config": config})
        assert state.get(constants.CONFIG) is config

    def test_fresh_state_every_time(self, builder):
        assert builder.prepare() is not builder.prepare()


class TestRun:
    def test_succeeded(self, builder, make_step):
        result = builder.run([make_step("a"), make_step("b")])

        assert result.outcome is BuildOutcome.SUCCEEDED
        assert result.succeeded
        assert result.error is None
        assert result.state is not None
        assert builder.result is result

    def test_failed_with_error(self, builder, make_step, journal):
        error = RuntimeError("deployment failed")
        result = builder.run([make_step("a"), make_step("b", action=StepAction.HALT, error=error)])

        assert result.outcome is BuildOutcome.FAILED
        assert result.error is error
        assert journal[-2:] == [("cleanup", "b"), ("cleanup", "a")]

    def test_halt_without_error(self, builder, make_step):
        result = builder.run([make_step("a", action=StepAction.HALT)])

        assert result.outcome is BuildOutcome.FAILED
        assert isinstance(result.error, BuildHaltedError)

    def test_cancelled_is_not_an_error(self, builder, make_step):
        def cancel_and_fail(state):
            state.request_cancellation()
            state.record_error(RuntimeError("interrupted"))

        result = builder.run([make_step("a", on_run=cancel_and_fail)])

        assert result.outcome is BuildOutcome.CANCELLED
        assert result.error is None

    def test_cleanup_warnings(self, builder, make_step):
        result = builder.run([
            make_step("a", cleanup_error=RuntimeError("leaked disk")),
            make_step("b", action=StepAction.HALT),
        ])

        assert [name for name, _ in result.cleanup_warnings] == ["a"]

    def test_contract_errors_propagate(self, builder, make_step):
        with pytest.raises(StepContractError):
            builder.run([make_step("a", action=None)])

    def test_debug_mode_pauses(self, make_step):
        builder = ImageBuilder(settings=Settings(debug=True))

        with patch("builtins.input", return_value="") as mock_input:
            builder.run([make_step("a"), make_step("b")])

        assert mock_input.call_count == 2


class TestBackground:
    def test_start_and_wait(self, builder, make_step):
        builder.start([make_step("a")])

        result = builder.wait(timeout=5)

        assert result.outcome is BuildOutcome.SUCCEEDED
        assert builder.is_running() is False

    def test_cancel_running_build(self, builder, make_step, journal):
        entered = threading.Event()

        def block(state):
            entered.set()
            state.wait_for_cancellation(timeout=10)

        builder.start([make_step("a"), make_step("b", on_run=block), make_step("c")])
        assert entered.wait(5)
        assert builder.is_running()

        builder.cancel(wait=True, timeout=5)
        result = builder.wait(timeout=5)

        assert result.outcome is BuildOutcome.CANCELLED
        assert ("run", "c") not in journal
        assert journal[-2:] == [("cleanup", "b"), ("cleanup", "a")]

    def test_cancel_before_start(self, builder, make_step, journal):
        assert builder.cancel() is True

        result = builder.run([make_step("a")])

        assert result.outcome is BuildOutcome.CANCELLED
        assert journal == []

    def test_start_twice(self, builder, make_step):
        builder.start([make_step("a")])
        builder.wait(5)

        with pytest.raises(RuntimeError):
            builder.start([make_step("b")])

    def test_crashed_thread_reports_failure(self, builder, make_step):
        builder.start([make_step("a", action=None)])

        result = builder.wait(timeout=5)

        assert result.outcome is BuildOutcome.FAILED
        assert isinstance(result.error, StepContractError)


class TestLoggingSetup:
    def test_setup_logging_uses_builder_settings(self):
        settings = Settings()
        with patch("imagebuilder.provisioning.builder.configure_logging") as configure:
            ImageBuilder(settings=settings, setup_logging=True)

        configure.assert_called_once_with(settings.logging)

    def test_logging_left_alone_by_default(self):
        with patch("imagebuilder.provisioning.builder.configure_logging") as configure:
            ImageBuilder(settings=Settings())

        configure.assert_not_called()
