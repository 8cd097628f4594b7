"""
Build execution.

Runs one image build (a list of steps) either in the foreground or in a
background thread, and reduces the runner's result to what a caller cares
about: succeeded, cancelled by the user, or failed with an error.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from imagebuilder.errors import BuildHaltedError
from imagebuilder.logging_config import configure_logging
from imagebuilder.provisioning import constants
from imagebuilder.provisioning.events import EventSink
from imagebuilder.provisioning.runner import RunResult, Step, StepRunner, console_pause_fn
from imagebuilder.provisioning.state import StateBag
from imagebuilder.provisioning.tempname import TempNames
from imagebuilder.settings import Settings, get_settings
from imagebuilder.timestamps import monotonic

logger = logging.getLogger(__name__)


class BuildOutcome(Enum):
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class BuildResult:
    """
    Result of one build.

    Attributes:
        outcome: SUCCEEDED, CANCELLED or FAILED
        error: The recorded error (FAILED only)
        cleanup_warnings: (step name, exception) for every cleanup that raised
        duration: Wall time in seconds
        state: Final state bag, for reading artifacts
    """

    outcome: BuildOutcome
    error: Optional[BaseException] = None
    cleanup_warnings: List[Tuple[str, BaseException]] = field(default_factory=list)
    duration: float = 0.0
    state: Optional[StateBag] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is BuildOutcome.SUCCEEDED


class ImageBuilder:
    """
    Builds an image from a list of steps.

    Usage:
        builder = ImageBuilder(setup_logging=True)
        state = builder.prepare({"config": config})
        result = builder.run(steps, state)

        # or in the background
        builder.start(steps, state)
        builder.cancel()
        result = builder.wait()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        events: Optional[EventSink] = None,
        setup_logging: bool = False,
    ):
        self.settings = settings or get_settings()
        if setup_logging:
            configure_logging(self.settings.logging)
        self._events = events
        self._runner: Optional[StepRunner] = None
        self._thread: Optional[threading.Thread] = None
        self._result: Optional[BuildResult] = None
        self._cancel_requested = False
        self._lock = threading.Lock()

    def prepare(self, values: Optional[Dict[str, Any]] = None, names: Optional[TempNames] = None) -> StateBag:
        """Create the state bag for a build, seeded with ``values`` and temp names."""
        names = names or TempNames.generate()
        state = StateBag()
        state.put(constants.COMPUTE_NAME, names.compute_name)
        state.put(constants.DEPLOYMENT_NAME, names.deployment_name)
        state.put(constants.OS_DISK_NAME, names.os_disk_name)
        state.put(constants.RESOURCE_GROUP_NAME, names.resource_group_name)
        for key, value in (values or {}).items():
            state.put(key, value)
        return state

    def run(self, steps: Sequence[Step], state: Optional[StateBag] = None) -> BuildResult:
        """Run the build in the calling thread."""
        state = state if state is not None else self.prepare()
        pause_fn = console_pause_fn() if self.settings.debug else None
        runner = StepRunner(steps, pause_fn=pause_fn, events=self._events)

        with self._lock:
            self._runner = runner
            cancel_requested = self._cancel_requested
        if cancel_requested:
            state.request_cancellation()

        started = monotonic()
        logger.info(f"Starting build with {len(runner.steps)} step(s)")
        run_result = runner.run(state)
        result = self._classify(run_result, state, monotonic() - started)

        with self._lock:
            self._result = result
        return result

    def _classify(self, run_result: RunResult, state: StateBag, duration: float) -> BuildResult:
        result = BuildResult(
            outcome=BuildOutcome.SUCCEEDED,
            cleanup_warnings=list(run_result.cleanup_failures),
            duration=duration,
            state=state,
        )

        for step_name, error in result.cleanup_warnings:
            logger.warning(f"Cleanup warning from {step_name}: {error}")

        # Cancellation wins over errors recorded while stopping
        if run_result.cancelled:
            result.outcome = BuildOutcome.CANCELLED
            logger.info("Build was cancelled")
            return result

        error = state.error
        if error is not None or run_result.halted:
            result.outcome = BuildOutcome.FAILED
            result.error = error or BuildHaltedError("Build was halted")
            logger.error(f"Build failed after {duration:.1f}s: {result.error}")
            return result

        logger.info(f"Build succeeded in {duration:.1f}s")
        return result

    # =========================================================================
    # Background execution
    # =========================================================================

    def start(self, steps: Sequence[Step], state: Optional[StateBag] = None) -> StateBag:
        """
        Run the build in a background thread.

        Returns:
            The state bag the build runs against
        """
        with self._lock:
            if self._thread is not None:
                raise RuntimeError("Build already started")
            state = state if state is not None else self.prepare()
            self._thread = threading.Thread(
                target=self._run_in_background,
                args=(steps, state),
                name="image-build",
                daemon=True,
            )
        self._thread.start()
        return state

    def _run_in_background(self, steps: Sequence[Step], state: StateBag) -> None:
        try:
            self.run(steps, state)
        except Exception as e:
            logger.exception(f"Build thread crashed: {e}")
            with self._lock:
                self._result = BuildResult(BuildOutcome.FAILED, error=e, state=state)

    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def wait(self, timeout: Optional[float] = None) -> Optional[BuildResult]:
        """Block until the background build finishes; None on timeout."""
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                return None
        return self._result

    @property
    def result(self) -> Optional[BuildResult]:
        return self._result

    def cancel(self, wait: bool = False, timeout: Optional[float] = None) -> bool:
        """
        Request cancellation of the build.

        Returns:
            True if the build is finished (or was never started)
        """
        with self._lock:
            self._cancel_requested = True
            runner = self._runner

        if runner is None:
            logger.info("Cancellation requested before the build started")
            return True
        return runner.cancel(wait=wait, timeout=timeout)
