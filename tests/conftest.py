"""Shared pytest fixtures for imagebuilder tests."""
import os
import sys

import pytest

# Add project root to path
_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _PROJECT_ROOT)

from imagebuilder.provisioning.events import InMemoryEventSink
from imagebuilder.provisioning.runner import Step, StepAction
from imagebuilder.provisioning.state import StateBag
from imagebuilder.settings import get_settings


# =============================================================================
# Settings isolation
# =============================================================================

@pytest.fixture(autouse=True)
def _reset_settings():
    """Every test sees settings built from its own environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# =============================================================================
# Time
# =============================================================================

class FakeClock:
    """Monotonic clock + sleep pair; sleeping advances the clock instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def events():
    return InMemoryEventSink()


@pytest.fixture
def state():
    return StateBag()


# =============================================================================
# Steps
# =============================================================================

class RecordingStep(Step):
    """Step that logs run/cleanup calls into a shared journal."""

    def __init__(self, label, journal, action=StepAction.CONTINUE, error=None, cleanup_error=None, on_run=None):
        self.label = label
        self.journal = journal
        self.action = action
        self.error = error
        self.cleanup_error = cleanup_error
        self.on_run = on_run

    @property
    def name(self):
        return self.label

    def run(self, state):
        self.journal.append(("run", self.label))
        if self.on_run is not None:
            self.on_run(state)
        if self.error is not None:
            state.record_error(self.error)
        return self.action

    def cleanup(self, state):
        self.journal.append(("cleanup", self.label))
        if self.cleanup_error is not None:
            raise self.cleanup_error


@pytest.fixture
def journal():
    return []


@pytest.fixture
def make_step(journal):
    """Factory for RecordingSteps sharing the test's journal."""

    def _make(label, **kwargs):
        return RecordingStep(label, journal, **kwargs)

    return _make
