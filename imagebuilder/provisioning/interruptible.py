"""
Race a blocking task against a cancellation flag.

Some remote calls (deleting a resource group and waiting for it to vanish)
have no cancellation primitive. The task runs in a daemon thread while the
caller checks ``is_cancelled`` every ``poll_interval``; whichever finishes
first wins. A cancelled task is abandoned, not killed.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.1


@dataclass
class InterruptibleTaskResult:
    """Either the task's error (None on success) or a cancellation."""

    error: Optional[BaseException] = None
    is_cancelled: bool = False


class InterruptibleTask:
    """
    A task plus the cancellation check that can abandon it.

    Usage:
        result = InterruptibleTask(state.is_cancelled, delete_group).run()
        if result.is_cancelled:
            ...
    """

    def __init__(
        self,
        is_cancelled: Callable[[], bool],
        task: Callable[[], Any],
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        name: str = "task",
    ):
        self.is_cancelled = is_cancelled
        self.task = task
        self.poll_interval = poll_interval
        self.name = name

    def run(self) -> InterruptibleTaskResult:
        done = threading.Event()
        outcome: dict = {}

        def _target():
            try:
                self.task()
            except Exception as e:
                outcome["error"] = e
            finally:
                done.set()

        thread = threading.Thread(target=_target, name=f"interruptible-{self.name}", daemon=True)
        thread.start()

        while True:
            if self.is_cancelled():
                logger.info(f"Abandoning {self.name}: cancellation requested")
                return InterruptibleTaskResult(is_cancelled=True)

            if done.wait(self.poll_interval):
                error = outcome.get("error")
                if error is not None:
                    logger.debug(f"{self.name} finished with error: {error}")
                return InterruptibleTaskResult(error=error)


def start_interruptible_task(
    is_cancelled: Callable[[], bool],
    task: Callable[[], Any],
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> InterruptibleTaskResult:
    """Build and run an InterruptibleTask in one call."""
    return InterruptibleTask(is_cancelled, task, poll_interval).run()
