"""
Resource readiness polling.

Operation completion ("did the power-on request finish") and resource
readiness ("is the VM actually started") are different axes: a VM can
accept its power-on request instantly and take minutes to start. This
module is the coarser, longer-interval loop for the second one.

Usage:
    poller = ResourcePoller.from_settings(is_cancelled=state.is_cancelled)
    poller.poll(
        lambda: client.get_power_state(service, vm),
        terminal_states=POWER_TERMINAL_STATES,
        failure_states=POWER_FAILURE_STATES,
    )
"""

import logging
import time
from typing import Any, Callable, Collection, Optional

from imagebuilder.errors import (
    OperationCancelledError,
    PollQueryError,
    PollTimeoutError,
    RemoteError,
    ResourceFailureError,
    StepContractError,
)
from imagebuilder.provisioning import events as ev
from imagebuilder.provisioning.events import EventSink
from imagebuilder.settings import PollSettings, get_settings
from imagebuilder.timestamps import monotonic

logger = logging.getLogger(__name__)

# Synthetic states used by wait_for_deletion
RESOURCE_EXISTS = "Exists"
RESOURCE_DELETED = "Deleted"


def poll_until_ready(
    query: Callable[[], Any],
    terminal_states: Collection[Any],
    failure_states: Collection[Any] = (),
    interval: float = 15.0,
    max_attempts: Optional[int] = None,
    deadline: Optional[float] = None,
    max_query_errors: int = 3,
    initial_delay: float = 0.0,
    is_cancelled: Optional[Callable[[], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = monotonic,
    events: Optional[EventSink] = None,
    name: str = "resource",
) -> Any:
    """
    Query a resource until it reaches a terminal or failure state.

    Args:
        query: Returns the current resource state
        terminal_states: States that mean "ready"
        failure_states: States the resource can't recover from
        interval: Seconds to sleep between queries
        max_attempts: Give up after this many queries
        deadline: Give up after this many seconds
        max_query_errors: Consecutive failing queries tolerated
        initial_delay: Sleep before the first query
        is_cancelled: Checked before every query

    Returns:
        The terminal state reached

    Raises:
        ResourceFailureError: A failure state was observed
        PollTimeoutError: Budget exhausted
        PollQueryError: The query failed more than max_query_errors times in a row
        OperationCancelledError: Cancellation was requested
    """
    if max_attempts is None and deadline is None:
        raise StepContractError(f"Polling {name} needs max_attempts or a deadline")

    is_cancelled = is_cancelled or (lambda: False)
    started = clock()
    deadline_at = started + deadline if deadline is not None else None

    if initial_delay > 0:
        logger.info(f"Sleeping {initial_delay}s before polling {name}")
        sleep(initial_delay)

    attempts = 0
    consecutive_errors = 0
    last_state = None

    while True:
        if is_cancelled():
            raise OperationCancelledError(f"Polling {name} cancelled")

        attempts += 1
        try:
            state = query()
        except StepContractError:
            raise
        except Exception as e:
            consecutive_errors += 1
            if consecutive_errors > max_query_errors:
                raise PollQueryError(
                    f"Polling {name} failed {consecutive_errors} times in a row: {e}", cause=e
                ) from e
            logger.warning(
                f"Polling {name} query failed ({consecutive_errors}/{max_query_errors}), retrying: {e}"
            )
            ev.emit(events, ev.POLL_QUERY_FAILED, attempts=attempts, retry=consecutive_errors, error=str(e))
        else:
            consecutive_errors = 0
            last_state = state

            if state in failure_states:
                raise ResourceFailureError(f"{name} reached failure state '{state}'", state=state)

            if state in terminal_states:
                logger.info(f"{name} reached '{state}' after {attempts} queries")
                return state

        if max_attempts is not None and attempts >= max_attempts:
            _timed_out(events, name, last_state, attempts, f"after {attempts} attempts")

        if deadline_at is not None and clock() >= deadline_at:
            _timed_out(events, name, last_state, attempts, f"after {deadline}s")

        logger.debug(f"Waiting for {name} (state={last_state}), next query in {interval}s")
        ev.emit(events, ev.POLL_WAITING, state=last_state, attempts=attempts, delay=interval)
        sleep(interval)


def _timed_out(events, name, last_state, attempts, budget):
    ev.emit(events, ev.POLL_TIMED_OUT, state=last_state, attempts=attempts)
    raise PollTimeoutError(
        f"Timed out waiting for {name} {budget} (last state: {last_state})",
        last_state=last_state,
        attempts=attempts,
    )


def _is_not_found(error: BaseException) -> bool:
    return isinstance(error, RemoteError) and error.is_not_found


def wait_for_deletion(
    query: Callable[[], Any],
    is_gone: Callable[[BaseException], bool] = _is_not_found,
    **poll_kwargs: Any,
) -> None:
    """
    Wait until ``query`` reports the resource no longer exists.

    A "not found" error from ``query`` means deletion finished. Any other
    query error counts against max_query_errors instead of being ignored.
    """

    def _deletion_state():
        try:
            query()
        except Exception as e:
            if is_gone(e):
                return RESOURCE_DELETED
            raise
        return RESOURCE_EXISTS

    poll_kwargs.setdefault("name", "resource deletion")
    poll_until_ready(_deletion_state, terminal_states={RESOURCE_DELETED}, **poll_kwargs)


class ResourcePoller:
    """Poll configuration bundled for a step: interval, budget, clock, sleep."""

    def __init__(
        self,
        interval: float = 15.0,
        max_attempts: Optional[int] = 60,
        deadline: Optional[float] = None,
        max_query_errors: int = 3,
        initial_delay: float = 0.0,
        is_cancelled: Optional[Callable[[], bool]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = monotonic,
        events: Optional[EventSink] = None,
    ):
        self.interval = interval
        self.max_attempts = max_attempts
        self.deadline = deadline
        self.max_query_errors = max_query_errors
        self.initial_delay = initial_delay
        self.is_cancelled = is_cancelled
        self._sleep = sleep
        self._clock = clock
        self._events = events

    @classmethod
    def from_settings(cls, settings: Optional[PollSettings] = None, **kwargs: Any) -> "ResourcePoller":
        settings = settings or get_settings().poll
        config = dict(
            interval=settings.readiness_interval,
            max_attempts=settings.readiness_max_attempts,
            deadline=settings.readiness_deadline,
            max_query_errors=settings.max_query_errors,
            initial_delay=settings.readiness_initial_delay,
        )
        config.update(kwargs)
        return cls(**config)

    @classmethod
    def for_deletion(cls, settings: Optional[PollSettings] = None, **kwargs: Any) -> "ResourcePoller":
        """Poller for resource deletion: deadline-bounded, no attempt cap."""
        settings = settings or get_settings().poll
        config = dict(
            interval=settings.deletion_interval,
            max_attempts=None,
            deadline=settings.deletion_deadline,
            max_query_errors=settings.max_query_errors,
        )
        config.update(kwargs)
        return cls(**config)

    def poll(
        self,
        query: Callable[[], Any],
        terminal_states: Collection[Any],
        failure_states: Collection[Any] = (),
        name: str = "resource",
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> Any:
        return poll_until_ready(
            query,
            terminal_states,
            failure_states,
            interval=self.interval,
            max_attempts=self.max_attempts,
            deadline=self.deadline,
            max_query_errors=self.max_query_errors,
            initial_delay=self.initial_delay,
            is_cancelled=is_cancelled or self.is_cancelled,
            sleep=self._sleep,
            clock=self._clock,
            events=self._events,
            name=name,
        )

    def wait_for_deletion(
        self,
        query: Callable[[], Any],
        deadline: Optional[float] = None,
        name: str = "resource deletion",
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> None:
        """Deletion variant; ``deadline`` overrides the poller's own budget."""
        wait_for_deletion(
            query,
            interval=self.interval,
            max_attempts=None if deadline is not None else self.max_attempts,
            deadline=deadline if deadline is not None else self.deadline,
            max_query_errors=self.max_query_errors,
            is_cancelled=is_cancelled or self.is_cancelled,
            sleep=self._sleep,
            clock=self._clock,
            events=self._events,
            name=name,
        )
