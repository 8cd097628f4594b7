"""
Async operation execution.

Drives one long-running remote operation to completion:

1. ``start()`` submits the request and returns an operation handle (or None
   when the provider finished synchronously).
2. The operation status endpoint is polled until the operation leaves the
   InProgress state.
3. Provider errors, from either phase, go through the RetryPolicy. A
   retryable error restarts the whole operation after the back-off: the
   provider has no partial resume.

Network blips (connection reset, socket timeout, temporary DNS failure) are
handled one level lower with a short fixed delay, independent of the policy.

Usage:
    executor = AsyncOperationExecutor(client.get_operation_status)
    executor.execute(lambda: client.start_operation("DELETE", path))
"""

import errno
import logging
import socket
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

import requests
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    stop_never,
    wait_fixed,
)

from imagebuilder.errors import (
    OperationCancelledError,
    OperationFailedError,
    OperationTimeoutError,
    ProvisioningError,
    StepContractError,
    TransientNetworkError,
)
from imagebuilder.provisioning import events as ev
from imagebuilder.provisioning.events import EventSink
from imagebuilder.provisioning.retry import RetryPolicy, default_retry_policy
from imagebuilder.settings import PollSettings, RetrySettings, get_settings
from imagebuilder.timestamps import monotonic

logger = logging.getLogger(__name__)

T = TypeVar("T")

OperationHandle = str


class OperationState(Enum):
    """Status reported by the provider's operation status endpoint."""

    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


@dataclass
class OperationStatus:
    """One reading of the operation status endpoint."""

    state: OperationState
    error: Optional[BaseException] = None
    http_status_code: Optional[int] = None


class OutcomeKind(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class OperationOutcome:
    """Tagged result of waiting for an operation. Exactly one kind per operation."""

    kind: OutcomeKind
    reason: Optional[BaseException] = None

    @classmethod
    def succeeded(cls) -> "OperationOutcome":
        return cls(OutcomeKind.SUCCEEDED)

    @classmethod
    def failed(cls, reason: BaseException) -> "OperationOutcome":
        return cls(OutcomeKind.FAILED, reason)

    @classmethod
    def cancelled(cls) -> "OperationOutcome":
        return cls(OutcomeKind.CANCELLED)

    @classmethod
    def timed_out(cls) -> "OperationOutcome":
        return cls(OutcomeKind.TIMED_OUT)

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCEEDED


# Message fragments of connection drops that don't map to a specific type
_RESET_MESSAGES = (
    "connection reset by peer",
    "an existing connection was forcibly closed by the remote host",
)


def is_transient_network_error(error: BaseException) -> bool:
    """True for network failures below the provider protocol worth a quick retry."""
    if isinstance(error, TransientNetworkError):
        return True
    # Provider errors go to the retry policy, whatever their message says
    if isinstance(error, ProvisioningError):
        return False
    if isinstance(error, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return True
    if isinstance(error, (ConnectionResetError, ConnectionAbortedError, TimeoutError, socket.timeout)):
        return True
    if isinstance(error, socket.gaierror) and error.errno == socket.EAI_AGAIN:
        return True
    if isinstance(error, OSError) and error.errno in (errno.ECONNRESET, errno.ETIMEDOUT):
        return True
    if not isinstance(error, (OSError, requests.exceptions.RequestException)):
        return False
    message = str(error).lower()
    return any(fragment in message for fragment in _RESET_MESSAGES)


class AsyncOperationExecutor:
    """
    Runs remote operations to completion with retries.

    Args:
        get_status: Returns the OperationStatus for a handle
        poll_interval: Seconds between status checks (measured start to start)
        operation_timeout: Give up waiting after this many seconds (None = never)
        is_cancelled: Checked between polls and before every attempt
        sleep: Injected for tests
        clock: Monotonic clock, injected for tests
        events: Event sink for retry/operation events
    """

    def __init__(
        self,
        get_status: Callable[[OperationHandle], OperationStatus],
        poll_interval: Optional[float] = None,
        operation_timeout: Optional[float] = None,
        network_retry_delay: Optional[float] = None,
        network_max_retries: Optional[int] = None,
        is_cancelled: Optional[Callable[[], bool]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = monotonic,
        events: Optional[EventSink] = None,
        retry_settings: Optional[RetrySettings] = None,
        poll_settings: Optional[PollSettings] = None,
    ):
        settings = get_settings()
        self._retry_settings = retry_settings or settings.retry
        poll_settings = poll_settings or settings.poll

        self._get_status = get_status
        self.poll_interval = poll_interval if poll_interval is not None else poll_settings.operation_interval
        self.operation_timeout = operation_timeout if operation_timeout is not None else poll_settings.operation_timeout
        self.network_retry_delay = (
            network_retry_delay if network_retry_delay is not None else self._retry_settings.network_delay
        )
        self.network_max_retries = (
            network_max_retries if network_max_retries is not None else self._retry_settings.network_max_retries
        )
        self._is_cancelled = is_cancelled or (lambda: False)
        self._sleep = sleep
        self._clock = clock
        self._events = events

    def execute(
        self,
        start: Callable[[], Optional[OperationHandle]],
        policy: Optional[RetryPolicy] = None,
        name: str = "operation",
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> OperationOutcome:
        """
        Start an operation and block until it is done.

        Args:
            start: Submits the operation; returns a handle, or None when the
                operation already completed synchronously
            policy: Retry policy (default: a fresh default policy, so the
                retry budget is scoped to this call)
            name: Label for logs and events
            is_cancelled: Overrides the executor's cancellation check for this
                call (a cleanup passes one that never fires)

        Returns:
            A SUCCEEDED outcome

        Raises:
            The fatal provider error raised by ``start``,
            OperationFailedError: The operation failed and was not retried
            OperationCancelledError: Cancellation was requested
            OperationTimeoutError: The operation outlived operation_timeout
        """
        if start is None:
            raise StepContractError("Parameter not specified: start")

        if policy is None:
            policy = default_retry_policy(settings=self._retry_settings, events=self._events)

        is_cancelled = is_cancelled or self._is_cancelled

        while True:  # retry loop for provider errors
            if is_cancelled():
                raise OperationCancelledError(f"{name} cancelled before it was started")

            try:
                handle = self.call_with_network_retry(start)
                if handle is None:
                    logger.debug(f"{name} completed synchronously")
                    return OperationOutcome.succeeded()
                outcome = self.wait_for_operation(handle, name=name, is_cancelled=is_cancelled)
            except StepContractError:
                raise
            except Exception as e:
                error = e
                fatal = e
            else:
                if outcome.kind is OutcomeKind.SUCCEEDED:
                    return outcome
                if outcome.kind is OutcomeKind.CANCELLED:
                    raise OperationCancelledError(f"{name} ({handle}) was cancelled")
                if outcome.kind is OutcomeKind.TIMED_OUT:
                    raise OperationTimeoutError(
                        f"{name} ({handle}) did not complete within {self.operation_timeout}s"
                    )
                error = outcome.reason
                fatal = OperationFailedError(f"{name} ({handle}) failed: {error}", reason=error)

            retry, delay = policy.should_retry(error)
            if retry:
                logger.info(f"{name} hit retryable error, restarting in {delay}s: {error}")
                self._sleep(delay)
                continue

            logger.warning(f"{name} caught non-retryable error: {error}")
            if fatal is error:
                raise fatal
            raise fatal from error

    def wait_for_operation(
        self,
        handle: OperationHandle,
        name: str = "operation",
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> OperationOutcome:
        """Poll the status endpoint until ``handle`` is no longer in progress."""
        is_cancelled = is_cancelled or self._is_cancelled
        logger.info(f"{name}: polling operation {handle}")
        ev.emit(self._events, ev.OPERATION_STARTED, handle=handle)

        started = self._clock()
        deadline = started + self.operation_timeout if self.operation_timeout else None

        while True:
            next_request_at = self._clock() + self.poll_interval

            status = self.call_with_network_retry(self._get_status, handle)

            if status.state is not OperationState.IN_PROGRESS:
                outcome = self._to_outcome(handle, status)
                self._finished(handle, outcome, started)
                return outcome

            if is_cancelled():
                outcome = OperationOutcome.cancelled()
                self._finished(handle, outcome, started)
                return outcome

            if deadline is not None and self._clock() >= deadline:
                outcome = OperationOutcome.timed_out()
                self._finished(handle, outcome, started)
                return outcome

            wait = next_request_at - self._clock()
            if wait > 0:
                logger.debug(f"Waiting {wait:.2f}s before polling {handle} again")
                self._sleep(wait)

    def call_with_network_retry(self, fn: Callable[..., T], *args: Any) -> T:
        """Call ``fn``, retrying transient network errors with a short fixed delay."""
        retrying = Retrying(
            stop=stop_after_attempt(self.network_max_retries + 1) if self.network_max_retries else stop_never,
            wait=wait_fixed(self.network_retry_delay),
            retry=retry_if_exception(is_transient_network_error),
            before_sleep=self._before_network_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            return retrying(fn, *args)
        except Exception as e:
            if is_transient_network_error(e):
                logger.error(f"Network retries exhausted after {self.network_max_retries} attempts: {e}")
            raise

    def _before_network_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        logger.warning(f"Encountered retryable network error: {error}")
        ev.emit(
            self._events,
            ev.NETWORK_RETRY,
            retry=retry_state.attempt_number,
            delay=self.network_retry_delay,
            error=str(error),
        )

    def _to_outcome(self, handle: OperationHandle, status: OperationStatus) -> OperationOutcome:
        if status.state is OperationState.FAILED:
            reason = status.error or OperationFailedError(f"Operation {handle} failed without error details")
            return OperationOutcome.failed(reason)
        if status.state is OperationState.CANCELLED:
            return OperationOutcome.cancelled()
        return OperationOutcome.succeeded()

    def _finished(self, handle: OperationHandle, outcome: OperationOutcome, started: float) -> None:
        duration_ms = int((self._clock() - started) * 1000)
        logger.info(f"Operation {handle} took {duration_ms}ms to complete ({outcome.kind.value})")
        ev.emit(
            self._events,
            ev.OPERATION_FINISHED,
            handle=handle,
            outcome=outcome.kind.value,
            duration_ms=duration_ms,
        )


def execute_async_operation(
    start: Callable[[], Optional[OperationHandle]],
    get_status: Callable[[OperationHandle], OperationStatus],
    *extra_rules,
    **executor_kwargs,
) -> OperationOutcome:
    """One-shot helper: default policy plus ``extra_rules``."""
    executor = AsyncOperationExecutor(get_status, **executor_kwargs)
    policy = default_retry_policy(
        *extra_rules,
        settings=executor_kwargs.get("retry_settings"),
        events=executor_kwargs.get("events"),
    )
    return executor.execute(start, policy)
