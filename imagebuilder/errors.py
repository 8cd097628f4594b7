"""
Centralized error hierarchy for image provisioning.

Error Hierarchy:
- ProvisioningError: Base for everything the engine raises on purpose
  - RemoteError: Provider reported an error (code + message), may be retried
  - TransientNetworkError: Network blip below the provider protocol
  - OperationFailedError: Remote operation failed and was not retried
  - OperationCancelledError: Cancellation observed while waiting
  - OperationTimeoutError / PollTimeoutError: Budget exhausted
  - ResourceFailureError: Resource reached an unrecoverable state
  - PollQueryError: Readiness query kept failing
  - BuildHaltedError: Run halted without a recorded error
- StepContractError: Step composition bug (never swallowed)
- MissingKeyError: Required state key absent (also a KeyError)

Usage:
    from imagebuilder.errors import RemoteError, ResourceFailureError

    raise RemoteError("TooManyRequests", "Slow down", status_code=429)
"""

from typing import Any, Optional


class ProvisioningError(Exception):
    """Base class for expected provisioning failures."""
    pass


class RemoteError(ProvisioningError):
    """
    Error reported by the cloud provider.

    The code/message pair is what retry rules match on.
    """

    def __init__(self, code: str, message: str = "", status_code: Optional[int] = None):
        super().__init__(f"Azure error ({code}): {message}")
        self.code = code
        self.message = message
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        """True for 404 responses and the provider's not-found codes."""
        return self.status_code == 404 or self.code in ("ResourceNotFound", "ResourceGroupNotFound", "NotFound")


class TransientNetworkError(ProvisioningError):
    """Connection reset, socket timeout or temporary DNS failure."""
    pass


class OperationFailedError(ProvisioningError):
    """A remote operation reached a fatal failure."""

    def __init__(self, message: str, reason: Optional[BaseException] = None):
        super().__init__(message)
        self.reason = reason


class OperationCancelledError(ProvisioningError):
    """Cancellation was requested while an operation was in flight."""
    pass


class OperationTimeoutError(ProvisioningError):
    """A remote operation did not finish before its deadline."""
    pass


class ResourceFailureError(ProvisioningError):
    """
    Resource reached a state it cannot recover from.

    Never retried: a human has to look at it.
    """

    def __init__(self, message: str, state: Any = None):
        super().__init__(message)
        self.state = state


class PollTimeoutError(ProvisioningError):
    """Readiness polling exhausted its attempts or deadline."""

    def __init__(self, message: str, last_state: Any = None, attempts: int = 0):
        super().__init__(message)
        self.last_state = last_state
        self.attempts = attempts


class PollQueryError(ProvisioningError):
    """The readiness query itself failed too many times in a row."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class BuildHaltedError(ProvisioningError):
    """A step halted the run without recording an error."""
    pass


class StepContractError(Exception):
    """
    Steps were composed incorrectly.

    Indicates a programming bug, so it is deliberately NOT a
    ProvisioningError and must not be caught by retry/poll loops.
    """
    pass


class MissingKeyError(StepContractError, KeyError):
    """A required state key was read before any step wrote it."""

    def __init__(self, key: str):
        super().__init__(f"Required state key '{key}' is not set")
        self.key = key

    def __str__(self) -> str:
        return self.args[0]
