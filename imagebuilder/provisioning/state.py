"""
Shared provisioning state ("state bag").

One StateBag lives for exactly one build: earlier steps write values, later
steps and cleanup read them. The cancellation flag may be set from another
thread (signal handler, API request) while a step runs.
"""

import logging
import threading
from typing import Any, Generic, List, Optional, Tuple, TypeVar, Union, overload

from imagebuilder.errors import MissingKeyError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Same name as constants.ERROR
_ERROR_KEY = "error"


class StateKey(Generic[T]):
    """
    Typed key token.

    ``StateKey[str]("computeName")`` documents (and lets type checkers see)
    the type stored under the key. Keys compare equal to their plain string
    name, so string access keeps working.
    """

    __slots__ = ("name",)

    def __init__(self, name: str):
        self.name = name

    def __hash__(self) -> int:
        return hash(self.name)

    def __eq__(self, other) -> bool:
        if isinstance(other, StateKey):
            return self.name == other.name
        if isinstance(other, str):
            return self.name == other
        return NotImplemented

    def __repr__(self) -> str:
        return f"StateKey({self.name!r})"

    def __str__(self) -> str:
        return self.name


Key = Union[StateKey, str]


def _name(key: Key) -> str:
    return key.name if isinstance(key, StateKey) else key


class StateBag:
    """
    Thread-safe key/value store shared by the steps of one run.

    Usage:
        state = StateBag()
        state.put(RESOURCE_GROUP_NAME, "packer-Resource-Group-abc")
        name = state.get(RESOURCE_GROUP_NAME)           # raises if absent
        disk, found = state.get_ok(HARD_DISK_NAME)      # never raises

        state.request_cancellation()   # from any thread
        state.is_cancelled()
    """

    def __init__(self, **initial: Any):
        self._values: dict = dict(initial)
        self._lock = threading.RLock()
        self._cancelled = threading.Event()

    @overload
    def get(self, key: StateKey[T]) -> T: ...

    @overload
    def get(self, key: str) -> Any: ...

    def get(self, key):
        """Return the value for ``key``; a missing key is a step composition bug."""
        name = _name(key)
        with self._lock:
            try:
                return self._values[name]
            except KeyError:
                raise MissingKeyError(name) from None

    @overload
    def get_ok(self, key: StateKey[T]) -> Tuple[Optional[T], bool]: ...

    @overload
    def get_ok(self, key: str) -> Tuple[Any, bool]: ...

    def get_ok(self, key):
        """Return ``(value, True)`` or ``(None, False)``."""
        name = _name(key)
        with self._lock:
            if name in self._values:
                return self._values[name], True
            return None, False

    def put(self, key: Key, value: Any) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""
        with self._lock:
            self._values[_name(key)] = value

    def delete(self, key: Key) -> None:
        """Remove ``key`` if present."""
        with self._lock:
            self._values.pop(_name(key), None)

    def keys(self) -> List[str]:
        """Snapshot of the stored key names."""
        with self._lock:
            return list(self._values)

    def __contains__(self, key) -> bool:
        with self._lock:
            return _name(key) in self._values

    # =========================================================================
    # Error slot
    # =========================================================================

    def record_error(self, error: BaseException) -> bool:
        """
        Record the run's error, first writer wins.

        Returns:
            True if this call recorded the error, False if one was already set
        """
        with self._lock:
            if self._values.get(_ERROR_KEY) is not None:
                logger.debug(f"Error already recorded, ignoring: {error}")
                return False
            self._values[_ERROR_KEY] = error
            return True

    @property
    def error(self) -> Optional[BaseException]:
        with self._lock:
            return self._values.get(_ERROR_KEY)

    # =========================================================================
    # Cancellation
    # =========================================================================

    def request_cancellation(self) -> None:
        """Ask the run to stop. Idempotent, safe from any thread."""
        if not self._cancelled.is_set():
            logger.info("Cancellation requested")
        self._cancelled.set()

    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def wait_for_cancellation(self, timeout: Optional[float] = None) -> bool:
        """Block until cancellation is requested or ``timeout`` elapses."""
        return self._cancelled.wait(timeout)
