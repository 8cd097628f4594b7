"""
Retry policy for provider errors.

A policy is an ordered list of rules. The first rule whose predicate matches
the error decides: retry after a delay, or give up. Every rule owns its own
retry counter, so a throttling storm never eats the budget reserved for
resource conflicts.

Usage:
    from imagebuilder.provisioning.retry import default_retry_policy

    policy = default_retry_policy()
    retry, delay = policy.should_retry(error)
    if retry:
        time.sleep(delay)
"""

import logging
import threading
from typing import Callable, Iterable, Iterator, List, NamedTuple, Optional

from imagebuilder.errors import RemoteError
from imagebuilder.provisioning import events as ev
from imagebuilder.provisioning.events import EventSink
from imagebuilder.settings import RetrySettings, get_settings

logger = logging.getLogger(__name__)

Matcher = Callable[[BaseException], bool]


class RetryDecision(NamedTuple):
    """Result of consulting a policy: unpacks as ``retry, delay``."""
    retry: bool
    delay: float


NO_RETRY = RetryDecision(False, 0.0)


# =============================================================================
# Matchers
# =============================================================================


def match_code(code: str, message_contains: Optional[str] = None) -> Matcher:
    """Match a RemoteError by provider code and, optionally, a message substring."""

    def _match(error: BaseException) -> bool:
        if not isinstance(error, RemoteError) or error.code != code:
            return False
        return message_contains is None or message_contains in (error.message or "")

    return _match


def match_any(*matchers: Matcher) -> Matcher:
    """Match when any of ``matchers`` does."""

    def _match(error: BaseException) -> bool:
        return any(m(error) for m in matchers)

    return _match


# =============================================================================
# Rules
# =============================================================================


class RetryRule:
    """
    One policy clause: predicate + back-off schedule + retry budget.

    ``max_retries == 0`` means retry indefinitely. Once the budget is spent
    the rule keeps refusing; it is never reset.
    """

    def __init__(self, name: str, match: Matcher, max_retries: int = 0):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0 (0 means unbounded)")
        self.name = name
        self.match = match
        self.max_retries = max_retries
        self._consultations = 0
        self._retries = 0
        self._lock = threading.Lock()

    @property
    def unbounded(self) -> bool:
        return self.max_retries == 0

    @property
    def consultations(self) -> int:
        """How many matching errors this rule has judged (monotonic)."""
        return self._consultations

    @property
    def retries(self) -> int:
        """How many retries this rule has granted (monotonic)."""
        return self._retries

    @property
    def exhausted(self) -> bool:
        return not self.unbounded and self._retries >= self.max_retries

    def consult(self, error: BaseException) -> Optional[RetryDecision]:
        """
        Judge ``error``.

        Returns:
            None if the rule does not match, otherwise its decision. A
            matching consultation always advances the counter, including the
            one that discovers the budget is gone.
        """
        if not self.match(error):
            return None

        with self._lock:
            self._consultations += 1
            if self.exhausted:
                return NO_RETRY
            self._retries += 1
            return RetryDecision(True, self._next_delay())

    def _next_delay(self) -> float:
        raise NotImplementedError

    def __repr__(self) -> str:
        budget = "unbounded" if self.unbounded else self.max_retries
        return f"{type(self).__name__}({self.name!r}, retries={self._retries}/{budget})"


class ConstantBackoffRule(RetryRule):
    """Same delay before every retry."""

    def __init__(self, name: str, match: Matcher, delay: float, max_retries: int = 0):
        super().__init__(name, match, max_retries)
        self.delay = delay

    def _next_delay(self) -> float:
        return self.delay


class ExponentialBackoffRule(RetryRule):
    """Delay doubles on every retry, starting at ``initial_delay``, capped at ``max_delay``."""

    def __init__(
        self,
        name: str,
        match: Matcher,
        initial_delay: float,
        max_delay: float,
        max_retries: int = 0,
    ):
        if max_delay < initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        super().__init__(name, match, max_retries)
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self._backoff = initial_delay

    def _next_delay(self) -> float:
        delay = self._backoff
        self._backoff = min(self._backoff * 2, self.max_delay)
        return delay


# =============================================================================
# Policy
# =============================================================================


class RetryPolicy:
    """Ordered rules, first match wins; no match means the error is fatal."""

    def __init__(self, rules: Iterable[RetryRule] = (), events: Optional[EventSink] = None):
        self._rules: List[RetryRule] = list(rules)
        self._events = events

    def should_retry(self, error: BaseException) -> RetryDecision:
        for rule in self._rules:
            decision = rule.consult(error)
            if decision is None:
                continue

            if decision.retry:
                logger.info(
                    f"Retry {rule.retries} for rule '{rule.name}' with {decision.delay}s backoff"
                )
                ev.emit(self._events, ev.RETRY_ATTEMPTED, rule=rule.name, retry=rule.retries, delay=decision.delay)
            else:
                logger.warning(f"Retries for rule '{rule.name}' exhausted ({rule.retries})")
                ev.emit(self._events, ev.RETRY_EXHAUSTED, rule=rule.name, retry=rule.retries, error=str(error))
            return decision

        return NO_RETRY

    def append(self, rule: RetryRule) -> None:
        self._rules.append(rule)

    @property
    def rules(self) -> List[RetryRule]:
        return list(self._rules)

    def __iter__(self) -> Iterator[RetryRule]:
        return iter(list(self._rules))

    def __len__(self) -> int:
        return len(self._rules)


def default_rules(settings: Optional[RetrySettings] = None) -> List[RetryRule]:
    """
    Rules every remote operation gets.

    - Throttling: back off exponentially, for as long as it takes
    - InternalError: provider hiccup, constant back-off
    - Conflict/InUse: another operation holds an exclusive lock on the
      resource, expected to clear quickly
    """
    settings = settings or get_settings().retry
    return [
        ExponentialBackoffRule(
            "Throttling",
            match_code("TooManyRequests"),
            settings.throttle_initial_delay,
            settings.throttle_max_delay,
            settings.throttle_max_retries,
        ),
        ConstantBackoffRule(
            "InternalError",
            match_code("InternalError"),
            settings.internal_error_delay,
            settings.internal_error_max_retries,
        ),
        ConstantBackoffRule(
            "Conflict/InUse",
            match_any(
                match_code("BadRequest", "is currently in use by"),
                match_code("ConflictError", "that requires exclusive access"),
            ),
            settings.conflict_delay,
            settings.conflict_max_retries,
        ),
    ]


def default_retry_policy(
    *extra_rules: RetryRule,
    settings: Optional[RetrySettings] = None,
    events: Optional[EventSink] = None,
) -> RetryPolicy:
    """Fresh default policy with ``extra_rules`` appended (fresh budgets every call)."""
    return RetryPolicy(default_rules(settings) + list(extra_rules), events=events)
