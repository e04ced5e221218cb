# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

import functools
import logging
import random
import subprocess
import time
from typing import Callable, Optional, TypeVar

import requests

from bootstage.config.models import RetryPolicy
from bootstage.errors import ExhaustedFailure, TransientExternalFailure

log = logging.getLogger("bootstage")

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TransientExternalFailure,
    TimeoutError,
    ConnectionError,
    subprocess.TimeoutExpired,
    requests.ConnectionError,
    requests.Timeout,
)


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TRANSIENT_ERRORS)


def backoff_delay(policy: RetryPolicy, attempt: int, rng: Callable[[], float] = random.random) -> float:
    """
    Delay slept after failed *attempt* (1-based):
    min(base * multiplier^(attempt-1), max_delay), plus up to 25% jitter,
    still capped at max_delay.
    """
    delay = min(policy.base_delay * policy.multiplier ** (attempt - 1), policy.max_delay)
    if policy.jitter:
        delay = min(delay * (1 + 0.25 * rng()), policy.max_delay)
    return delay


class RetryExecutor:
    """
    Runs one external operation under a RetryPolicy.

    Transient failures (network, timeouts, mirror outages) are retried up to
    ``policy.attempts`` times. Anything else, PermanentExternalFailure
    included, propagates on first sight without consuming budget.
    Holds no persisted state.
    """

    def __init__(
        self,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    ):
        self.sleep = sleep
        self.rng = rng
        self.on_retry = on_retry

    def execute(self, operation: Callable[[], T], policy: RetryPolicy, description: Optional[str] = None) -> T:
        description = description or getattr(operation, "__name__", "operation")
        last_exc: Optional[BaseException] = None
        previous_delay = 0.0
        for attempt in range(1, policy.attempts + 1):
            try:
                return operation()
            except Exception as exc:
                if not is_transient(exc):
                    raise
                last_exc = exc
                if attempt == policy.attempts:
                    break
                # jitter never lets a later wait come out shorter than an earlier one
                delay = max(backoff_delay(policy, attempt, self.rng), previous_delay)
                previous_delay = delay
                log.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                    description, attempt, policy.attempts, exc, delay,
                )
                if self.on_retry:
                    self.on_retry(attempt, exc, delay)
                self.sleep(delay)
        raise ExhaustedFailure(description, policy.attempts, last_exc) from last_exc


def retry(policy: RetryPolicy, *, executor: Optional[RetryExecutor] = None):
    """
    Retry decorator for idempotent operations, backed by RetryExecutor.

    policy: attempts / backoff for the wrapped call
    executor: override sleep/rng (tests)
    """

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            ex = executor or RetryExecutor()
            return ex.execute(lambda: fn(*args, **kwargs), policy, description=fn.__name__)
        return wrapper
    return decorator
