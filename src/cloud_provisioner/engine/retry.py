"""Retry helper for provider calls."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from cloud_provisioner.engine.types import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Attempts:
    """Mutable counter shared between a caller and :func:`call_with_retry`."""

    count: int = 0


class RetryExhaustedError(Exception):
    """A provider call failed for good; wraps the last error with its classification."""

    def __init__(self, cause: BaseException, *, transient: bool, attempts: int) -> None:
        super().__init__(str(cause))
        self.cause = cause
        self.transient = transient
        self.attempts = attempts


def call_with_retry(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    is_transient: Callable[[BaseException], bool],
    description: str,
    sleep: Callable[[float], None] = time.sleep,
    attempts: Attempts | None = None,
) -> T:
    """Call *fn*, retrying with exponential backoff while errors are transient.

    Non-transient errors fail on the first attempt.

    Raises:
        RetryExhaustedError: The call failed permanently or ran out of attempts.
    """
    counter = attempts if attempts is not None else Attempts()
    while True:
        counter.count += 1
        try:
            return fn()
        except Exception as exc:
            transient = is_transient(exc)
            if transient and counter.count < policy.max_attempts:
                delay = policy.delay(counter.count)
                logger.warning(
                    "%s failed with transient error (attempt %d/%d): %s. Retrying in %.2fs",
                    description,
                    counter.count,
                    policy.max_attempts,
                    exc,
                    delay,
                )
                sleep(delay)
                continue
            logger.error("%s failed (attempt %d): %s", description, counter.count, exc)
            raise RetryExhaustedError(exc, transient=transient, attempts=counter.count) from exc
