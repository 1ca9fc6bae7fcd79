"""
Retry policy shared by the MongoDB and Firestore adapters.

Transient connection errors and quota errors are retried with exponential
backoff and jitter; everything else is raised immediately.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, TypeVar

from .errors import ErrorKind, classify_exception

logger = logging.getLogger("syndatagen.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class Backoff:
    """Backoff parameters for one error kind."""
    base_delay: float
    factor: float = 2.0
    max_attempts: int = 5
    max_delay: float = 30.0
    jitter: float = 0.2

    def delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based), jitter included."""
        delay = min(self.base_delay * (self.factor ** attempt), self.max_delay)
        return delay + delay * self.jitter * random.random()


def _default_backoffs() -> Dict[ErrorKind, Backoff]:
    return {
        ErrorKind.CONNECTION: Backoff(base_delay=0.5, factor=2.0, max_attempts=5),
        ErrorKind.QUOTA: Backoff(base_delay=2.0, factor=2.0, max_attempts=3),
    }


@dataclass
class RetryPolicy:
    """
    Retry behaviour keyed by error kind.

    Kinds without an entry (validation, batch limit, invalid input, ...) are
    never retried.
    """
    backoffs: Dict[ErrorKind, Backoff] = field(default_factory=_default_backoffs)
    sleep: Callable[[float], None] = time.sleep

    def call(self, func: Callable[..., T], *args, context: str = "", **kwargs) -> T:
        """Run func, retrying classified transient failures."""
        attempts: Dict[ErrorKind, int] = {}
        while True:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                error = classify_exception(e, context)
                backoff = self.backoffs.get(error.kind)
                if backoff is None:
                    if error is e:
                        raise
                    raise error from e

                attempt = attempts.get(error.kind, 0) + 1
                attempts[error.kind] = attempt
                if attempt >= backoff.max_attempts:
                    logger.warning(
                        f"Giving up on {context or getattr(func, '__name__', 'call')} "
                        f"after {attempt} attempts: {error}"
                    )
                    if error is e:
                        raise
                    raise error from e

                sleep_time = backoff.delay(attempt - 1)
                logger.debug(
                    f"Retry {attempt}/{backoff.max_attempts - 1} after {sleep_time:.1f}s "
                    f"({error.kind.value}): {error}"
                )
                self.sleep(sleep_time)

    @classmethod
    def no_wait(cls) -> "RetryPolicy":
        """Same attempt counts, no sleeping."""
        return cls(sleep=lambda _seconds: None)

