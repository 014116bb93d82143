"""Bounded poll-until helper with an injectable clock."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollOutcome:
    ready: bool
    attempts: int
    elapsed: float


def poll_until(
    predicate: Callable[[], bool],
    interval: float,
    timeout: float,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "condition",
) -> PollOutcome:
    """Call ``predicate`` until it returns true or ``timeout`` seconds elapse.

    The first check happens immediately. Sleeps never extend past the
    deadline, so the call returns within ``timeout`` of its start (plus the
    duration of the last check). Exceptions raised by ``predicate`` count as
    a negative check.
    """

    if interval <= 0:
        raise ValueError("Poll interval must be positive.")
    timeout = max(0.0, float(timeout))

    start = clock()
    deadline = start + timeout
    attempts = 0
    while True:
        attempts += 1
        try:
            if predicate():
                elapsed = clock() - start
                logger.info("%s satisfied after %s checks (%.0fs).", description, attempts, elapsed)
                return PollOutcome(ready=True, attempts=attempts, elapsed=elapsed)
        except Exception as exc:
            logger.warning("Check %s for %s failed: %s", attempts, description, exc)

        remaining = deadline - clock()
        if remaining <= 0:
            elapsed = clock() - start
            logger.warning(
                "Gave up waiting for %s after %s checks (%.0fs).", description, attempts, elapsed
            )
            return PollOutcome(ready=False, attempts=attempts, elapsed=elapsed)
        logger.debug("%s not ready; waiting %.0fs before next check.", description, min(interval, remaining))
        sleep(min(interval, remaining))


__all__ = ["PollOutcome", "poll_until"]
