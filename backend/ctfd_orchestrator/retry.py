import logging
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass
class PollResult:
    succeeded: bool
    attempts: int
    elapsed: float


def poll_until(
    predicate: Callable[[], bool],
    *,
    max_attempts: int,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    label: str = "condition",
) -> PollResult:
    """Call ``predicate`` up to ``max_attempts`` times on a fixed ``interval`` schedule.

    Attempt ``n`` starts at ``(n - 1) * interval`` after the first one; time
    spent inside the predicate is taken out of the following sleep. Polling
    stops once ``max_attempts * interval`` seconds have passed, so a failed
    poll never outlasts that budget as long as a single predicate call
    returns within ``interval``.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    if interval < 0:
        raise ValueError("interval must not be negative")
    started = clock()
    deadline = started + max_attempts * interval
    attempts = 0
    for attempt in range(1, max_attempts + 1):
        attempts = attempt
        if predicate():
            return PollResult(succeeded=True, attempts=attempt, elapsed=clock() - started)
        logger.debug("%s not met on attempt %s/%s", label, attempt, max_attempts)
        if attempt == max_attempts:
            break
        now = clock()
        if interval and now >= deadline:
            break
        sleep(max(0.0, started + attempt * interval - now))
    return PollResult(succeeded=False, attempts=attempts, elapsed=clock() - started)
