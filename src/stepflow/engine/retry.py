"""
Retry policy engine.

``run_with_retry`` wraps one state execution (a task invocation, or a whole
Parallel/Map run) with the state's ``Retry`` list:

1. On ClassifiedError, the first policy in declaration order whose
   ``ErrorEquals`` names the error class (or ``States.ALL``) handles it.
   Later policies are not consulted for that failure. No match: re-raise.
2. Each policy counts the failures it accepted. Once its count reaches
   ``MaxAttempts`` the error is re-raised.
3. Otherwise wait ``IntervalSeconds * BackoffRate ** (count - 1)``, plus
   ``uniform(0, delay)`` under full jitter, capped by ``MaxDelaySeconds``,
   then try again.

Counters live in the call, so they are scoped to one state execution.
Waiting uses ``asyncio.sleep``; cancelling the run interrupts it.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from .exceptions import ClassifiedError
from .schema import JitterStrategy, RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]
RetryCallback = Callable[[int, ClassifiedError, float], None]


def select_policy(policies: Sequence[RetryPolicy], error: ClassifiedError) -> int | None:
    """Index of the first policy matching ``error``, or None."""
    for index, policy in enumerate(policies):
        if error.matches(policy.error_equals):
            return index
    return None


def compute_delay(
    policy: RetryPolicy,
    failures: int,
    uniform: Callable[[float, float], float] = random.uniform,
) -> float:
    """Seconds to wait after the policy accepted its ``failures``-th error."""
    delay = policy.base_delay(failures)
    if policy.jitter_strategy == JitterStrategy.FULL and delay > 0:
        delay += uniform(0, delay)
    if policy.max_delay_seconds is not None:
        delay = min(delay, policy.max_delay_seconds)
    return delay


async def run_with_retry(
    policies: Sequence[RetryPolicy],
    action: Callable[[int], Awaitable[T]],
    *,
    on_retry: RetryCallback | None = None,
    sleep: SleepFunc = asyncio.sleep,
    uniform: Callable[[float, float], float] = random.uniform,
) -> T:
    """
    Run ``action`` until it succeeds or the retry policies give up.

    Args:
        policies: Retry entries in declaration order
        action: Called with the attempt number (starting at 1)
        on_retry: Called with (failed attempt, error, delay) before each wait
        sleep: Awaitable sleep, replaceable in tests
        uniform: Jitter source, replaceable in tests

    Returns:
        The first successful result

    Raises:
        ClassifiedError: The last error once no policy allows another attempt
    """
    failures = [0] * len(policies)
    attempt = 1

    while True:
        try:
            return await action(attempt)
        except ClassifiedError as error:
            index = select_policy(policies, error)
            if index is None:
                raise

            policy = policies[index]
            failures[index] += 1
            if failures[index] >= policy.max_attempts:
                logger.info(
                    f"Giving up on {error.error} after {failures[index]} attempt(s) "
                    f"(Retry[{index}] MaxAttempts={policy.max_attempts})"
                )
                raise

            delay = compute_delay(policy, failures[index], uniform)
            if on_retry is not None:
                on_retry(attempt, error, delay)
            logger.info(
                f"Attempt {attempt} failed with {error.error}; retrying in {delay:.2f}s "
                f"(Retry[{index}] {failures[index]}/{policy.max_attempts})"
            )
            await sleep(delay)
            attempt += 1


__all__ = ["compute_delay", "run_with_retry", "select_policy"]
