"""
Retry / Backoff Controller

Design Decision: One Retry Policy
=================================

Options Considered:
1. Ad-hoc retry loops at each call site (signaling connect, negotiation,
   chunk send)
   - Easy to write, but policies drift apart over time

2. A third-party retry decorator
   - Decorators don't know about our cancellation token or error taxonomy

3. One controller parameterized by operation and error classification

Decision: Option 3
- Exponential delays: 1s, 2s, 4s, 8s, 16s (capped), at most 5 attempts
- Transient errors (timeouts, buffer full, dropped connections) are retried
- Terminal errors (cancellation, checksum mismatch, malformed messages,
  code conflicts) propagate immediately
- Backoff sleeps wake up early when the transfer is cancelled

Cancellation is cooperative: the token is checked before every attempt
and while waiting between attempts, never in the middle of an operation.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Type, TypeVar

from ..errors import PeerDropError, SendFailed, TransferCancelled, is_transient

logger = logging.getLogger(__name__)

T = TypeVar('T')


class CancellationToken:
    """
    Transfer-scoped cooperative cancellation flag.

    Loops call `raise_if_cancelled()` at their safe points; waiters can
    `await token.wait()` or use `sleep()` for an interruptible delay.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Transfer cancelled"):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.debug(f"Cancellation requested: {reason}")

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise TransferCancelled(self.reason)

    async def wait(self):
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """
        Sleep for `delay` seconds unless cancelled first.

        Returns:
            True if the token was cancelled during the sleep
        """
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False


@dataclass
class RetryPolicy:
    """Exponential backoff parameters."""
    max_attempts: int = 5
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 16.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        delay = self.base_delay * (self.factor ** (attempt - 1))
        return min(delay, self.max_delay)

    def delays(self):
        """All delays between attempts, e.g. [1, 2, 4, 8] for 5 attempts."""
        return [self.delay_for(n) for n in range(1, self.max_attempts)]


RetryCallback = Callable[[int, BaseException, float], None]


class RetryController:
    """
    Runs async operations under a shared backoff policy.

    Usage:
        controller = RetryController(RetryPolicy(max_attempts=5))
        await controller.run(lambda: transport.send(data), name="send chunk",
                             token=token, exhausted=SendFailed)
    """

    def __init__(self, policy: RetryPolicy = None,
                 sleep: Callable[[float], Awaitable[None]] = None):
        """
        Args:
            policy: Backoff parameters (defaults to 5 attempts, 1s..16s)
            sleep: Replacement for asyncio.sleep, used when no token is given
        """
        self.policy = policy or RetryPolicy()
        self._sleep = sleep or asyncio.sleep

        # Statistics
        self.attempts = 0
        self.retries = 0

    async def run(self, operation: Callable[[], Awaitable[T]], *,
                  name: str = "operation",
                  token: Optional[CancellationToken] = None,
                  on_retry: Optional[RetryCallback] = None,
                  exhausted: Type[PeerDropError] = SendFailed,
                  policy: Optional[RetryPolicy] = None) -> T:
        """
        Await `operation()` until it succeeds, fails terminally, or the
        policy runs out of attempts.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt
            name: Used in log lines and the exhaustion message
            token: Cancellation token checked before each attempt and during backoff
            on_retry: Called with (attempt, error, delay) before each backoff wait
            exhausted: Error type raised after the last transient failure
            policy: Overrides the controller's policy for this call

        Raises:
            TransferCancelled: token cancelled
            exhausted: all attempts failed with transient errors
            Any terminal error raised by the operation
        """
        policy = policy or self.policy
        last_error: Optional[BaseException] = None

        for attempt in range(1, policy.max_attempts + 1):
            if token is not None:
                token.raise_if_cancelled()

            self.attempts += 1
            try:
                return await operation()
            except Exception as e:
                if not is_transient(e):
                    raise
                last_error = e

            if attempt == policy.max_attempts:
                break

            delay = policy.delay_for(attempt)
            self.retries += 1
            logger.warning(f"{name} failed (attempt {attempt}/{policy.max_attempts}): "
                           f"{last_error}; retrying in {delay:.1f}s")
            if on_retry:
                on_retry(attempt, last_error, delay)

            if token is not None:
                if await token.sleep(delay):
                    token.raise_if_cancelled()
            else:
                await self._sleep(delay)

        logger.error(f"{name} failed after {policy.max_attempts} attempts: {last_error}")
        raise exhausted(
            f"{name} failed after {policy.max_attempts} attempts: {last_error}"
        ) from last_error

    def get_stats(self) -> dict:
        """Get retry statistics."""
        return {
            'attempts': self.attempts,
            'retries': self.retries,
            'max_attempts': self.policy.max_attempts,
        }
