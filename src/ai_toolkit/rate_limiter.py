"""Sliding-window admission control with exponential backoff.

One :class:`RateLimiter` exists per (provider, credential) pair and is shared
by every task that uses that credential. Callers over budget wait instead of
being rejected. Throttling reported by the provider drives an exponential
backoff that resets on the next success.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from typing import AsyncIterator, Awaitable, Callable, Deque, Dict, Optional, Tuple, TypeVar

from .config import RateLimitSettings
from .errors import ProviderUnavailable, RateLimited
from .llm_client import LLMClient, StreamChunk

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RateLimitPolicy:
    requests_per_period: int = 30
    period: float = 60.0
    warn_threshold: float = 0.8
    base_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 60.0
    max_retries: int = 3

    @classmethod
    def from_settings(cls, settings: RateLimitSettings) -> "RateLimitPolicy":
        return cls(
            requests_per_period=settings.requests_per_minute,
            period=60.0,
            warn_threshold=settings.warn_threshold,
            base_delay=settings.base_delay,
            backoff_factor=settings.backoff_factor,
            max_delay=settings.max_delay,
            max_retries=settings.max_retries,
        )


@dataclass
class RateLimitState:
    window: Deque[float] = field(default_factory=deque)
    consecutive_throttles: int = 0
    last_delay: float = 0.0
    warned: bool = False
    admitted: int = 0
    completed: int = 0
    throttled: int = 0


class RateLimiter:
    """Admission control and backoff for a single provider credential."""

    def __init__(
        self,
        name: str,
        policy: Optional[RateLimitPolicy] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.name = name
        self.policy = policy or RateLimitPolicy()
        self.state = RateLimitState()
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()

    def update_policy(self, **changes: float) -> None:
        """Change limits at runtime, e.g. ``update_policy(requests_per_period=10)``."""
        self.policy = replace(self.policy, **changes)

    @property
    def in_window(self) -> int:
        self._prune(self._clock())
        return len(self.state.window)

    def _prune(self, now: float) -> None:
        window = self.state.window
        while window and window[0] <= now - self.policy.period:
            window.popleft()

    def _check_usage(self) -> None:
        usage = len(self.state.window) / self.policy.requests_per_period
        if usage >= self.policy.warn_threshold:
            if not self.state.warned:
                logger.warning(
                    "Rate limit for %s at %d%% (%d/%d requests in %.0fs)",
                    self.name,
                    int(usage * 100),
                    len(self.state.window),
                    self.policy.requests_per_period,
                    self.policy.period,
                )
                self.state.warned = True
        else:
            self.state.warned = False

    async def acquire(self) -> None:
        """Wait until the window has room, then record the admission."""
        while True:
            async with self._lock:
                now = self._clock()
                self._prune(now)
                if len(self.state.window) < self.policy.requests_per_period:
                    self.state.window.append(now)
                    self.state.admitted += 1
                    self._check_usage()
                    return
                wait = self.state.window[0] + self.policy.period - now
            logger.debug("%s over budget, waiting %.2fs for admission", self.name, wait)
            await self._sleep(max(wait, 0.0))

    def backoff_delay(self, retry_after: Optional[float] = None) -> float:
        """Delay before the next attempt after a throttle.

        The provider's ``retry_after`` wins when present; otherwise
        ``base_delay * backoff_factor ** consecutive_throttles`` capped at
        ``max_delay``.
        """
        if retry_after is not None:
            return max(0.0, retry_after)
        policy = self.policy
        return min(policy.base_delay * policy.backoff_factor ** self.state.consecutive_throttles, policy.max_delay)

    def record_throttle(self, retry_after: Optional[float] = None) -> float:
        delay = self.backoff_delay(retry_after)
        self.state.consecutive_throttles += 1
        self.state.throttled += 1
        self.state.last_delay = delay
        logger.warning(
            "%s throttled (%d in a row), backing off for %.2fs",
            self.name,
            self.state.consecutive_throttles,
            delay,
        )
        return delay

    def record_success(self) -> None:
        if self.state.consecutive_throttles:
            logger.info("%s recovered after %d throttled attempts", self.name, self.state.consecutive_throttles)
        self.state.consecutive_throttles = 0
        self.state.last_delay = 0.0
        self.state.completed += 1

    def _unavailable_delay(self, attempt: int) -> float:
        policy = self.policy
        return min(policy.base_delay * policy.backoff_factor ** attempt, policy.max_delay)

    async def _before_retry(self, exc: Exception, attempt: int) -> bool:
        """Record the failure and sleep. Returns False when retries are exhausted."""
        if isinstance(exc, RateLimited):
            delay = self.record_throttle(exc.retry_after)
        else:
            delay = self._unavailable_delay(attempt)
        if attempt >= self.policy.max_retries:
            logger.error("%s giving up after %d retries: %s", self.name, attempt, exc)
            return False
        if isinstance(exc, ProviderUnavailable):
            logger.warning(
                "%s unavailable, retry %d/%d in %.2fs: %s",
                self.name,
                attempt + 1,
                self.policy.max_retries,
                delay,
                exc,
            )
        await self._sleep(delay)
        return True

    async def execute(self, call: Callable[[], Awaitable[T]]) -> T:
        """Run ``call`` under admission control, retrying throttles and outages.

        Any other error propagates immediately. Cancellation propagates
        without being counted as a success or a throttle.
        """
        attempt = 0
        while True:
            await self.acquire()
            try:
                result = await call()
            except (RateLimited, ProviderUnavailable) as exc:
                if not await self._before_retry(exc, attempt):
                    raise
                attempt += 1
                continue
            self.record_success()
            return result

    async def stream(self, open_stream: Callable[[], AsyncIterator[StreamChunk]]) -> AsyncIterator[StreamChunk]:
        """Streaming counterpart of :meth:`execute`.

        Only failures before the first chunk are retried. Success is recorded
        when the final chunk arrives; a stream abandoned earlier records
        nothing.
        """
        attempt = 0
        while True:
            await self.acquire()
            started = False
            try:
                async with aclosing(open_stream()) as chunks:
                    async for chunk in chunks:
                        started = True
                        if chunk.is_final:
                            self.record_success()
                        yield chunk
                        if chunk.is_final:
                            return
                return
            except (RateLimited, ProviderUnavailable) as exc:
                if started or not await self._before_retry(exc, attempt):
                    raise
                attempt += 1


class RateLimiterRegistry:
    """Hands out one shared limiter per (provider, credential)."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._limiters: Dict[Tuple[str, str], RateLimiter] = {}
        self._clock = clock
        self._sleep = sleep

    def __len__(self) -> int:
        return len(self._limiters)

    def get(self, provider: str, credential_id: str, policy: Optional[RateLimitPolicy] = None) -> RateLimiter:
        key = (provider, credential_id)
        limiter = self._limiters.get(key)
        if limiter is None:
            limiter = RateLimiter(provider, policy, clock=self._clock, sleep=self._sleep)
            self._limiters[key] = limiter
        return limiter

    def for_client(self, client: LLMClient, policy: Optional[RateLimitPolicy] = None) -> RateLimiter:
        return self.get(client.provider_name, client.credential_id, policy)
