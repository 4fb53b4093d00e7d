"""Retry, backoff, circuit breaking and source fallback around event source calls."""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Generic, Sequence, TypeVar

from loguru import logger

from app.core.config import Settings
from ingestion.errors import (
    AllSourcesFailedError,
    CircuitOpenError,
    EventSourceError,
    RateLimitError,
    SearchDepthExceededError,
    SearchDepthLimitError,
    TransientSourceError,
)


T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]


class RetryState(str, Enum):
    IDLE = "idle"
    ATTEMPTING = "attempting"
    BACKOFF = "backoff"
    EXHAUSTED = "exhausted"
    SUCCEEDED = "succeeded"


@dataclass(slots=True, frozen=True)
class RetryStatus:
    attempt: int
    max_attempts: int
    delay: float
    state: RetryState
    source: str | None = None
    range_hours: float | None = None
    error: str | None = None


RetryCallback = Callable[[RetryStatus], None]


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_retries: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter_ratio: float = 0.0
    rate_limit_fallback_after: int | None = None
    search_depth_aware: bool = True
    min_range_hours: float = 0.25
    shrink_factor: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.retry_max_retries,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            jitter_ratio=settings.retry_jitter_ratio,
            rate_limit_fallback_after=settings.retry_rate_limit_fallback_after,
            search_depth_aware=settings.retry_search_depth_aware,
            min_range_hours=settings.retry_min_range_hours,
        )

    @property
    def fallback_threshold(self) -> int:
        """Consecutive rate-limit failures tolerated before moving to the next source."""
        if self.rate_limit_fallback_after is None:
            return self.max_retries + 1
        return self.rate_limit_fallback_after

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        backoff = self.base_delay * (2 ** max(attempt, 0))
        backoff = min(backoff, self.max_delay)
        if self.jitter_ratio <= 0:
            return backoff
        jitter = backoff * self.jitter_ratio * (rng or random).random()
        return backoff + jitter


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Failure counter for one source.

    The circuit opens after ``failure_threshold`` consecutive failures and
    lets a trial request through once ``cooldown_seconds`` have elapsed. A
    failed trial re-opens it; a success closes it and resets the counter.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Clock = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: float | None = None

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.cooldown_seconds
        ):
            self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state != CircuitState.OPEN

    def record_success(self) -> None:
        self._failures = 0
        self._opened_at = None
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failures += 1
        if self.state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            if self._state != CircuitState.OPEN:
                logger.warning(
                    "Circuit opened for source {} after {} failures", self.name, self._failures
                )
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()


class CircuitBreakerRegistry:
    """Breakers keyed by source name, shared by every fetcher of a discovery run."""

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Clock = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Clock = time.monotonic) -> "CircuitBreakerRegistry":
        return cls(
            failure_threshold=settings.circuit_failure_threshold,
            cooldown_seconds=settings.circuit_cooldown_seconds,
            clock=clock,
        )

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                failure_threshold=self.failure_threshold,
                cooldown_seconds=self.cooldown_seconds,
                clock=self._clock,
            )
            self._breakers[name] = breaker
        return breaker

    def snapshot(self) -> dict[str, str]:
        return {name: breaker.state.value for name, breaker in self._breakers.items()}


@dataclass(frozen=True)
class FetchOutcome(Generic[T]):
    value: T
    source: str
    range_hours: float | None
    retries: int


SourceOperation = Callable[[str, float | None], Awaitable[T]]


class ResilientFetcher:
    """Runs one logical fetch against an ordered list of sources.

    ``operation`` receives the source name and the range to request. The
    first source is the primary; the rest are fallbacks tried in order.
    """

    def __init__(
        self,
        source_names: Sequence[str],
        *,
        policy: RetryPolicy | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        on_retry: RetryCallback | None = None,
        sleep: SleepFn | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.source_names = list(source_names)
        self.policy = policy or RetryPolicy()
        self.breakers = breakers or CircuitBreakerRegistry()
        self.on_retry = on_retry
        self._sleep = sleep or asyncio.sleep
        self._rng = rng
        self.status = RetryStatus(
            attempt=0, max_attempts=self.policy.max_retries, delay=0.0, state=RetryState.IDLE
        )

    def _set_status(self, status: RetryStatus, *, notify: bool = False) -> None:
        self.status = status
        if notify and self.on_retry is not None:
            self.on_retry(status)

    async def run(
        self,
        operation: SourceOperation[T],
        *,
        target: str,
        range_hours: float | None = None,
    ) -> FetchOutcome[T]:
        policy = self.policy
        errors: list[EventSourceError] = []
        current_range = range_hours
        retries = 0

        for index, name in enumerate(self.source_names):
            breaker = self.breakers.get(name)
            next_name = (
                self.source_names[index + 1] if index + 1 < len(self.source_names) else None
            )
            if not breaker.allow_request():
                logger.warning("Skipping source {} for {}: circuit open", name, target)
                errors.append(CircuitOpenError("circuit open", source=name))
                continue

            source_retries = 0
            consecutive_rate_limits = 0
            saw_rate_limit = False
            while True:
                if not breaker.allow_request():
                    errors.append(CircuitOpenError("circuit open", source=name))
                    break
                self._set_status(
                    RetryStatus(
                        attempt=source_retries,
                        max_attempts=policy.max_retries,
                        delay=0.0,
                        state=RetryState.ATTEMPTING,
                        source=name,
                        range_hours=current_range,
                    )
                )
                try:
                    value = await operation(name, current_range)
                except SearchDepthExceededError as exc:
                    if not policy.search_depth_aware or current_range is None:
                        self._set_status(self._exhausted(name, current_range, str(exc)))
                        raise SearchDepthLimitError(
                            current_range or 0.0, too_restrictive=False
                        ) from exc
                    next_range = current_range * policy.shrink_factor
                    if next_range < policy.min_range_hours:
                        self._set_status(self._exhausted(name, current_range, str(exc)))
                        raise SearchDepthLimitError(current_range, too_restrictive=True) from exc
                    logger.info(
                        "Search depth exceeded on {} for {}; shrinking range {}h -> {}h",
                        name,
                        target,
                        current_range,
                        next_range,
                    )
                    current_range = next_range
                    retries += 1
                    self._set_status(
                        RetryStatus(
                            attempt=source_retries + 1,
                            max_attempts=policy.max_retries,
                            delay=0.0,
                            state=RetryState.BACKOFF,
                            source=name,
                            range_hours=current_range,
                            error=str(exc),
                        ),
                        notify=True,
                    )
                    continue
                except TransientSourceError as exc:
                    exc.source = exc.source or name
                    breaker.record_failure()
                    errors.append(exc)
                    is_rate_limit = isinstance(exc, RateLimitError)
                    saw_rate_limit = saw_rate_limit or is_rate_limit
                    consecutive_rate_limits = consecutive_rate_limits + 1 if is_rate_limit else 0
                    if not breaker.allow_request():
                        break
                    if source_retries >= policy.max_retries or (
                        is_rate_limit and consecutive_rate_limits >= policy.fallback_threshold
                    ):
                        break
                    delay = policy.delay_for(source_retries, self._rng)
                    source_retries += 1
                    retries += 1
                    logger.warning(
                        "Source {} failed for {} ({}); retry {}/{} in {:.2f}s",
                        name,
                        target,
                        exc,
                        source_retries,
                        policy.max_retries,
                        delay,
                    )
                    self._set_status(
                        RetryStatus(
                            attempt=source_retries,
                            max_attempts=policy.max_retries,
                            delay=delay,
                            state=RetryState.BACKOFF,
                            source=name,
                            range_hours=current_range,
                            error=str(exc),
                        ),
                        notify=True,
                    )
                    await self._sleep(delay)
                    continue
                except EventSourceError as exc:
                    exc.source = exc.source or name
                    if not isinstance(exc, CircuitOpenError):
                        breaker.record_failure()
                    errors.append(exc)
                    logger.warning("Source {} failed for {}: {}", name, target, exc)
                    break
                else:
                    breaker.record_success()
                    self._set_status(
                        RetryStatus(
                            attempt=source_retries,
                            max_attempts=policy.max_retries,
                            delay=0.0,
                            state=RetryState.SUCCEEDED,
                            source=name,
                            range_hours=current_range,
                        )
                    )
                    return FetchOutcome(
                        value=value, source=name, range_hours=current_range, retries=retries
                    )

            if next_name is not None:
                if saw_rate_limit:
                    message = f"rate limited, falling back to {next_name}"
                else:
                    message = f"{name} failed, falling back to {next_name}"
                logger.warning("{} ({})", message, target)
                retries += 1
                self._set_status(
                    RetryStatus(
                        attempt=0,
                        max_attempts=policy.max_retries,
                        delay=0.0,
                        state=RetryState.BACKOFF,
                        source=next_name,
                        range_hours=current_range,
                        error=message,
                    ),
                    notify=True,
                )

        last_text = str(errors[-1]) if errors else None
        self._set_status(self._exhausted(None, current_range, last_text))
        logger.error("All sources failed for {}", target)
        raise AllSourcesFailedError(target, errors)

    def _exhausted(self, source: str | None, range_hours: float | None, error: str | None) -> RetryStatus:
        return RetryStatus(
            attempt=self.status.attempt,
            max_attempts=self.policy.max_retries,
            delay=0.0,
            state=RetryState.EXHAUSTED,
            source=source,
            range_hours=range_hours,
            error=error,
        )


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    on_retry: RetryCallback | None = None,
    sleep: SleepFn | None = None,
    target: str = "operation",
) -> T:
    """Run a zero-argument coroutine factory with the backoff policy and no fallbacks."""

    async def _call(_source: str, _range_hours: float | None) -> T:
        return await operation()

    fetcher = ResilientFetcher(
        [target],
        policy=policy,
        on_retry=on_retry,
        sleep=sleep,
    )
    outcome = await fetcher.run(_call, target=target)
    return outcome.value
