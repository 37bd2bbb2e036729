"""Retry executor with exponential backoff (core domain).

Runs a fallible coroutine factory once, then retries it up to
``max_retries`` times. The delay before retry ``n`` is
``min(max_delay_ms, initial_delay_ms * backoff_factor ** n)``, optionally
perturbed by up to +/-15% and never above ``max_delay_ms``. Every attempt is
reported to an observability hook.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from core.config import RetryConfig
from core.errors import ErrorKind, OperationTimeout, classify_error, is_retryable
from core.ports import Clock, Sleeper

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class SystemClock:
    """Wall clock and monotonic timer backed by the standard library."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


async def asyncio_sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


@dataclass(frozen=True)
class AttemptReport:
    """One attempt as seen by the observability hook."""

    operation: str
    attempt: int
    elapsed_ms: float
    success: bool
    correlation_id: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    success: bool
    attempts: int
    total_time_ms: float
    max_retries_reached: bool
    result: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return classify_error(self.error) if self.error is not None else None


AttemptHook = Callable[[AttemptReport], Any]


def log_attempt(report: AttemptReport) -> None:
    """Default hook: one log line per attempt."""

    if report.success:
        LOGGER.info(
            "%s succeeded on attempt %s after %.0fms [%s]",
            report.operation,
            report.attempt,
            report.elapsed_ms,
            report.correlation_id,
        )
        return
    LOGGER.warning(
        "%s attempt %s failed (%s) after %.0fms [%s]: %s",
        report.operation,
        report.attempt,
        report.error_kind.value if report.error_kind else "unknown",
        report.elapsed_ms,
        report.correlation_id,
        report.error,
    )


class RetryExecutor:
    """Executes async operations with bounded, backoff-based retries."""

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        *,
        sleeper: Optional[Sleeper] = None,
        clock: Optional[Clock] = None,
        hook: Optional[AttemptHook] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._config = config or RetryConfig()
        self._sleep = sleeper or asyncio_sleep
        self._clock = clock or SystemClock()
        self._hook = hook or log_attempt
        self._rng = rng or random.Random()

    @property
    def config(self) -> RetryConfig:
        return self._config

    def backoff_delay_ms(self, attempt: int) -> float:
        """Delay to wait after ``attempt`` failed tries, in milliseconds."""

        config = self._config
        delay = min(config.max_delay_ms, config.initial_delay_ms * config.backoff_factor ** attempt)
        if config.use_jitter and delay > 0:
            spread = delay * config.jitter_ratio
            delay += self._rng.uniform(-spread, spread)
        return max(0.0, min(config.max_delay_ms, delay))

    async def _run_once(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        timeout_ms = self._config.timeout_ms
        if timeout_ms is None:
            return await operation()
        try:
            return await asyncio.wait_for(operation(), timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError as exc:
            raise OperationTimeout(name, timeout_ms) from exc

    def _report(self, report: AttemptReport) -> None:
        try:
            self._hook(report)
        except Exception:
            LOGGER.exception("Retry hook failed for %s", report.operation)

    def _elapsed_ms(self, started: float) -> float:
        return (self._clock.monotonic() - started) * 1000.0

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        name: str = "operation",
        correlation_id: Optional[str] = None,
    ) -> RetryResult[T]:
        """Run ``operation`` until it succeeds or the retry budget is spent.

        ``operation`` is a zero-argument callable returning a fresh awaitable
        per attempt. Non-retryable errors (validation) stop immediately with
        ``max_retries_reached`` left false.
        """

        started = self._clock.monotonic()
        attempts = 0
        last_error: Optional[BaseException] = None

        while attempts <= self._config.max_retries:
            if attempts:
                delay_ms = self.backoff_delay_ms(attempts)
                LOGGER.debug(
                    "Waiting %.0fms before retry %s of %s for %s [%s]",
                    delay_ms,
                    attempts,
                    self._config.max_retries,
                    name,
                    correlation_id,
                )
                await self._sleep(delay_ms / 1000.0)

            attempts += 1
            try:
                result = await self._run_once(operation, name)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = exc
                self._report(
                    AttemptReport(
                        operation=name,
                        attempt=attempts,
                        elapsed_ms=self._elapsed_ms(started),
                        success=False,
                        correlation_id=correlation_id,
                        error_kind=classify_error(exc),
                        error=exc,
                    )
                )
                if not is_retryable(exc):
                    return RetryResult(
                        success=False,
                        attempts=attempts,
                        total_time_ms=self._elapsed_ms(started),
                        max_retries_reached=False,
                        error=exc,
                    )
                continue

            self._report(
                AttemptReport(
                    operation=name,
                    attempt=attempts,
                    elapsed_ms=self._elapsed_ms(started),
                    success=True,
                    correlation_id=correlation_id,
                )
            )
            return RetryResult(
                success=True,
                attempts=attempts,
                total_time_ms=self._elapsed_ms(started),
                max_retries_reached=False,
                result=result,
            )

        LOGGER.error(
            "%s failed after %s attempts, giving up [%s]: %s",
            name,
            attempts,
            correlation_id,
            last_error,
        )
        return RetryResult(
            success=False,
            attempts=attempts,
            total_time_ms=self._elapsed_ms(started),
            max_retries_reached=True,
            error=last_error,
        )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    *,
    name: str = "operation",
    correlation_id: Optional[str] = None,
) -> RetryResult[T]:
    """One-shot helper around RetryExecutor with default collaborators."""

    return await RetryExecutor(config).execute(operation, name=name, correlation_id=correlation_id)
