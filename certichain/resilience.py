"""
CERTICHAIN Resilience

Retry with backoff for ledger submissions. The ledger rejects transactions
whose account sequence collides with another in-flight transaction; those
rejections are transient and are retried here. Everything else fails fast.

Usage
─────

    from certichain.resilience import RetryPolicy

    retry = RetryPolicy(max_attempts=4, base_delay_seconds=0.5)
    result = retry.execute(lambda: submitter.submit(tx_json))

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import functools
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Optional, TypeVar

T = TypeVar("T")


# ════════════════════════════════════════════════════════════════════════════
# RETRY POLICY
# ════════════════════════════════════════════════════════════════════════════


class BackoffStrategy(Enum):
    """Retry backoff strategies."""
    FIXED = auto()
    EXPONENTIAL = auto()
    EXPONENTIAL_JITTER = auto()
    LINEAR = auto()


@dataclass
class RetryConfig:
    """Retry policy configuration."""
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER
    jitter_factor: float = 0.5
    retryable_exceptions: tuple = (Exception,)
    non_retryable_exceptions: tuple = ()


@dataclass
class RetryMetrics:
    """Retry metrics."""
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    retries_exhausted: int = 0
    total_retry_delay_seconds: float = 0.0


class RetryExhaustedError(Exception):
    """Raised when all retry attempts are exhausted."""
    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Retry exhausted after {attempts} attempts: {last_exception}")


class RetryPolicy:
    """
    Retry policy with configurable backoff strategies.

    Only exceptions matching ``retryable_exceptions`` (and not
    ``non_retryable_exceptions``) are retried; any other exception
    propagates immediately from ``execute``.

    Example:
        retry = RetryPolicy(max_attempts=3, retryable_exceptions=(SequenceConflict,))
        result = retry.execute(lambda: submit(tx))
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 60.0,
        backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER,
        jitter_factor: float = 0.5,
        retryable_exceptions: tuple = (Exception,),
        non_retryable_exceptions: tuple = (),
        on_retry: Optional[Callable[[int, Exception, float], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.config = RetryConfig(
            max_attempts=max_attempts,
            base_delay_seconds=base_delay_seconds,
            max_delay_seconds=max_delay_seconds,
            backoff_strategy=backoff_strategy,
            jitter_factor=jitter_factor,
            retryable_exceptions=retryable_exceptions,
            non_retryable_exceptions=non_retryable_exceptions,
        )
        self._metrics = RetryMetrics()
        self._lock = threading.Lock()
        self._on_retry = on_retry
        self._sleep = sleep

    @classmethod
    def from_config(cls, submission_config, **kwargs) -> "RetryPolicy":
        """Build a policy from a SubmissionConfig section."""
        return cls(
            max_attempts=submission_config.max_attempts.get(),
            base_delay_seconds=submission_config.base_delay_seconds.get(),
            max_delay_seconds=submission_config.max_delay_seconds.get(),
            **kwargs,
        )

    @property
    def metrics(self) -> RetryMetrics:
        """Current retry metrics."""
        with self._lock:
            return RetryMetrics(
                total_attempts=self._metrics.total_attempts,
                successful_attempts=self._metrics.successful_attempts,
                failed_attempts=self._metrics.failed_attempts,
                retries_exhausted=self._metrics.retries_exhausted,
                total_retry_delay_seconds=self._metrics.total_retry_delay_seconds,
            )

    def _calculate_delay(self, attempt: int) -> float:
        """Calculate delay before next retry."""
        base = self.config.base_delay_seconds
        strategy = self.config.backoff_strategy

        if strategy == BackoffStrategy.FIXED:
            delay = base
        elif strategy == BackoffStrategy.LINEAR:
            delay = base * attempt
        elif strategy == BackoffStrategy.EXPONENTIAL:
            delay = base * (2 ** (attempt - 1))
        elif strategy == BackoffStrategy.EXPONENTIAL_JITTER:
            exp_delay = base * (2 ** (attempt - 1))
            jitter = random.uniform(0, self.config.jitter_factor * exp_delay)
            delay = exp_delay + jitter
        else:
            delay = base

        return min(delay, self.config.max_delay_seconds)

    def _is_retryable(self, exc: Exception) -> bool:
        if isinstance(exc, self.config.non_retryable_exceptions):
            return False
        return isinstance(exc, self.config.retryable_exceptions)

    def execute(self, func: Callable[[], T]) -> T:
        """Execute function with retry policy."""
        last_exception: Optional[Exception] = None

        for attempt in range(1, self.config.max_attempts + 1):
            with self._lock:
                self._metrics.total_attempts += 1

            try:
                result = func()
                with self._lock:
                    self._metrics.successful_attempts += 1
                return result
            except Exception as e:
                last_exception = e
                with self._lock:
                    self._metrics.failed_attempts += 1

                if not self._is_retryable(e):
                    raise

                if attempt < self.config.max_attempts:
                    delay = self._calculate_delay(attempt)
                    with self._lock:
                        self._metrics.total_retry_delay_seconds += delay

                    if self._on_retry:
                        self._on_retry(attempt, e, delay)

                    self._sleep(delay)

        with self._lock:
            self._metrics.retries_exhausted += 1

        raise RetryExhaustedError(self.config.max_attempts, last_exception)

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        """Decorator for retry protection."""
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            return self.execute(lambda: func(*args, **kwargs))
        return wrapper
