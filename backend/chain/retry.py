"""Exponential-backoff retry applied uniformly to chain reader calls."""

from __future__ import annotations

import functools
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from loguru import logger

from app.core.config import Settings
from app.errors import TransientProviderError

T = TypeVar("T")


def _should_retry_exception(exc: Exception) -> bool:
    return isinstance(exc, TransientProviderError)


@dataclass(slots=True)
class RetryPolicy:
    """Retry transient provider errors with ``base * 2^(attempt-1)`` backoff.

    Permanent errors (reverts, unknown ids, malformed tuples) and run-level
    outages are raised on the first attempt. After ``attempts`` tries the last
    transient error is raised unchanged so callers still see its type.
    """

    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 0.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "RetryPolicy":
        params: dict[str, Any] = {
            "attempts": settings.retry_attempts,
            "base_delay": settings.retry_base_delay_seconds,
            "max_delay": settings.retry_max_delay_seconds,
        }
        params.update(overrides)
        return cls(**params)

    def delay_for(self, attempt: int) -> float:
        backoff = self.base_delay * (2 ** max(attempt - 1, 0))
        backoff = min(backoff, self.max_delay)
        if self.jitter:
            backoff += random.uniform(0.0, self.jitter)
        return backoff

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        total_attempts = max(1, self.attempts)
        name = getattr(func, "__name__", repr(func))
        for attempt in range(1, total_attempts + 1):
            try:
                return func(*args, **kwargs)
            except Exception as exc:  # noqa: BLE001
                retryable = _should_retry_exception(exc) and attempt < total_attempts
                if not retryable:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "Chain call {} failed attempt={}/{} error={}: {}; retrying in {:.2f}s",
                    name,
                    attempt,
                    total_attempts,
                    exc.__class__.__name__,
                    exc,
                    delay,
                )
                self.sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return self.call(func, *args, **kwargs)

        return wrapper


class RetryingChainReader:
    """Chain reader proxy that routes every public read through a RetryPolicy."""

    _WRAPPED = (
        "read_entity_count",
        "read_market",
        "read_participants",
        "read_stake",
        "read_stable_market",
        "read_stable_participants",
        "read_event_logs",
        "latest_block",
    )

    def __init__(self, reader: Any, policy: RetryPolicy) -> None:
        self._reader = reader
        self.policy = policy
        for name in self._WRAPPED:
            method = getattr(reader, name, None)
            if method is not None:
                setattr(self, name, policy(method))

    @property
    def inner(self) -> Any:
        return self._reader

    def __getattr__(self, name: str) -> Any:
        return getattr(self._reader, name)


__all__ = ["RetryPolicy", "RetryingChainReader"]
