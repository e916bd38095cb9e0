"""Bounded retry policy shared by every network-crossing operation."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from keytunnel.errors import KeyTunnelError, ProvisionCancelled

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry with exponential backoff, capped by attempts and delay.

    The delay before attempt ``n`` (1-based, n >= 2) is
    ``min(base_delay * factor ** (n - 2), max_delay)``. A factor of 1
    gives a fixed step, which is what port polling uses.

    Usage:
        policy = BackoffPolicy(max_attempts=5, base_delay=1.0)
        result = policy.call(open_session, retry_on=(UnreachableRemote,))
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    @classmethod
    def fixed(cls, attempts: int, interval: float) -> "BackoffPolicy":
        return cls(max_attempts=attempts, base_delay=interval, factor=1.0, max_delay=interval)

    def delays(self) -> list[float]:
        """Delays slept between consecutive attempts."""
        return [
            min(self.base_delay * self.factor ** i, self.max_delay)
            for i in range(self.max_attempts - 1)
        ]

    def call(
        self,
        fn: Callable[[], T],
        retry_on: tuple[type[BaseException], ...] = (KeyTunnelError,),
        cancel: Optional[threading.Event] = None,
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        """Run ``fn`` until it succeeds or the attempts are exhausted.

        Only exceptions listed in ``retry_on`` are retried; anything else
        propagates immediately. After the last attempt the last error is
        re-raised. ``cancel`` is checked before every attempt and while
        waiting between attempts.

        Raises:
            ProvisionCancelled: If ``cancel`` was set before an attempt.
        """
        delays = self.delays()
        for attempt in range(1, self.max_attempts + 1):
            if cancel is not None and cancel.is_set():
                raise ProvisionCancelled("cancelled between attempts", attempt=attempt)
            try:
                return fn()
            except retry_on as e:
                if attempt == self.max_attempts:
                    raise
                delay = delays[attempt - 1]
                if on_retry is not None:
                    on_retry(attempt, e, delay)
                if cancel is not None:
                    if cancel.wait(delay):
                        raise ProvisionCancelled("cancelled between attempts", attempt=attempt + 1)
                else:
                    sleep(delay)
        raise AssertionError("unreachable")

    def poll(
        self,
        predicate: Callable[[], bool],
        sleep: Callable[[float], None] = time.sleep,
    ) -> bool:
        """Evaluate ``predicate`` up to ``max_attempts`` times.

        Returns:
            True as soon as the predicate holds, False if it never did.
        """
        delays = self.delays()
        for attempt in range(self.max_attempts):
            if predicate():
                return True
            if attempt < len(delays):
                sleep(delays[attempt])
        return False
