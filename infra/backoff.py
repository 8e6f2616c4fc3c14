"""
Capped exponential backoff shared by the REST transport and the price stream.

delay(n) = min(max_delay, base_delay * 2 ** (n - 1)) for attempt n >= 1,
optionally with full jitter. A Backoff tracker counts consecutive failures
and reports exhaustion once max_attempts is reached.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    base_delay: float = 1.0
    max_delay: float = 30.0
    max_attempts: Optional[int] = 5  # None = unbounded
    jitter: bool = False

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        attempt = max(1, int(attempt))
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if self.jitter:
            delay = random.uniform(0, delay)
        return max(0.0, delay)

    @classmethod
    def from_config(cls, cfg: Optional[dict], **defaults) -> "BackoffPolicy":
        cfg = cfg or {}
        base = cls(**defaults)
        max_attempts = cfg.get("max_reconnect_attempts", cfg.get("max_attempts", base.max_attempts))
        return cls(
            base_delay=float(cfg.get("reconnect_base_seconds", cfg.get("base_delay", base.base_delay))),
            max_delay=float(cfg.get("reconnect_max_seconds", cfg.get("max_delay", base.max_delay))),
            max_attempts=int(max_attempts) if max_attempts is not None else None,
            jitter=bool(cfg.get("jitter", base.jitter)),
        )


class Backoff:
    """Stateful consecutive-failure counter over a BackoffPolicy."""

    def __init__(self, policy: BackoffPolicy):
        self.policy = policy
        self.attempts = 0

    @property
    def exhausted(self) -> bool:
        limit = self.policy.max_attempts
        return limit is not None and self.attempts >= limit

    def next_delay(self) -> Optional[float]:
        """Register a failure; returns the wait before retrying, or None when exhausted."""
        if self.exhausted:
            return None
        self.attempts += 1
        return self.policy.delay_for(self.attempts)

    def reset(self) -> None:
        self.attempts = 0


def retry_call(
    fn: Callable[[], T],
    policy: BackoffPolicy,
    retry_on: Tuple[Type[BaseException], ...],
    *,
    description: str = "call",
    sleep: Callable[[float], None] = time.sleep,
    should_retry: Optional[Callable[[BaseException], bool]] = None,
) -> T:
    """
    Invoke fn, retrying exceptions in retry_on with capped exponential backoff.

    policy.max_attempts counts total invocations. The last exception is
    re-raised once attempts are exhausted.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except retry_on as exc:
            if should_retry is not None and not should_retry(exc):
                raise
            limit = policy.max_attempts
            if limit is not None and attempt >= limit:
                logger.error(f"All {attempt} attempts exhausted for {description}: {exc}")
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{description} failed ({exc}), attempt {attempt}/{limit or 'inf'}; "
                f"retrying in {delay:.1f}s"
            )
            sleep(delay)
