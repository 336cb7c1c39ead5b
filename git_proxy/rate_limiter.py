"""Global token-bucket admission control.

One bucket is shared by every request a pipeline serves:
- The bucket starts full at ``burst`` tokens
- Tokens refill continuously at ``refill_rate`` per second, capped at burst
- Each admitted request consumes one token
- Requests that find no whole token are denied with a retry-after estimate

The refill-and-consume step runs in a single critical section. The clock is
injectable so tests can drive time explicitly.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Tuple

from git_proxy.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_BURST = 20
DEFAULT_REFILL_RATE = 5.0


@dataclass
class TokenBucket:
    """Token bucket state.

    Attributes:
        tokens: Current number of tokens, kept within 0..capacity
        last_refill: Clock reading at the last refill
        capacity: Maximum number of tokens
        refill_rate: Tokens added per second
    """
    tokens: float
    last_refill: float
    capacity: float
    refill_rate: float

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def consume(self, now: float) -> bool:
        """Refill, then attempt to take one token."""
        self.refill(now)
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return True
        return False

    def get_retry_after(self) -> float:
        """Seconds until one whole token is available."""
        tokens_needed = 1.0 - self.tokens
        if tokens_needed <= 0:
            return 0.0
        return tokens_needed / self.refill_rate


class RateLimiter:
    """Process-wide admission control for git operations."""

    def __init__(
        self,
        burst: int = DEFAULT_BURST,
        refill_rate: float = DEFAULT_REFILL_RATE,
        clock: Callable[[], float] = time.monotonic,
    ):
        if burst <= 0:
            raise ValueError(f"burst must be positive, got {burst}")
        if refill_rate <= 0:
            raise ValueError(f"refill_rate must be positive, got {refill_rate}")
        self._clock = clock
        self._lock = threading.Lock()
        self._bucket = TokenBucket(
            tokens=float(burst),
            last_refill=clock(),
            capacity=float(burst),
            refill_rate=float(refill_rate),
        )
        self._total_allowed = 0
        self._total_blocked = 0

    @classmethod
    def from_config(cls, config, clock: Callable[[], float] = time.monotonic) -> "RateLimiter":
        """Build a limiter from a ``RateLimitConfig``."""
        return cls(burst=config.burst, refill_rate=config.sustained_per_second, clock=clock)

    @property
    def burst(self) -> int:
        return int(self._bucket.capacity)

    @property
    def refill_rate(self) -> float:
        return self._bucket.refill_rate

    def try_acquire(self) -> Tuple[bool, float]:
        """Attempt to admit one request.

        Returns:
            Tuple of (allowed, retry_after_seconds). retry_after is 0.0 when
            the request was admitted.
        """
        with self._lock:
            if self._bucket.consume(self._clock()):
                self._total_allowed += 1
                return True, 0.0
            self._total_blocked += 1
            retry_after = self._bucket.get_retry_after()

        logger.warning(f"Rate limit exceeded, retry after {retry_after:.2f}s")
        return False, retry_after

    def available_tokens(self) -> float:
        with self._lock:
            self._bucket.refill(self._clock())
            return self._bucket.tokens

    def time_until_available(self) -> float:
        """Seconds until a request would be admitted (0.0 if now)."""
        with self._lock:
            self._bucket.refill(self._clock())
            return self._bucket.get_retry_after()

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            self._bucket.refill(self._clock())
            return {
                "total_allowed": self._total_allowed,
                "total_blocked": self._total_blocked,
                "available_tokens": self._bucket.tokens,
                "burst": self.burst,
                "refill_rate": self._bucket.refill_rate,
            }

    def reset(self) -> None:
        """Refill the bucket and clear counters."""
        with self._lock:
            self._bucket.tokens = self._bucket.capacity
            self._bucket.last_refill = self._clock()
            self._total_allowed = 0
            self._total_blocked = 0
