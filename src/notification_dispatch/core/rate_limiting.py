"""
Rate Limiting Module
Token bucket throttling and per-channel circuit breaking
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class TokenBucket:
    """Token bucket for rate limiting"""

    def __init__(self, rate: float, capacity: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        """Initialize Token Bucket

        Args:
            rate: Tokens per second
            capacity: Burst size, defaults to one second of tokens
            clock: Monotonic time source
        """
        if rate <= 0:
            raise ValueError("rate must be positive")

        self.rate = rate
        self.capacity = capacity if capacity is not None else rate
        self.tokens = self.capacity
        self._clock = clock
        self.last_update = clock()
        self.waits = 0

    def consume(self, tokens: int = 1) -> bool:
        """Consume tokens

        Args:
            tokens: Number of tokens to consume

        Returns:
            True if tokens available
        """
        self._refill()

        if self.tokens >= tokens:
            self.tokens -= tokens
            return True

        return False

    async def acquire(self, tokens: int = 1):
        """Suspend until tokens are available, then consume them"""
        while not self.consume(tokens):
            self.waits += 1
            await asyncio.sleep(self.time_until_available(tokens))

    def time_until_available(self, tokens: int = 1) -> float:
        """Seconds until the requested tokens can be consumed"""
        self._refill()
        missing = tokens - self.tokens
        if missing <= 0:
            return 0.0
        return missing / self.rate

    def _refill(self):
        """Refill tokens based on elapsed time"""
        current_time = self._clock()
        elapsed = current_time - self.last_update

        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_update = current_time

    def get_status(self) -> Dict[str, float]:
        self._refill()
        return {
            'tokens': self.tokens,
            'capacity': self.capacity,
            'rate': self.rate,
            'waits': self.waits,
        }


class CircuitBreaker:
    """Circuit breaker for channel failures"""

    CLOSED = 'closed'
    OPEN = 'open'
    HALF_OPEN = 'half_open'

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60,
                 clock: Callable[[], float] = time.monotonic):
        """Initialize Circuit Breaker

        Args:
            failure_threshold: Consecutive failures before opening
            recovery_timeout: Seconds before a half-open probe is allowed
        """
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.current_state = self.CLOSED

    def record_success(self):
        """Record successful operation"""
        self.failure_count = 0
        if self.current_state != self.CLOSED:
            logger.info("Circuit closed after successful probe")
        self.current_state = self.CLOSED

    def record_failure(self):
        """Record failed operation"""
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self.current_state == self.HALF_OPEN or self.failure_count >= self.failure_threshold:
            if self.current_state != self.OPEN:
                logger.warning(f"Circuit opened after {self.failure_count} failures")
            self.current_state = self.OPEN

    def can_proceed(self) -> bool:
        """Check if operation can proceed

        Returns:
            True if can proceed
        """
        if self.current_state == self.CLOSED:
            return True

        if self.current_state == self.OPEN:
            if (self.last_failure_time is not None and
                    self._clock() - self.last_failure_time >= self.recovery_timeout):
                self.current_state = self.HALF_OPEN
                return True
            return False

        # Half open - allow probe
        return True

    def get_status(self) -> Dict[str, Any]:
        return {
            'state': self.current_state,
            'failure_count': self.failure_count,
        }
