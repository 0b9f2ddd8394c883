"""
Rate Limit Tracker - Local view of the upstream request quota

Upstream rate limit headers are authoritative when present. A local
per-minute request counter covers the cold start and responses that carry
no headers, so the scheduler never free-runs past the quota.
"""
import math
import threading
import time
from dataclasses import dataclass, asdict
from typing import Callable, Dict, Mapping, Optional

from ...utils.logger import get_logger

logger = get_logger('rate_limit')


@dataclass
class RateLimitState:
    """Quota as last reported by upstream plus the local fallback counter."""
    limit: int
    remaining: int
    reset_at: Optional[float] = None
    requests_this_window: int = 0
    window_start: float = 0.0
    last_updated: Optional[float] = None


class RateLimitTracker:
    """Tracks the upstream quota from response metadata.

    Only the scheduler's draining loop feeds ``observe``; the lock just keeps
    status readers from seeing a half-updated state.

    Example:
        >>> tracker = RateLimitTracker()
        >>> tracker.observe({'X-RateLimit-Limit': '60', 'X-RateLimit-Remaining': '2'})
        >>> tracker.should_throttle(0.05)
        True
        >>> tracker.wait_duration()  # seconds until it is safe again
    """

    LIMIT_HEADER = 'x-ratelimit-limit'
    REMAINING_HEADER = 'x-ratelimit-remaining'
    RESET_HEADER = 'x-ratelimit-reset'

    WINDOW_SECONDS = 60.0
    RESET_BUFFER = 1.0         # Added to an upstream reset time
    WINDOW_END_BUFFER = 2.0    # Added when only the local window is known
    MIN_WAIT = 5.0

    def __init__(
        self,
        limit: int = 120,
        remaining: Optional[int] = None,
        clock: Callable[[], float] = time.time
    ):
        """Initialize the tracker.

        Args:
            limit: Assumed quota before the first response is seen
            remaining: Assumed calls left, defaults to ``limit``
            clock: Wall clock returning epoch seconds
        """
        self._clock = clock
        self._lock = threading.Lock()
        self.state = RateLimitState(
            limit=max(1, int(limit)),
            remaining=int(limit if remaining is None else remaining),
            window_start=clock(),
        )

    def observe(self, metadata: Optional[Mapping[str, str]] = None) -> None:
        """Record one spent request and update the quota from its headers.

        Never raises: unparseable or missing values leave the prior state.
        """
        with self._lock:
            now = self._clock()
            self._roll_windows(now)
            self.state.requests_this_window += 1

            if not metadata:
                return

            headers = {str(k).lower(): v for k, v in metadata.items()}

            limit = self._parse_int(headers.get(self.LIMIT_HEADER))
            if limit is not None and limit >= 1:
                self.state.limit = limit

            remaining = self._parse_int(headers.get(self.REMAINING_HEADER))
            if remaining is not None and remaining >= 0:
                self.state.remaining = remaining

            reset = self._parse_int(headers.get(self.RESET_HEADER))
            if reset is not None and reset > 0:
                self.state.reset_at = float(reset)

            self.state.last_updated = now

    def should_throttle(self, safety_buffer_fraction: float) -> bool:
        """Whether the next request would eat into the safety buffer."""
        with self._lock:
            self._roll_windows(self._clock())
            safety_buffer = math.floor(self.state.limit * safety_buffer_fraction)
            safe_limit = self.state.limit - safety_buffer
            return (
                self.state.remaining <= safety_buffer
                or self.state.requests_this_window >= safe_limit
            )

    def wait_duration(self) -> float:
        """Seconds to wait before the quota can be trusted again."""
        with self._lock:
            now = self._clock()
            self._roll_windows(now)

            if self.state.reset_at is not None and self.state.reset_at > now:
                return self.state.reset_at - now + self.RESET_BUFFER

            until_window_end = self.WINDOW_SECONDS - (now - self.state.window_start)
            return max(until_window_end + self.WINDOW_END_BUFFER, self.MIN_WAIT)

    def snapshot(self) -> Dict:
        """Current state as a plain dict."""
        with self._lock:
            self._roll_windows(self._clock())
            return asdict(self.state)

    def _roll_windows(self, now: float) -> None:
        # Caller holds the lock
        if now - self.state.window_start >= self.WINDOW_SECONDS:
            self.state.requests_this_window = 0
            self.state.window_start = now

        if self.state.reset_at is not None and now >= self.state.reset_at:
            logger.debug(
                f"[RateLimit] Upstream window reset, remaining "
                f"{self.state.remaining} -> {self.state.limit}"
            )
            self.state.remaining = self.state.limit
            self.state.reset_at = None

    @staticmethod
    def _parse_int(value) -> Optional[int]:
        if value is None:
            return None
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return None
