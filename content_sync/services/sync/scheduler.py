"""
Request Scheduler - Priority queue of outbound content API calls

Many logical callers enqueue requests; a single draining loop dispatches them
one at a time against the shared upstream quota. Whichever thread calls
``drain()`` first becomes the drainer, every other caller just waits on its
futures.
"""
import heapq
import itertools
import threading
import time
from contextlib import contextmanager
from concurrent.futures import Future, wait as wait_futures
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from ...utils.logger import get_logger
from .errors import (
    PermanentRequestError,
    RateLimitedError,
    RequestFailedError,
    TransientRequestError,
)
from .rate_limit import RateLimitTracker

logger = get_logger('scheduler')

# QueuedRequest states
QUEUED = 'queued'
IN_FLIGHT = 'in_flight'
RETRY_SCHEDULED = 'retry_scheduled'
SUCCEEDED = 'succeeded'
FAILED = 'failed'


@dataclass
class QueuedRequest:
    """One pending outbound call and its completion handle."""
    target: Any
    priority: int
    retries_left: int
    enqueued_at: float
    sequence: int
    future: Future = field(default_factory=Future)
    attempts: int = 0
    rate_limit_hits: int = 0
    state: str = QUEUED
    last_error: Optional[BaseException] = None

    def sort_key(self):
        return (-self.priority, self.sequence)


class RequestScheduler:
    """Serializes outbound requests under a shared rate limit.

    Each iteration of ``drain()`` picks the highest priority request (FIFO
    among equal priorities), waits out the quota if the tracker says so,
    executes the request and either resolves its future or applies the retry
    policy:

    1. Rate limited (429): wait ``Retry-After`` + buffer. The first rejection
       of a request is free, later ones cost a retry slot.
    2. Transient failure: exponential backoff, one retry slot per attempt.
    3. Permanent failure: rejected at once.

    Example:
        >>> scheduler = RequestScheduler(client.execute, RateLimitTracker())
        >>> future = scheduler.enqueue(target, priority=2)
        >>> scheduler.wait_all([future])
        >>> response = future.result()
    """

    def __init__(
        self,
        execute: Callable[[Any], Any],
        tracker: Optional[RateLimitTracker] = None,
        safety_buffer: float = 0.05,
        inter_request_delay: float = 0.05,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        backoff_cap: float = 10.0,
        rate_limit_buffer: float = 2.0,
        default_retry_after: float = 60.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the scheduler.

        Args:
            execute: Performs one request for a target, returns a response with
                a ``headers`` attribute or raises a ``RequestError``
            tracker: Shared quota state, created when omitted
            safety_buffer: Fraction of the quota held back
            inter_request_delay: Seconds between two requests
            max_retries: Default attempt budget per request
            backoff_base: First backoff delay in seconds
            backoff_cap: Upper bound of the backoff delay
            rate_limit_buffer: Seconds added to upstream Retry-After
            default_retry_after: Used when a 429 has no Retry-After
            clock: Wall clock, injectable for tests
            sleep: Sleep function, injectable for tests
        """
        self._execute = execute
        self.tracker = tracker or RateLimitTracker(clock=clock)
        self.safety_buffer = safety_buffer
        self.inter_request_delay = inter_request_delay
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.rate_limit_buffer = rate_limit_buffer
        self.default_retry_after = default_retry_after
        self._clock = clock
        self._sleep = sleep

        self._queue: List = []
        self._sequence = itertools.count()
        self._lock = threading.Lock()
        self._draining = False
        self._stats = {'processed': 0, 'succeeded': 0, 'failed': 0, 'retried': 0, 'throttled': 0}
        self._progress_hooks: List[Callable[[], Any]] = []

    def enqueue(self, target: Any, priority: int = 1, max_retries: Optional[int] = None) -> Future:
        """Queue a request. Non-blocking.

        Args:
            target: Opaque request descriptor handed to ``execute``
            priority: Higher is served first
            max_retries: Attempt budget, defaults to the scheduler's

        Returns:
            Future resolved with the response or rejected with RequestFailedError
        """
        with self._lock:
            item = QueuedRequest(
                target=target,
                priority=priority,
                retries_left=max(1, max_retries or self.max_retries),
                enqueued_at=self._clock(),
                sequence=next(self._sequence),
            )
            heapq.heappush(self._queue, (item.sort_key(), item))
        return item.future

    def drain(self) -> int:
        """Process the queue until it is empty.

        Returns:
            Number of requests that reached a terminal state in this call,
            0 when another drain was already running
        """
        with self._lock:
            if self._draining:
                return 0
            self._draining = True

        finished = 0
        try:
            while True:
                with self._lock:
                    if not self._queue:
                        # Cleared under the same lock enqueue uses, nothing is stranded
                        self._draining = False
                        return finished
                    pending = len(self._queue)

                if self.tracker.should_throttle(self.safety_buffer):
                    wait_time = self.tracker.wait_duration()
                    with self._lock:
                        self._stats['throttled'] += 1
                    logger.info(
                        f"[Scheduler] Rate limit approached, waiting {wait_time:.1f}s "
                        f"(pending={pending})"
                    )
                    self._sleep(wait_time)

                self._notify_progress()

                # Only the drainer pops, so the queue cannot have emptied meanwhile
                with self._lock:
                    _, item = heapq.heappop(self._queue)

                if self._dispatch(item):
                    finished += 1

                if self.inter_request_delay > 0:
                    self._sleep(self.inter_request_delay)
        except BaseException:
            with self._lock:
                self._draining = False
            raise

    @contextmanager
    def progress_hook(self, callback: Callable[[], Any]) -> Iterator[None]:
        """Call ``callback`` before every dispatch while the block runs.

        Sync units use it to keep their lock alive through long fetches.
        """
        with self._lock:
            self._progress_hooks.append(callback)
        try:
            yield
        finally:
            with self._lock:
                self._progress_hooks.remove(callback)

    def _notify_progress(self) -> None:
        with self._lock:
            hooks = list(self._progress_hooks)
        for hook in hooks:
            try:
                hook()
            except Exception:
                logger.exception("[Scheduler] Progress hook failed")

    def wait_all(self, futures: Iterable[Future], timeout: Optional[float] = None) -> None:
        """Drain in the calling thread, then wait for the given futures."""
        futures = list(futures)
        self.drain()
        wait_futures(futures, timeout=timeout)

    def _dispatch(self, item: QueuedRequest) -> bool:
        """Run one attempt. Returns True when the item reached a terminal state."""
        item.state = IN_FLIGHT
        item.attempts += 1

        try:
            response = self._execute(item.target)
        except RateLimitedError as e:
            self.tracker.observe(e.headers)
            return self._on_rate_limited(item, e)
        except TransientRequestError as e:
            if e.headers is not None:
                self.tracker.observe(e.headers)
            return self._on_transient_failure(item, e)
        except PermanentRequestError as e:
            self.tracker.observe(e.headers)
            item.last_error = e
            item.retries_left = 0
            return self._fail(item)
        except Exception as e:
            logger.exception(f"[Scheduler] Unexpected error executing {item.target}")
            item.last_error = e
            item.retries_left = 0
            return self._fail(item)

        self.tracker.observe(getattr(response, 'headers', None))
        item.state = SUCCEEDED
        with self._lock:
            self._stats['processed'] += 1
            self._stats['succeeded'] += 1
        item.future.set_result(response)
        return True

    def _on_rate_limited(self, item: QueuedRequest, error: RateLimitedError) -> bool:
        item.last_error = error
        item.rate_limit_hits += 1
        if item.rate_limit_hits > 1:
            item.retries_left -= 1
            if item.retries_left <= 0:
                return self._fail(item)

        retry_after = error.retry_after if error.retry_after is not None else self.default_retry_after
        wait_time = retry_after + self.rate_limit_buffer
        logger.warning(
            f"[Scheduler] Rate limit hit for {item.target}, waiting {wait_time:.1f}s "
            f"(hit #{item.rate_limit_hits}, retries left {item.retries_left})"
        )
        self._sleep(wait_time)
        self._requeue(item)
        return False

    def _on_transient_failure(self, item: QueuedRequest, error: BaseException) -> bool:
        item.last_error = error
        item.retries_left -= 1
        if item.retries_left <= 0:
            return self._fail(item)

        delay = min(self.backoff_base * (2 ** (item.attempts - 1)), self.backoff_cap)
        logger.warning(
            f"[Scheduler] Request {item.target} failed (attempt {item.attempts}): {error}, "
            f"retrying in {delay:.1f}s"
        )
        self._sleep(delay)
        self._requeue(item)
        return False

    def _requeue(self, item: QueuedRequest) -> None:
        item.state = RETRY_SCHEDULED
        with self._lock:
            self._stats['retried'] += 1
            item.state = QUEUED
            heapq.heappush(self._queue, (item.sort_key(), item))

    def _fail(self, item: QueuedRequest) -> bool:
        item.state = FAILED
        logger.error(
            f"[Scheduler] Request {item.target} failed after {item.attempts} attempt(s): "
            f"{item.last_error}"
        )
        with self._lock:
            self._stats['processed'] += 1
            self._stats['failed'] += 1
        item.future.set_exception(RequestFailedError(item.target, item.attempts, item.last_error))
        return True

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def get_stats(self) -> Dict:
        """Queue statistics.

        Returns:
            Dictionary with pending, processed, succeeded, failed, retried,
            throttled counts, draining flag and the rate limit state
        """
        with self._lock:
            stats = dict(self._stats)
            stats['pending'] = len(self._queue)
            stats['draining'] = self._draining
        stats['rate_limit'] = self.tracker.snapshot()
        return stats
