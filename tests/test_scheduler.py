"""
Request Scheduler Tests
"""
from types import SimpleNamespace

import pytest

from conftest import FakeClock


def _scheduler(execute, clock, **kwargs):
    from content_sync.services.sync.rate_limit import RateLimitTracker
    from content_sync.services.sync.scheduler import RequestScheduler

    kwargs.setdefault('inter_request_delay', 0)
    return RequestScheduler(
        execute,
        tracker=kwargs.pop('tracker', None) or RateLimitTracker(clock=clock),
        clock=clock,
        sleep=clock.sleep,
        **kwargs
    )


class QuotaAPI:
    """Upstream with a 60 s quota window that reports it in headers."""

    def __init__(self, clock, limit=100):
        self.clock = clock
        self.limit = limit
        self.remaining = limit
        self.reset = clock() + 60
        self.calls = 0
        self.tracker_remaining_at_call = {}
        self.scheduler = None

    def _headers(self):
        return {
            'X-RateLimit-Limit': str(self.limit),
            'X-RateLimit-Remaining': str(self.remaining),
            'X-RateLimit-Reset': str(int(self.reset)),
        }

    def __call__(self, target):
        from content_sync.services.sync.errors import RateLimitedError

        now = self.clock()
        if now >= self.reset:
            self.remaining = self.limit
            self.reset = now + 60
        if self.remaining <= 0:
            raise RateLimitedError('quota exhausted', retry_after=self.reset - now, headers=self._headers())

        self.calls += 1
        self.tracker_remaining_at_call[self.calls] = self.scheduler.tracker.snapshot()['remaining']
        self.remaining -= 1
        return SimpleNamespace(headers=self._headers(), target=target)


class TestOrdering:
    """Tests for priority and FIFO order."""

    def test_priority_then_fifo(self):
        clock = FakeClock()
        executed = []

        def execute(target):
            executed.append(target)
            return target

        scheduler = _scheduler(execute, clock)
        scheduler.enqueue('a', priority=1)
        scheduler.enqueue('b', priority=1)
        scheduler.enqueue('c', priority=2)
        scheduler.enqueue('d', priority=1)

        assert scheduler.drain() == 4
        assert executed == ['c', 'a', 'b', 'd']

    def test_futures_resolve_with_responses(self):
        clock = FakeClock()
        scheduler = _scheduler(lambda target: f'response:{target}', clock)

        futures = [scheduler.enqueue(name) for name in ('x', 'y')]
        scheduler.wait_all(futures)

        assert [f.result() for f in futures] == ['response:x', 'response:y']
        assert scheduler.pending == 0

    def test_retried_item_keeps_its_place(self):
        from content_sync.services.sync.errors import TransientRequestError

        clock = FakeClock()
        executed = []
        failed_once = set()

        def execute(target):
            executed.append(target)
            if target == 'a' and 'a' not in failed_once:
                failed_once.add('a')
                raise TransientRequestError('boom', status=503)
            return target

        scheduler = _scheduler(execute, clock)
        scheduler.enqueue('a')
        scheduler.enqueue('b')
        scheduler.drain()

        assert executed == ['a', 'a', 'b']

    def test_inter_request_delay(self):
        clock = FakeClock()
        scheduler = _scheduler(lambda target: target, clock, inter_request_delay=0.05)
        scheduler.enqueue('a')
        scheduler.enqueue('b')
        scheduler.drain()

        assert clock.sleeps == [0.05, 0.05]


class TestRetryPolicy:
    """Tests for retry and failure handling."""

    def test_transient_failures_exhaust_budget(self):
        from content_sync.services.sync.errors import RequestFailedError, TransientRequestError

        clock = FakeClock()
        attempts = []

        def execute(target):
            attempts.append(target)
            raise TransientRequestError('timeout')

        scheduler = _scheduler(execute, clock)
        future = scheduler.enqueue('page-2')
        scheduler.drain()

        with pytest.raises(RequestFailedError) as exc_info:
            future.result()
        assert exc_info.value.attempts == 3
        assert exc_info.value.target == 'page-2'
        assert len(attempts) == 3
        assert clock.sleeps == [1.0, 2.0]

    def test_retry_budget_override(self):
        from content_sync.services.sync.errors import RequestFailedError, TransientRequestError

        clock = FakeClock()

        def execute(target):
            raise TransientRequestError('timeout')

        scheduler = _scheduler(execute, clock)
        future = scheduler.enqueue('page', max_retries=5)
        scheduler.drain()

        with pytest.raises(RequestFailedError) as exc_info:
            future.result()
        assert exc_info.value.attempts == 5
        assert clock.sleeps == [1.0, 2.0, 4.0, 8.0]

    def test_backoff_is_capped(self):
        from content_sync.services.sync.errors import TransientRequestError

        clock = FakeClock()

        def execute(target):
            raise TransientRequestError('timeout')

        scheduler = _scheduler(execute, clock)
        scheduler.enqueue('page', max_retries=7)
        scheduler.drain()

        assert clock.sleeps == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]

    def test_first_rate_limit_is_free(self):
        from content_sync.services.sync.errors import RateLimitedError, RequestFailedError

        clock = FakeClock()

        def execute(target):
            raise RateLimitedError('429', retry_after=3)

        scheduler = _scheduler(execute, clock)
        future = scheduler.enqueue('page')
        scheduler.drain()

        with pytest.raises(RequestFailedError) as exc_info:
            future.result()
        # One free rejection plus the three budgeted attempts
        assert exc_info.value.attempts == 4
        assert clock.sleeps == [5.0, 5.0, 5.0]

    def test_rate_limit_without_retry_after_waits_default(self):
        from content_sync.services.sync.errors import RateLimitedError

        clock = FakeClock()
        responses = iter([RateLimitedError('429'), 'ok'])

        def execute(target):
            response = next(responses)
            if isinstance(response, Exception):
                raise response
            return response

        scheduler = _scheduler(execute, clock)
        future = scheduler.enqueue('page')
        scheduler.drain()

        assert future.result() == 'ok'
        assert clock.sleeps == [62.0]

    def test_permanent_failure_is_not_retried(self):
        from content_sync.services.sync.errors import PermanentRequestError, RequestFailedError

        clock = FakeClock()
        attempts = []

        def execute(target):
            attempts.append(target)
            raise PermanentRequestError('not found', status=404)

        scheduler = _scheduler(execute, clock)
        future = scheduler.enqueue('item')
        scheduler.drain()

        with pytest.raises(RequestFailedError) as exc_info:
            future.result()
        assert exc_info.value.attempts == 1
        assert isinstance(exc_info.value.last_error, PermanentRequestError)
        assert attempts == ['item']
        assert clock.sleeps == []

    def test_unexpected_error_fails_terminally(self):
        from content_sync.services.sync.errors import RequestFailedError

        clock = FakeClock()

        def execute(target):
            raise RuntimeError('bug')

        scheduler = _scheduler(execute, clock)
        future = scheduler.enqueue('item')
        scheduler.drain()

        with pytest.raises(RequestFailedError) as exc_info:
            future.result()
        assert isinstance(exc_info.value.last_error, RuntimeError)
        assert scheduler.get_stats()['failed'] == 1

    def test_failure_does_not_stop_the_queue(self):
        from content_sync.services.sync.errors import PermanentRequestError

        clock = FakeClock()

        def execute(target):
            if target == 'bad':
                raise PermanentRequestError('gone', status=410)
            return target

        scheduler = _scheduler(execute, clock)
        bad = scheduler.enqueue('bad')
        good = scheduler.enqueue('good')
        scheduler.drain()

        assert bad.exception() is not None
        assert good.result() == 'good'


class TestDrain:
    """Tests for the draining loop."""

    def test_reentrant_drain_returns_zero(self):
        clock = FakeClock()
        inner_results = []
        holder = {}

        def execute(target):
            inner_results.append(holder['scheduler'].drain())
            return target

        scheduler = _scheduler(execute, clock)
        holder['scheduler'] = scheduler
        scheduler.enqueue('a')
        scheduler.enqueue('b')

        assert scheduler.drain() == 2
        assert inner_results == [0, 0]
        assert scheduler.get_stats()['draining'] is False

    def test_items_enqueued_during_drain_are_processed(self):
        clock = FakeClock()
        executed = []
        holder = {}

        def execute(target):
            executed.append(target)
            if target == 'first':
                holder['late'] = holder['scheduler'].enqueue('late')
            return target

        scheduler = _scheduler(execute, clock)
        holder['scheduler'] = scheduler
        scheduler.enqueue('first')
        scheduler.drain()

        assert executed == ['first', 'late']
        assert holder['late'].result() == 'late'

    def test_throttles_before_dispatch(self):
        from content_sync.services.sync.rate_limit import RateLimitTracker

        clock = FakeClock()
        tracker = RateLimitTracker(clock=clock)
        tracker.observe({'X-RateLimit-Limit': '100', 'X-RateLimit-Remaining': '2',
                         'X-RateLimit-Reset': str(int(clock.now + 10))})

        scheduler = _scheduler(lambda target: target, clock, tracker=tracker)
        scheduler.enqueue('a')
        scheduler.drain()

        assert clock.sleeps == [11.0]
        assert scheduler.get_stats()['throttled'] == 1

    def test_stats(self):
        clock = FakeClock()
        scheduler = _scheduler(lambda target: target, clock)
        for name in ('a', 'b', 'c'):
            scheduler.enqueue(name)
        assert scheduler.get_stats()['pending'] == 3

        scheduler.drain()
        stats = scheduler.get_stats()

        assert stats['processed'] == 3
        assert stats['succeeded'] == 3
        assert stats['pending'] == 0
        assert stats['rate_limit']['requests_this_window'] == 3

    def test_progress_hook_runs_before_each_dispatch(self):
        clock = FakeClock()
        events = []

        def execute(target):
            events.append(target)
            return target

        scheduler = _scheduler(execute, clock)
        with scheduler.progress_hook(lambda: events.append('beat')):
            scheduler.enqueue('a')
            scheduler.enqueue('b')
            scheduler.drain()

        scheduler.enqueue('c')
        scheduler.drain()

        assert events == ['beat', 'a', 'beat', 'b', 'c']

    def test_failing_progress_hook_does_not_stop_requests(self):
        clock = FakeClock()

        def broken_hook():
            raise RuntimeError('database unavailable')

        scheduler = _scheduler(lambda target: target, clock)
        future = scheduler.enqueue('a')
        with scheduler.progress_hook(broken_hook):
            scheduler.drain()

        assert future.result() == 'a'


class TestQuotaScenario:
    """250 calls against a 100-per-minute upstream quota."""

    def test_throttles_after_95_calls_and_resumes(self):
        from content_sync.services.sync.rate_limit import RateLimitTracker
        from content_sync.services.sync.scheduler import RequestScheduler

        clock = FakeClock()
        api = QuotaAPI(clock, limit=100)
        waits = []

        def sleep(seconds):
            waits.append((api.calls, seconds))
            clock.sleep(seconds)

        scheduler = RequestScheduler(
            api,
            tracker=RateLimitTracker(limit=100, clock=clock),
            safety_buffer=0.05,
            inter_request_delay=0,
            clock=clock,
            sleep=sleep,
        )
        api.scheduler = scheduler

        futures = [scheduler.enqueue(f'page-{i}') for i in range(250)]
        scheduler.wait_all(futures)

        assert api.calls == 250
        assert all(f.exception() is None for f in futures)
        assert waits == [(95, pytest.approx(61.0)), (190, pytest.approx(61.0))]
        assert api.tracker_remaining_at_call[96] == 100
        assert scheduler.get_stats()['throttled'] == 2
