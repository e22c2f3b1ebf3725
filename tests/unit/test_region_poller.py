"""
Region poller tests
"""
import threading
import time
from datetime import timedelta

from data_ingestion.log_source import LogSourceError
from data_ingestion.region_poller import PollerCursor, PollerState, RegionPoller
from pipeline.merge_point import MergePoint


def drain(merge_point):
    records = []
    while True:
        record = merge_point.pop_nowait()
        if record is None:
            return records
        records.append(record)


def make_poller(source, merge_point, start_time, **kwargs):
    kwargs.setdefault('poll_interval', 0.001)
    return RegionPoller(
        'eu-west-1',
        source,
        merge_point,
        '/aws/lambda/orders',
        start_time,
        **kwargs
    )


class TestPollerCursor:
    """Test lower bound movement"""

    def test_advances_on_newer_timestamp(self, base_time):
        cursor = PollerCursor(base_time)
        assert cursor.advance(base_time + timedelta(milliseconds=1)) is True
        assert cursor.lower_bound == base_time + timedelta(milliseconds=1)

    def test_ignores_equal_or_older_timestamp(self, base_time):
        cursor = PollerCursor(base_time)
        assert cursor.advance(base_time) is False
        assert cursor.advance(base_time - timedelta(seconds=5)) is False
        assert cursor.lower_bound == base_time


class TestRegionPoller:
    """Test polling cycles, dedup and failure handling"""

    def test_overlapping_windows_deliver_each_record_once(self, scripted_source, record_factory, base_time):
        """Test first query [e1, e2], second query [e2, e3] renders e1, e2, e3"""
        e1 = record_factory('e1', seconds=1)
        e2 = record_factory('e2', seconds=2)
        e3 = record_factory('e3', seconds=3)
        source = scripted_source({'eu-west-1': [[e1, e2], [e2, e3]]})
        merge_point = MergePoint(10)

        poller = make_poller(source, merge_point, base_time)
        poller.run()

        assert [r.record_id for r in drain(merge_point)] == ['e1', 'e2', 'e3']

    def test_cursor_follows_newest_delivered_record(self, scripted_source, record_factory, base_time):
        """Test each query starts from the newest timestamp seen so far"""
        e1 = record_factory('e1', seconds=1)
        e2 = record_factory('e2', seconds=2)
        e3 = record_factory('e3', seconds=3)
        source = scripted_source({'eu-west-1': [[e1, e2], [e2, e3], []]})

        poller = make_poller(source, MergePoint(10), base_time)
        poller.run()

        starts = source.start_times('eu-west-1')
        assert starts == [base_time, e2.timestamp, e3.timestamp, e3.timestamp]
        assert starts == sorted(starts)

    def test_cursor_not_moved_by_older_new_record(self, scripted_source, record_factory, base_time):
        """Test a newly seen but older record leaves the lower bound alone"""
        newer = record_factory('newer', seconds=10)
        older = record_factory('older', seconds=5)
        source = scripted_source({'eu-west-1': [[newer], [newer, older]]})
        merge_point = MergePoint(10)

        poller = make_poller(source, merge_point, base_time)
        poller.run()

        assert poller.cursor.lower_bound == newer.timestamp
        assert [r.record_id for r in drain(merge_point)] == ['newer', 'older']

    def test_query_arguments(self, scripted_source, base_time):
        """Test group and filter are passed through verbatim"""
        source = scripted_source({'eu-west-1': [[]]})

        poller = make_poller(source, MergePoint(10), base_time, filter_pattern='{ $.level = "ERROR" }')
        poller.run()

        region, group, pattern, start = source.calls[0]
        assert (region, group, pattern, start) == (
            'eu-west-1', '/aws/lambda/orders', '{ $.level = "ERROR" }', base_time
        )

    def test_fetch_error_terminates_without_retry(self, scripted_source, base_time):
        """Test a failed query ends the poller on the first error"""
        error = LogSourceError('eu-west-1', 'group deleted')
        source = scripted_source({'eu-west-1': [error, [], []]})

        poller = make_poller(source, MergePoint(10), base_time)
        poller.run()

        assert poller.state == PollerState.TERMINATED
        assert poller.error is error
        assert len(source.calls) == 1

    def test_transient_error_terminates_when_retries_disabled(self, scripted_source, base_time):
        source = scripted_source({'eu-west-1': [LogSourceError('eu-west-1', 'throttled', transient=True), []]})

        poller = make_poller(source, MergePoint(10), base_time)
        poller.run()

        assert poller.state == PollerState.TERMINATED
        assert len(source.calls) == 1

    def test_transient_error_retried_when_enabled(self, scripted_source, record_factory, base_time):
        """Test opt-in retry recovers from a throttling error"""
        source = scripted_source({'eu-west-1': [
            LogSourceError('eu-west-1', 'throttled', transient=True),
            [record_factory('e1', seconds=1)],
        ]})
        merge_point = MergePoint(10)

        poller = make_poller(source, merge_point, base_time, max_retries=2, retry_backoff=0.001)
        poller.run()

        assert [r.record_id for r in drain(merge_point)] == ['e1']
        assert poller.state == PollerState.TERMINATED
        assert 'script exhausted' in str(poller.error)

    def test_retry_delays_grow_exponentially(self, base_time):
        """Test retry waits double from the base backoff"""
        call_times = []

        class FlakySource:
            def fetch(self, region, log_group, filter_pattern, start_time):
                call_times.append(time.monotonic())
                if len(call_times) <= 2:
                    raise LogSourceError(region, 'Rate exceeded', transient=True)
                raise LogSourceError(region, 'group deleted')

        poller = make_poller(FlakySource(), MergePoint(10), base_time, max_retries=3, retry_backoff=0.1)
        poller.run()

        assert len(call_times) == 3
        assert call_times[1] - call_times[0] >= 0.09
        assert call_times[2] - call_times[1] >= 0.19
        assert poller.state == PollerState.TERMINATED
        assert 'group deleted' in str(poller.error)

    def test_stop_interrupts_retry_backoff(self, scripted_source, base_time, stop_event):
        """Test a poller waiting to retry exits promptly on stop"""
        source = scripted_source({'eu-west-1': [LogSourceError('eu-west-1', 'throttled', transient=True)]})

        poller = make_poller(source, MergePoint(10), base_time, max_retries=3, retry_backoff=30,
                             stop_event=stop_event)
        thread = threading.Thread(target=poller.run)
        thread.start()

        time.sleep(0.2)
        stop_event.set()
        thread.join(timeout=2)

        assert not thread.is_alive()
        assert poller.state == PollerState.STOPPED
        assert poller.error is None
        assert len(source.calls) == 1

    def test_unexpected_source_error_terminates(self, base_time):
        """Test an exception outside LogSourceError still marks the region failed"""
        class BrokenSource:
            def fetch(self, region, log_group, filter_pattern, start_time):
                raise KeyError('eventId')

        poller = make_poller(BrokenSource(), MergePoint(10), base_time)
        poller.run()

        assert poller.state == PollerState.TERMINATED
        assert isinstance(poller.error, KeyError)

    def test_permanent_error_not_retried(self, scripted_source, base_time):
        source = scripted_source({'eu-west-1': [LogSourceError('eu-west-1', 'bad filter'), []]})

        poller = make_poller(source, MergePoint(10), base_time, max_retries=3, retry_backoff=0.001)
        poller.run()

        assert len(source.calls) == 1

    def test_seen_ids_bounded_to_window(self, scripted_source, record_factory, base_time):
        """Test ids far behind the lower bound are evicted"""
        records = [record_factory(f"e{i}", seconds=i * 10) for i in range(5)]
        source = scripted_source({'eu-west-1': [records]})

        poller = make_poller(source, MergePoint(10), base_time, dedup_retention=timedelta(seconds=15))
        poller.run()

        # lower bound is 40s; ids at 30s and 40s remain
        assert len(poller.seen) == 2
        assert 'e4' in poller.seen and 'e3' in poller.seen

    def test_stop_before_start(self, scripted_source, base_time, stop_event):
        source = scripted_source({'eu-west-1': [[]]})
        stop_event.set()

        poller = make_poller(source, MergePoint(10), base_time, stop_event=stop_event)
        poller.run()

        assert poller.state == PollerState.STOPPED
        assert source.calls == []

    def test_stop_releases_blocked_push(self, scripted_source, record_factory, base_time, stop_event):
        """Test a poller blocked on a full merge point exits on stop"""
        source = scripted_source({'eu-west-1': [[record_factory('e1'), record_factory('e2')]]})
        merge_point = MergePoint(1, stop_event=stop_event)

        poller = make_poller(source, merge_point, base_time, stop_event=stop_event)
        thread = threading.Thread(target=poller.run)
        thread.start()

        time.sleep(0.3)
        assert thread.is_alive()

        stop_event.set()
        thread.join(timeout=2)

        assert not thread.is_alive()
        assert poller.state == PollerState.STOPPED
        assert [r.record_id for r in drain(merge_point)] == ['e1']
