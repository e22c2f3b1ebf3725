"""
Pytest fixtures for log tailing tests
"""
import io
import threading
from datetime import datetime, timedelta, timezone

import pytest

from data_ingestion.log_source import LogSourceError
from pipeline.models import LogRecord

BASE_TIME = datetime(2025, 10, 17, 10, 0, 0, tzinfo=timezone.utc)


def make_record(record_id, seconds=0, region='eu-west-1', message=None):
    """Build a record offset from BASE_TIME"""
    return LogRecord(
        region=region,
        message=message if message is not None else f"message {record_id}",
        timestamp=BASE_TIME + timedelta(seconds=seconds),
        record_id=record_id
    )


class ScriptedLogSource:
    """Log source replaying a fixed list of responses per region.

    Each response is either a list of records or an exception instance.
    Once a region's script is exhausted the source fails for that region,
    so pollers terminate and the pipeline can finish.
    """

    def __init__(self, scripts):
        self.scripts = {region: list(steps) for region, steps in scripts.items()}
        self.calls = []
        self._lock = threading.Lock()

    def fetch(self, region, log_group, filter_pattern, start_time):
        with self._lock:
            self.calls.append((region, log_group, filter_pattern, start_time))
            steps = self.scripts.get(region, [])
            step = steps.pop(0) if steps else LogSourceError(region, "script exhausted")

        if isinstance(step, Exception):
            raise step
        return list(step)

    def start_times(self, region):
        return [call[3] for call in self.calls if call[0] == region]


@pytest.fixture
def base_time():
    """Reference timestamp for generated records"""
    return BASE_TIME


@pytest.fixture
def record_factory():
    """Factory for LogRecord values"""
    return make_record


@pytest.fixture
def scripted_source():
    """Factory for scripted log sources"""
    return ScriptedLogSource


@pytest.fixture
def output_stream():
    """In-memory stream capturing rendered lines"""
    return io.StringIO()


@pytest.fixture
def stop_event():
    """Shared stop signal, set on teardown so no thread is left blocked"""
    event = threading.Event()
    yield event
    event.set()
