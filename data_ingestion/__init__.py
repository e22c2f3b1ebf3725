"""Data ingestion package for AWS CloudWatch logs."""

from .log_source import CloudWatchLogSource, LogSourceError
from .dedup import SeenRecords
from .region_poller import RegionPoller, PollerCursor, PollerState

__all__ = [
    'CloudWatchLogSource',
    'LogSourceError',
    'SeenRecords',
    'RegionPoller',
    'PollerCursor',
    'PollerState',
]
