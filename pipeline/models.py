"""Value types passed between pipeline stages."""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def millis_to_datetime(millis: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return EPOCH + timedelta(milliseconds=millis)


def datetime_to_millis(value: datetime) -> int:
    """Convert a datetime to epoch milliseconds (naive values are UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - EPOCH) // timedelta(milliseconds=1)


def utc_now() -> datetime:
    """Current time truncated to millisecond resolution."""
    return millis_to_datetime(datetime_to_millis(datetime.now(timezone.utc)))


@dataclass(frozen=True)
class LogRecord:
    """A single log event as delivered by one region."""

    region: str
    message: str
    timestamp: datetime
    record_id: str

    @classmethod
    def from_event(cls, region: str, event: Dict[str, Any]) -> 'LogRecord':
        """Build a record from a CloudWatch FilteredLogEvent.
        
        Args:
            region: Region the event was fetched from
            event: Event dictionary as returned by filter_log_events
            
        Returns:
            LogRecord with the message trimmed of surrounding whitespace
        """
        return cls(
            region=region,
            message=event.get('message', '').strip(),
            timestamp=millis_to_datetime(event['timestamp']),
            record_id=event['eventId']
        )

    @property
    def timestamp_millis(self) -> int:
        return datetime_to_millis(self.timestamp)
