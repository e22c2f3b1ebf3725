"""Polling loop for a single region."""
import enum
import threading
from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from loguru import logger
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
)

from metrics_exporter import (
    active_pollers,
    poll_failures_total,
    records_delivered_total,
    records_duplicate_total,
)
from pipeline.merge_point import MergePoint
from pipeline.models import LogRecord
from .dedup import SeenRecords
from .log_source import LogSourceError

DEFAULT_POLL_INTERVAL = 2.0
# Seen ids are kept for this many poll intervals behind the lower bound
DEDUP_RETENTION_INTERVALS = 5


class LogSource(Protocol):
    def fetch(
        self,
        region: str,
        log_group: str,
        filter_pattern: Optional[str],
        start_time: datetime
    ) -> List[LogRecord]:
        ...


class PollerState(enum.Enum):
    POLLING = 'polling'
    SLEEPING = 'sleeping'
    TERMINATED = 'terminated'
    STOPPED = 'stopped'


class PollerCursor:
    """Lower time bound of the next query; never moves backwards."""

    def __init__(self, lower_bound: datetime):
        self._lower_bound = lower_bound

    @property
    def lower_bound(self) -> datetime:
        return self._lower_bound

    def advance(self, timestamp: datetime) -> bool:
        """Move the bound forward if timestamp is strictly newer."""
        if timestamp > self._lower_bound:
            self._lower_bound = timestamp
            return True
        return False


class RegionPoller:
    """Tail one region and push each new record into the merge point.

    A failed query ends this poller only. With ``max_retries`` above zero,
    errors classified as transient are retried with exponential backoff
    before giving up.
    """

    def __init__(
        self,
        region: str,
        source: LogSource,
        merge_point: MergePoint,
        log_group: str,
        start_time: datetime,
        filter_pattern: Optional[str] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        dedup_retention: Optional[timedelta] = None,
        max_retries: int = 0,
        retry_backoff: float = 1.0,
        stop_event: Optional[threading.Event] = None
    ):
        """Initialize region poller.

        Args:
            region: Region this poller owns
            source: Remote log source to query
            merge_point: Shared buffer new records are pushed into
            log_group: CloudWatch log group name
            start_time: Initial lower bound of the query window
            filter_pattern: Optional server-side filter
            poll_interval: Seconds to wait between queries
            dedup_retention: How far behind the lower bound seen ids are kept
            max_retries: Retries for transient errors before terminating
            retry_backoff: Base delay in seconds for retries
            stop_event: Shared stop signal
        """
        self.region = region
        self.source = source
        self.merge_point = merge_point
        self.log_group = log_group
        self.filter_pattern = filter_pattern
        self.poll_interval = poll_interval
        self.dedup_retention = dedup_retention or timedelta(
            seconds=poll_interval * DEDUP_RETENTION_INTERVALS
        )
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.stop_event = stop_event or threading.Event()

        self.cursor = PollerCursor(start_time)
        self.seen = SeenRecords()
        self.state = PollerState.POLLING
        self.error: Optional[Exception] = None

    def run(self):
        """Poll until a fatal query error or the stop signal."""
        logger.info(f"{self.region}: tailing {self.log_group} from {self.cursor.lower_bound.isoformat()}")
        active_pollers.inc()
        try:
            while not self.stop_event.is_set():
                self.state = PollerState.POLLING
                records = self._fetch()
                if records is None:
                    return

                if not self.deliver(records):
                    break

                self.state = PollerState.SLEEPING
                self.stop_event.wait(self.poll_interval)

            self.state = PollerState.STOPPED
            logger.info(f"{self.region}: poller stopped")
        except Exception as e:
            logger.exception(f"{self.region}: poller crashed: {e!r}")
            self.error = e
            self.state = PollerState.TERMINATED
        finally:
            active_pollers.dec()

    def deliver(self, records: List[LogRecord]) -> bool:
        """Push unseen records in order and advance the cursor.

        Returns:
            False if a push was abandoned because the pipeline is shutting down
        """
        for record in records:
            if not self.seen.add(record):
                records_duplicate_total.labels(region=self.region).inc()
                continue

            if not self.merge_point.push(record):
                return False
            records_delivered_total.labels(region=self.region).inc()

            self.cursor.advance(record.timestamp)

        self.seen.evict_before(self.cursor.lower_bound - self.dedup_retention)
        return True

    def _query(self) -> List[LogRecord]:
        try:
            return self.source.fetch(
                self.region,
                self.log_group,
                self.filter_pattern,
                self.cursor.lower_bound
            )
        except LogSourceError:
            poll_failures_total.labels(region=self.region).inc()
            raise

    def _log_retry(self, retry_state: RetryCallState):
        logger.warning(
            f"{self.region}: transient error, retry {retry_state.attempt_number}/{self.max_retries} "
            f"in {retry_state.next_action.sleep:.1f}s: {retry_state.outcome.exception()}"
        )

    def _fetch(self) -> Optional[List[LogRecord]]:
        """Run one query, retrying transient failures if configured.

        Returns:
            Records, or None once the poller has terminated or stopped
        """
        retrying = Retrying(
            retry=retry_if_exception(lambda e: isinstance(e, LogSourceError) and e.transient),
            stop=stop_after_attempt(self.max_retries + 1) | stop_when_event_set(self.stop_event),
            wait=wait_exponential(multiplier=self.retry_backoff),
            sleep=self.stop_event.wait,
            before_sleep=self._log_retry,
            reraise=True
        )
        try:
            return retrying(self._query)
        except LogSourceError as e:
            if self.stop_event.is_set():
                self.state = PollerState.STOPPED
                logger.info(f"{self.region}: poller stopped while retrying")
                return None

            logger.error(f"{e}")
            self.error = e
            self.state = PollerState.TERMINATED
            return None
