"""Query CloudWatch Logs for new events in one region."""
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    ReadTimeoutError,
)
from loguru import logger

from pipeline.models import LogRecord, datetime_to_millis

TRANSIENT_ERROR_CODES = {
    'ThrottlingException',
    'Throttling',
    'TooManyRequestsException',
    'LimitExceededException',
    'RequestLimitExceeded',
    'ServiceUnavailableException',
    'InternalFailure',
    'RequestTimeout',
}


class LogSourceError(Exception):
    """A log query failed for one region."""

    def __init__(self, region: str, message: str, transient: bool = False):
        super().__init__(f"{region}: {message}")
        self.region = region
        self.transient = transient


def is_transient(error: Exception) -> bool:
    """Classify a botocore error as worth retrying."""
    if isinstance(error, ClientError):
        code = error.response.get('Error', {}).get('Code', '')
        return code in TRANSIENT_ERROR_CODES
    return isinstance(error, (BotoConnectionError, ReadTimeoutError))


class CloudWatchLogSource:
    """Fetch filtered log events from CloudWatch Logs, one client per region."""

    def __init__(
        self,
        session: Optional[boto3.session.Session] = None,
        page_limit: Optional[int] = None
    ):
        """Initialize log source.

        Args:
            session: boto3 session carrying the credential profile
            page_limit: Optional per-page event limit passed to the API
        """
        self.session = session or boto3.session.Session()
        self.page_limit = page_limit
        self._clients: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def client_for(self, region: str):
        """Return the logs client for a region, creating it on first use."""
        with self._lock:
            client = self._clients.get(region)
            if client is None:
                client = self.session.client('logs', region_name=region)
                self._clients[region] = client
                logger.debug(f"Created CloudWatch Logs client for {region}")
            return client

    def fetch(
        self,
        region: str,
        log_group: str,
        filter_pattern: Optional[str],
        start_time: datetime
    ) -> List[LogRecord]:
        """Get every matching event at or after start_time.

        Args:
            region: AWS region to query
            log_group: CloudWatch log group name
            filter_pattern: CloudWatch filter pattern, passed verbatim
            start_time: Lower time bound (inclusive)

        Returns:
            Records in the order the service returned them

        Raises:
            LogSourceError: If any page of the query fails
        """
        kwargs: Dict[str, Any] = {
            'logGroupName': log_group,
            'startTime': datetime_to_millis(start_time),
        }
        if filter_pattern:
            kwargs['filterPattern'] = filter_pattern
        if self.page_limit:
            kwargs['limit'] = self.page_limit

        records: List[LogRecord] = []
        try:
            client = self.client_for(region)
            next_token = None

            while True:
                if next_token:
                    kwargs['nextToken'] = next_token

                response = client.filter_log_events(**kwargs)

                for event in response.get('events', []):
                    records.append(LogRecord.from_event(region, event))

                next_token = response.get('nextToken')
                if not next_token:
                    break

        except (ClientError, BotoCoreError) as e:
            raise LogSourceError(region, f"can not get events: {e}", transient=is_transient(e)) from e

        return records
