"""Per-region memory of already delivered record ids."""
import heapq
from datetime import datetime
from typing import Dict, List, Tuple

from pipeline.models import LogRecord


class SeenRecords:
    """Set of record ids bounded to a sliding time window.

    Queries always ask for events at or after the poller's lower bound, so
    an id whose timestamp has fallen behind ``lower_bound - retention``
    can never be returned again and is safe to forget.
    """

    def __init__(self):
        self._seen: Dict[str, datetime] = {}
        self._by_time: List[Tuple[datetime, str]] = []

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._seen

    def add(self, record: LogRecord) -> bool:
        """Remember a record.

        Returns:
            True if the id is new, False if it was already seen
        """
        if record.record_id in self._seen:
            return False

        self._seen[record.record_id] = record.timestamp
        heapq.heappush(self._by_time, (record.timestamp, record.record_id))
        return True

    def evict_before(self, cutoff: datetime) -> int:
        """Forget ids whose record timestamp is older than cutoff.

        Returns:
            Number of ids evicted
        """
        evicted = 0
        while self._by_time and self._by_time[0][0] < cutoff:
            _, record_id = heapq.heappop(self._by_time)
            del self._seen[record_id]
            evicted += 1
        return evicted
