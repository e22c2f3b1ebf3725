"""Bounded hand-off buffer shared by every region poller."""
import queue
import threading
from typing import Optional

from loguru import logger

from metrics_exporter import merge_point_depth
from .models import LogRecord

DEFAULT_CAPACITY = 100

# Slice used when blocking so close/stop are noticed promptly
_WAIT_SLICE = 0.1


class MergePoint:
    """Multi-producer single-consumer FIFO with blocking backpressure.

    Producers block in push() while the buffer is full; nothing is ever
    dropped. Items come out in the order they went in.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        stop_event: Optional[threading.Event] = None
    ):
        """Initialize merge point.

        Args:
            capacity: Maximum number of records in flight
            stop_event: Shared stop signal that aborts blocked producers
        """
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")

        self.capacity = capacity
        self._queue: "queue.Queue[LogRecord]" = queue.Queue(maxsize=capacity)
        self._closed = threading.Event()
        self._stop_event = stop_event or threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def __len__(self) -> int:
        return self._queue.qsize()

    def push(self, record: LogRecord) -> bool:
        """Add a record, blocking while the buffer is full.

        Args:
            record: Record to hand off

        Returns:
            True if the record was queued, False if the merge point was
            closed or the stop signal fired before space became available
        """
        while not self._closed.is_set() and not self._stop_event.is_set():
            try:
                self._queue.put(record, timeout=_WAIT_SLICE)
            except queue.Full:
                continue
            merge_point_depth.set(self._queue.qsize())
            return True

        logger.debug(f"Dropped push from {record.region}: merge point shut down")
        return False

    def pop(self, timeout: Optional[float] = None) -> Optional[LogRecord]:
        """Take the oldest record, blocking while the buffer is empty.

        Args:
            timeout: Maximum seconds to wait; None waits until a record
                arrives or the merge point is closed and drained

        Returns:
            The next record, or None on timeout / closed-and-empty
        """
        waited = 0.0
        while True:
            slice_ = _WAIT_SLICE if timeout is None else min(_WAIT_SLICE, timeout - waited)
            try:
                record = self._queue.get(timeout=max(slice_, 0))
            except queue.Empty:
                if self._closed.is_set() and self._queue.empty():
                    return None
                waited += slice_
                if timeout is not None and waited >= timeout:
                    return None
                continue
            merge_point_depth.set(self._queue.qsize())
            return record

    def pop_nowait(self) -> Optional[LogRecord]:
        """Take the oldest record if one is queued."""
        try:
            record = self._queue.get_nowait()
        except queue.Empty:
            return None
        merge_point_depth.set(self._queue.qsize())
        return record

    def close(self):
        """Reject further pushes; queued records stay available to pop()."""
        if not self._closed.is_set():
            self._closed.set()
            logger.debug(f"Merge point closed with {self._queue.qsize()} records queued")
