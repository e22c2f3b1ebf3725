"""Drain the merge point and render records to the output stream."""
import sys
import threading
import time
from typing import Callable, Optional, TextIO

from loguru import logger

from metrics_exporter import records_rendered_total
from .merge_point import MergePoint
from .models import LogRecord

REGION_WIDTH = 20
TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%SZ'

# Bound on a single blocking pop so the stop signal is observed
_POP_TIMEOUT = 0.2


def render_record(record: LogRecord) -> str:
    """Format a record as one output line (without newline)."""
    return (
        f"[{record.region:>{REGION_WIDTH}}] "
        f"{record.timestamp.strftime(TIMESTAMP_FORMAT)}: {record.message}"
    )


class Consumer:
    """Single consumer of the merge point.

    Eager mode renders records as fast as they arrive. Throttled mode
    renders at most one record per tick of ``render_interval`` seconds,
    leaving the rest queued so backpressure reaches the pollers.
    """

    def __init__(
        self,
        merge_point: MergePoint,
        render_interval: Optional[float] = None,
        output: Optional[TextIO] = None,
        stop_event: Optional[threading.Event] = None,
        formatter: Callable[[LogRecord], str] = render_record
    ):
        """Initialize consumer.

        Args:
            merge_point: Buffer to drain
            render_interval: Seconds between renders; None or 0 for eager
            output: Stream records are written to (defaults to stdout)
            stop_event: Shared stop signal
            formatter: Turns a record into an output line
        """
        if render_interval is not None and render_interval < 0:
            raise ValueError(f"render_interval must not be negative, got {render_interval}")

        self.merge_point = merge_point
        self.render_interval = render_interval or None
        self.output = output
        self.stop_event = stop_event or threading.Event()
        self.formatter = formatter
        self.rendered = 0

    @property
    def throttled(self) -> bool:
        return self.render_interval is not None

    def render(self, record: LogRecord):
        stream = self.output or sys.stdout
        stream.write(self.formatter(record) + "\n")
        stream.flush()
        self.rendered += 1
        records_rendered_total.inc()

    def run(self):
        """Consume until the merge point is closed and drained, or stopped."""
        mode = f"throttled ({self.render_interval}s)" if self.throttled else "eager"
        logger.debug(f"Consumer started in {mode} mode")

        if self.throttled:
            self._run_throttled()
        else:
            self._run_eager()

        if not self.stop_event.is_set():
            self._drain()

        logger.debug(f"Consumer finished after rendering {self.rendered} records")

    def _run_eager(self):
        while not self.stop_event.is_set():
            record = self.merge_point.pop(timeout=_POP_TIMEOUT)
            if record is not None:
                self.render(record)
            elif self.merge_point.closed:
                return

    def _run_throttled(self):
        started = time.monotonic()
        tick = 0

        while not self.stop_event.is_set():
            if self.merge_point.closed:
                return

            record = self.merge_point.pop_nowait()
            if record is not None:
                self.render(record)

            # Tick k fires at started + k * interval; ticks missed while
            # rendering are dropped
            elapsed_ticks = int((time.monotonic() - started) // self.render_interval)
            tick = max(tick + 1, elapsed_ticks + 1)
            deadline = started + tick * self.render_interval
            while not self.stop_event.is_set() and not self.merge_point.closed:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self.stop_event.wait(min(remaining, _POP_TIMEOUT))

    def _drain(self):
        """Render whatever is still queued once producers are done."""
        while True:
            record = self.merge_point.pop_nowait()
            if record is None:
                return
            self.render(record)
