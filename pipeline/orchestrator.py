"""Run one poller per region plus the consumer and tear them down."""
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, TextIO

from loguru import logger

from data_ingestion.region_poller import (
    DEFAULT_POLL_INTERVAL,
    LogSource,
    PollerState,
    RegionPoller,
)
from .consumer import Consumer
from .merge_point import DEFAULT_CAPACITY, MergePoint

DEFAULT_SHUTDOWN_GRACE = 1.0

# Join slice so KeyboardInterrupt reaches the main thread
_JOIN_SLICE = 0.5


@dataclass
class PipelineResult:
    """Outcome of a pipeline run."""
    states: Dict[str, PollerState] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    rendered: int = 0
    stopped: bool = False
    consumer_error: Optional[str] = None

    @property
    def all_failed(self) -> bool:
        return bool(self.states) and all(
            state == PollerState.TERMINATED for state in self.states.values()
        )


class TailPipeline:
    """Fan-in of every region's poller into a single consumer."""

    def __init__(
        self,
        regions: List[str],
        source: LogSource,
        log_group: str,
        start_time: datetime,
        filter_pattern: Optional[str] = None,
        render_interval: Optional[float] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        buffer_size: int = DEFAULT_CAPACITY,
        max_retries: int = 0,
        retry_backoff: float = 1.0,
        dedup_retention: Optional[timedelta] = None,
        shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE,
        output: Optional[TextIO] = None
    ):
        if not regions:
            raise ValueError("at least one region is required")

        self.regions = regions
        self.shutdown_grace = shutdown_grace

        # Pollers and pushes observe stop_event; the consumer only halts
        # once the grace period after closing has run out.
        self.stop_event = threading.Event()
        self.halt_event = threading.Event()
        self.consumer_error: Optional[Exception] = None

        self.merge_point = MergePoint(buffer_size, stop_event=self.stop_event)
        self.consumer = Consumer(
            self.merge_point,
            render_interval=render_interval,
            output=output,
            stop_event=self.halt_event
        )
        self.pollers = [
            RegionPoller(
                region,
                source,
                self.merge_point,
                log_group,
                start_time,
                filter_pattern=filter_pattern,
                poll_interval=poll_interval,
                dedup_retention=dedup_retention,
                max_retries=max_retries,
                retry_backoff=retry_backoff,
                stop_event=self.stop_event
            )
            for region in regions
        ]

    def stop(self):
        """Ask every poller to finish at its next suspension point."""
        if not self.stop_event.is_set():
            logger.info("Stopping pipeline")
            self.stop_event.set()

    def _consume(self):
        try:
            self.consumer.run()
        except Exception as e:
            logger.error(f"Consumer failed, stopping pipeline: {e!r}")
            self.consumer_error = e
            self.stop()

    def run(self) -> PipelineResult:
        """Run until every poller has finished, then drain and return."""
        consumer_thread = threading.Thread(
            target=self._consume, name='consumer', daemon=True
        )
        poller_threads = [
            threading.Thread(target=poller.run, name=f"poller-{poller.region}", daemon=True)
            for poller in self.pollers
        ]

        logger.info(f"Starting {len(poller_threads)} region pollers")
        consumer_thread.start()
        for thread in poller_threads:
            thread.start()

        try:
            for thread in poller_threads:
                while thread.is_alive():
                    thread.join(_JOIN_SLICE)
        except KeyboardInterrupt:
            logger.warning("Interrupted, shutting down")
            self.stop()
            for thread in poller_threads:
                thread.join()

        return self._shutdown(consumer_thread)

    def _shutdown(self, consumer_thread: threading.Thread) -> PipelineResult:
        self.merge_point.close()
        consumer_thread.join(self.shutdown_grace)
        if consumer_thread.is_alive():
            logger.warning(
                f"Consumer still busy after {self.shutdown_grace}s, "
                f"dropping {len(self.merge_point)} queued records"
            )
            self.halt_event.set()
            consumer_thread.join(self.shutdown_grace)

        result = PipelineResult(rendered=self.consumer.rendered, stopped=self.stop_event.is_set())
        if self.consumer_error is not None:
            result.consumer_error = repr(self.consumer_error)
        for poller in self.pollers:
            result.states[poller.region] = poller.state
            if poller.error is not None:
                result.errors[poller.region] = str(poller.error)

        logger.info(f"Pipeline finished, {result.rendered} records rendered")
        return result
