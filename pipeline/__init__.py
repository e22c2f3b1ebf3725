"""Fan-in pipeline: merge point and consumer.

The orchestrator lives in ``pipeline.orchestrator`` and is not re-exported
here since it depends on the ingestion package.
"""

from .models import LogRecord
from .merge_point import MergePoint
from .consumer import Consumer, render_record

__all__ = ['LogRecord', 'MergePoint', 'Consumer', 'render_record']
