"""
Prometheus diagnostics for the log tailing pipeline
"""
from prometheus_client import start_http_server, Gauge, Counter
from loguru import logger

DIAGNOSTICS_HOST = 'localhost'
DIAGNOSTICS_PORT = 6060

# Define metrics
records_delivered_total = Counter(
    'tail_records_delivered_total', 'Records handed to the merge point', ['region']
)
records_duplicate_total = Counter(
    'tail_records_duplicate_total', 'Records suppressed as already delivered', ['region']
)
poll_failures_total = Counter(
    'tail_poll_failures_total', 'Failed log queries', ['region']
)
records_rendered_total = Counter(
    'tail_records_rendered_total', 'Records written to the output stream'
)

active_pollers = Gauge('tail_active_pollers', 'Region pollers currently running')
merge_point_depth = Gauge('tail_merge_point_depth', 'Records waiting in the merge point')


def start_diagnostics_server(port: int = DIAGNOSTICS_PORT, host: str = DIAGNOSTICS_HOST):
    """Expose the metrics registry over HTTP on a local address."""
    start_http_server(port, addr=host)
    logger.info(f"Diagnostics endpoint running on http://{host}:{port}/metrics")
