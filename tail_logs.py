"""Tail a CloudWatch log group across regions into one stream on stdout."""
import argparse
import signal
import sys
from typing import List, Optional

from loguru import logger

from data_ingestion.log_source import CloudWatchLogSource
from metrics_exporter import DIAGNOSTICS_PORT, start_diagnostics_server
from pipeline.models import utc_now
from pipeline.orchestrator import TailPipeline
from utils.aws_utils import SessionError, create_session, supported_regions
from utils.config_loader import ConfigError, ConfigLoader
from utils.logger import setup_logger

FILTER_SYNTAX_URL = "https://docs.aws.amazon.com/AmazonCloudWatch/latest/logs/FilterAndPatternSyntax.html"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tail-logs",
        description="Tail a CloudWatch log group in many regions at once"
    )
    parser.add_argument("--regions", help="Regions, comma separated (default: every region)")
    parser.add_argument("--profile", help="AWS profile to use for credentials")
    parser.add_argument("--group", dest="log_group", help="Log group name (required)")
    parser.add_argument("--filter", dest="filter_pattern", help=f"Filter events as described at {FILTER_SYNTAX_URL}")
    parser.add_argument("--since", help="RFC 3339 point in time from which log events are retrieved (default: now)")
    parser.add_argument("--interval", dest="render_interval", type=float,
                        help="Seconds between rendered records (default: render as they arrive)")
    parser.add_argument("--debug", action="store_true", default=None,
                        help=f"Expose diagnostics on localhost:{DIAGNOSTICS_PORT}")
    parser.add_argument("--config", help="YAML file with default settings")
    parser.add_argument("--poll-interval", type=float, help="Seconds between queries per region (default: 2)")
    parser.add_argument("--buffer-size", type=int, help="Capacity of the merge buffer (default: 100)")
    parser.add_argument("--max-retries", type=int,
                        help="Retries for throttling/connection errors before a region gives up (default: 0)")
    parser.add_argument("--log-level", help="Diagnostic log level (default: INFO)")
    parser.add_argument("--log-file", help="Also write diagnostics to this file")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    cli_values = vars(args).copy()
    config_file = cli_values.pop("config")

    try:
        config = ConfigLoader().build(cli_values, config_file)
    except ConfigError as e:
        parser.print_usage(sys.stderr)
        logger.error(f"{e}")
        return 1

    setup_logger(config.log_level, config.log_file)

    if config.debug:
        try:
            start_diagnostics_server()
        except OSError as e:
            logger.warning(f"Diagnostics endpoint unavailable: {e}")

    try:
        session = create_session(config.profile)
    except SessionError as e:
        logger.error(f"{e}")
        return 1

    regions = config.regions or supported_regions(session)
    if not regions:
        logger.error("No regions to poll")
        return 1

    pipeline = TailPipeline(
        regions,
        CloudWatchLogSource(session),
        config.log_group,
        config.since or utc_now(),
        filter_pattern=config.filter_pattern,
        render_interval=config.render_interval,
        poll_interval=config.poll_interval,
        buffer_size=config.buffer_size,
        max_retries=config.max_retries
    )

    previous_handler = signal.signal(signal.SIGTERM, lambda signum, frame: pipeline.stop())
    try:
        result = pipeline.run()
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    for region, error in result.errors.items():
        logger.info(f"{region}: {error}")

    if result.consumer_error is not None:
        return 1
    if result.stopped:
        return 0
    return 1 if result.all_failed else 0


if __name__ == "__main__":
    sys.exit(main())
