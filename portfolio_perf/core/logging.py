import logging
import sys

from portfolio_perf.config import get_settings


def setup_logging(level: str | None = None) -> None:
    """Configure logging to output to stdout with proper formatting."""
    root_logger = logging.getLogger()
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel((level or get_settings().log_level).upper())

    # Exporter chatter stays out of the engine logs
    logging.getLogger("opentelemetry").setLevel(logging.WARNING)
    logging.getLogger("grpc").setLevel(logging.WARNING)
