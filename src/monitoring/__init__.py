"""
Logging and metrics for operation-log validation.

Usage:
    from monitoring import configure_logging, get_logger, metrics

    configure_logging(level="DEBUG")
    logger = get_logger(__name__)

    print(metrics.to_prometheus())
"""

from monitoring.logging import (
    LoggingContext,
    configure_from_config,
    configure_logging,
    get_logger,
)
from monitoring.metrics import MetricsCollector, metrics

__all__ = [
    "LoggingContext",
    "MetricsCollector",
    "configure_from_config",
    "configure_logging",
    "get_logger",
    "metrics",
]
