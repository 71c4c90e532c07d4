"""Logging and metrics for pipeline runs."""

from .logging import get_logger, setup_logging
from .metrics import PipelineMetrics, get_metrics, reset_metrics

__all__ = [
    "PipelineMetrics",
    "get_logger",
    "get_metrics",
    "reset_metrics",
    "setup_logging",
]
