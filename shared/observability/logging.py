"""Logging setup for pipeline runs."""

import logging
import sys

from shared.config import Environment, TrialEmulationConfig


def setup_logging(config: TrialEmulationConfig | None = None) -> None:
    """Set up logging configuration."""
    if config is None:
        config = TrialEmulationConfig()

    # Configure log level based on environment
    if config.log_level is not None:
        log_level = getattr(logging, config.log_level)
    elif config.environment == Environment.DEVELOPMENT:
        log_level = logging.DEBUG
    else:
        log_level = logging.INFO

    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Third-party loggers are chatty at DEBUG
    for noisy in ("statsmodels", "lifelines"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)
