"""Logging setup for command-line entry points."""

import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging for scripts."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    # redis-py is chatty at DEBUG
    logging.getLogger("redis").setLevel(logging.WARNING)
