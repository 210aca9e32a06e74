"""Logging helpers for the async mail queue."""

import logging


def get_logger(name: str = "AsyncMailQueue") -> logging.Logger:
    """Return a :class:`logging.Logger` instance.

    Note: Logging configuration should be done via logging.basicConfig()
    in the main entry point (main.py) to avoid duplicate handlers.
    """
    return logging.getLogger(name)
