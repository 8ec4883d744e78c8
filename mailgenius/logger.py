"""Logging helpers for the MailGenius send queue."""

import logging


def get_logger(name: str = "MailGenius") -> logging.Logger:
    """Return a configured :class:`logging.Logger` instance.

    Note: Logging configuration should be done via logging.basicConfig()
    in the main entry point (main.py) to avoid duplicate handlers.
    """
    return logging.getLogger(name)
