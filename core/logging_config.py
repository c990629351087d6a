"""
core/logging_config.py -- One-time logging setup for entry points.

Library modules never configure logging; they only call
logging.getLogger("marketplace.<area>"). The entry point (main.py, or the
host application that embeds the auth core) calls configure_logging() once.

Security: the signing key, passwords, and full token strings are never passed
to a logger. Token strings are reduced with token_prefix() first.
"""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)-5s %(name)s %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO") -> None:
    """Install the process-wide log format. Safe to call more than once."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )


def token_prefix(token: str | None, length: int = 8) -> str:
    """Return a short, non-replayable prefix of a token for audit log lines."""
    if not token:
        return "<none>"
    return f"{token[:length]}..."
