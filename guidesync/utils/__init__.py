"""Utilities (logging, retry)"""
from .logging import log, vlog, warn, set_verbose, set_quiet
from .retry import retried, retry_delay

__all__ = [
    "log", "vlog", "warn", "set_verbose", "set_quiet",
    "retried", "retry_delay",
]
