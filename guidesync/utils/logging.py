"""
Logging utilities for guidesync
"""
import sys
from datetime import datetime

_verbose = False
_quiet = False


def set_verbose(verbose: bool):
    """Set the verbose flag"""
    global _verbose
    _verbose = verbose


def set_quiet(quiet: bool):
    """Silence normal progress lines (warnings still go to stderr)"""
    global _quiet
    _quiet = quiet


def _stamp() -> str:
    return datetime.now().strftime("%H:%M:%S")


def log(msg: str):
    """Log a message with timestamp"""
    if _quiet:
        return
    print(f"[{_stamp()}] {msg}", flush=True)


def vlog(msg: str):
    """Log a verbose message (only if verbose mode is enabled)"""
    if _verbose:
        print(f"[{_stamp()}] {msg}", flush=True)


def warn(msg: str):
    """Log a warning message on stderr"""
    print(f"[{_stamp()}] ⚠  {msg}", file=sys.stderr, flush=True)
