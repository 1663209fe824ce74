"""guidesync — local-first progress tracking for the Canadian business startup guide"""

__version__ = "2.0.0"
