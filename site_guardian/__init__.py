"""Health checks and functional probes for a single public website."""

__version__ = "0.1.0"
