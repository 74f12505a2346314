from .aggregator import CriticalFailure, GroupCounts, RunSummary, record
from .renderers import console_lines, emit, write_html, write_json

__all__ = [
    "CriticalFailure",
    "GroupCounts",
    "RunSummary",
    "console_lines",
    "emit",
    "record",
    "write_html",
    "write_json",
]
