"""Ingest package - preparing raw samples for the estimator.

Key functions:
- summarize_into_windows: Groups (time, value) samples into WindowSummary objects
"""

from .windows import summarize_into_windows

__all__ = ["summarize_into_windows"]
