"""Summarise raw samples into fixed-length time windows.

:meth:`~adaptive_seasonality.estimation.SeasonalComponent.initialize` seeds
its buckets from windowed history rather than raw samples. This module turns
``(time, value[, weight])`` arrays into the
:class:`~adaptive_seasonality.models.summaries.WindowSummary` list it expects.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import numpy as np
import pandas as pd

from ..models.summaries import WindowSummary

logger = logging.getLogger(__name__)


def summarize_into_windows(
    times,
    values,
    window: float,
    weights=None,
    start: Optional[float] = None,
) -> List[WindowSummary]:
    """Group samples into windows ``[start + k * window, start + (k + 1) * window)``.

    Parameters
    ----------
    times, values : array-like
        Sample times and values (equal length).
    window : float
        Window length in time units, > 0.
    weights : array-like, optional
        Sample weights; defaults to 1.
    start : float, optional
        Left edge of the first window; defaults to ``min(times)``.

    Returns
    -------
    list of WindowSummary
        One entry per non-empty window, sorted by start time. ``variance`` is
        the weighted population variance and ``count`` the total weight.

    Notes
    -----
    Samples with a non-finite time, value or weight, or a non-positive weight,
    are dropped.
    """
    if not (np.isfinite(window) and window > 0.0):
        raise ValueError(f"window must be finite and > 0, got {window}")
    t = np.asarray(times, dtype=float)
    y = np.asarray(values, dtype=float)
    w = np.ones_like(t) if weights is None else np.asarray(weights, dtype=float)
    if t.shape != y.shape or t.shape != w.shape or t.ndim != 1:
        raise ValueError(f"times, values and weights must be 1D of equal length, got {t.shape}, {y.shape}, {w.shape}")

    keep = np.isfinite(t) & np.isfinite(y) & np.isfinite(w) & (w > 0.0)
    if not np.all(keep):
        logger.warning("Dropping %d invalid samples before windowing", int(np.sum(~keep)))
    t, y, w = t[keep], y[keep], w[keep]
    if t.size == 0:
        return []

    origin = float(np.min(t)) if start is None else float(start)
    df = pd.DataFrame({
        "k": np.floor((t - origin) / window).astype(np.int64),
        "w": w,
        "wy": w * y,
        "wyy": w * y * y,
    })
    df = df[df["k"] >= 0]
    sums = df.groupby("k", sort=True).agg(
        total_weight=("w", "sum"),
        sum_y=("wy", "sum"),
        sum_yy=("wyy", "sum"),
    ).reset_index()

    sums["window_mean"] = sums["sum_y"] / sums["total_weight"]
    sums["window_variance"] = (sums["sum_yy"] / sums["total_weight"] - sums["window_mean"] ** 2).clip(lower=0.0)

    return [
        WindowSummary(
            start=origin + int(row.k) * window,
            end=origin + (int(row.k) + 1) * window,
            mean=float(row.window_mean),
            variance=float(row.window_variance),
            count=float(row.total_weight),
        )
        for row in sums.itertuples(index=False)
    ]
