"""Adaptive Seasonality -- online estimation of one seasonal component of a time series.

This package provides tools for:
- Learning the repeating shape of a signal over a fixed period (a day, a week)
  from a single pass over (time, value) samples
- Adapting the phase bucketing so that resolution follows the prediction error
- Interpolating bucket estimates with periodic splines
- Forgetting old history at a configurable decay rate
- Persisting and restoring the complete estimator state

Main subpackages:
- estimation: Accumulators, bucket models, adaptive bucketing, splines and SeasonalComponent
- ingest: Windowed summaries of raw samples for initialization
- models: Configuration profile, time providers, window summaries, state documents
"""

from .estimation import SeasonalComponent
from .models import PeriodicTime, SeasonalProfile, SeasonalTime, WindowSummary

__all__ = [
    "SeasonalComponent",
    "PeriodicTime",
    "SeasonalProfile",
    "SeasonalTime",
    "WindowSummary",
]
