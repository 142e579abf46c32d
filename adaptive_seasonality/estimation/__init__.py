"""Estimation package.

Bottom-up:
  - statistics: weighted mean, mean/variance and regression accumulators.
  - bucket: one phase interval with its regression, residual and error statistics.
  - bucketing: the adaptive partition of the period into buckets.
  - spline: periodic interpolation through the bucket knots.
  - seasonal_component: the public estimator tying them together.
"""

from .bucket import BucketModel
from .bucketing import AdaptiveBucketing
from .seasonal_component import SeasonalComponent
from .spline import PeriodicSpline
from .statistics import MeanAccumulator, MeanVarAccumulator, RegressionAccumulator

__all__ = [
    "BucketModel",
    "AdaptiveBucketing",
    "SeasonalComponent",
    "PeriodicSpline",
    "MeanAccumulator",
    "MeanVarAccumulator",
    "RegressionAccumulator",
]
