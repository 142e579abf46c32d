"""A single bucket of the adaptive seasonal bucketing.

A bucket covers the phase interval ``[lo, hi)`` and holds:

- a weighted linear regression of value on *regression time* (periods since
  the bucketing's time origin),
- a mean/variance accumulator of the residuals about that regression,
- the weighted centre of mass of the sample phases (used as spline knot),
- the squared prediction error accumulated since the last refine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np

from .statistics import (
    MeanAccumulator,
    MeanVarAccumulator,
    RegressionAccumulator,
    pooled_mean,
    pooled_mean_var,
    pooled_regression,
)

# Effective weight a bucket needs before its regression is trusted.
MINIMUM_WEIGHT_TO_PREDICT = 3.0


@dataclass
class BucketModel:
    lo: float
    hi: float
    regression: RegressionAccumulator = field(default_factory=RegressionAccumulator)
    residuals: MeanVarAccumulator = field(default_factory=MeanVarAccumulator)
    centre: MeanAccumulator = field(default_factory=MeanAccumulator)
    error: MeanAccumulator = field(default_factory=MeanAccumulator)
    last_update: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.lo < self.hi:
            raise ValueError(f"Bucket interval must satisfy lo < hi, got [{self.lo}, {self.hi})")

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def width(self) -> float:
        return self.hi - self.lo

    @property
    def weight(self) -> float:
        return self.regression.weight

    @property
    def variance(self) -> float:
        return max(self.residuals.variance, 0.0)

    @property
    def knot(self) -> float:
        """Phase used as spline knot: centre of mass, or midpoint when empty."""
        if self.last_update is None:
            return 0.5 * (self.lo + self.hi)
        return float(np.clip(self.centre.mean, self.lo, self.hi))

    def contains(self, phase: float) -> bool:
        return self.lo <= phase < self.hi

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update(self, value: float, weight: float, time: float, phase: Optional[float] = None) -> None:
        """Fold a weighted observation at regression time ``time`` into the bucket."""
        if weight <= 0.0:
            return
        residual = value - self.predict(time)[0] if self.regression.weight > 0.0 else 0.0
        self.regression.add(time, value, weight)
        self.residuals.add(residual, weight)
        self.error.add(residual * residual, weight)
        self.centre.add(0.5 * (self.lo + self.hi) if phase is None else phase, weight)
        self.last_update = time if self.last_update is None else max(self.last_update, time)

    def age(self, factor: float) -> None:
        self.regression.age(factor)
        self.residuals.age(factor)
        self.centre.age(factor)
        self.error.age(factor)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def predict(self, time: Optional[float] = None) -> Tuple[float, float]:
        """Return ``(mean, variance)`` of the bucket's model at regression time ``time``.

        With ``time=None`` the level at the weighted mean regression time is returned.
        """
        if time is None:
            return self.regression.mean_y, self.variance
        return self.regression.predict(time), self.variance

    def covariance(self) -> Optional[np.ndarray]:
        """Covariance of ``(intercept at last update, slope)`` or ``None`` if under-populated."""
        if self.weight < MINIMUM_WEIGHT_TO_PREDICT or self.last_update is None:
            return None
        return self.regression.parameter_covariance(self.variance, origin=self.last_update)

    def sufficient_history(self) -> bool:
        return self.weight >= MINIMUM_WEIGHT_TO_PREDICT

    # ------------------------------------------------------------------
    # Redistribution
    # ------------------------------------------------------------------

    @classmethod
    def from_overlaps(
        cls,
        lo: float,
        hi: float,
        parts: Sequence[Tuple["BucketModel", float, float, float]],
    ) -> "BucketModel":
        """Build the bucket ``[lo, hi)`` from overlapping pieces of old buckets.

        ``parts`` holds ``(bucket, share, overlap_lo, overlap_hi)`` where
        ``share`` is the fraction of the old bucket's width lying inside
        ``[overlap_lo, overlap_hi)``. Sample mass is assumed uniform in each old
        bucket. Each piece carries the old bucket's (clipped) centre of mass
        mapped affinely from the old interval onto the overlap, so a piece keeps
        the relative position of the samples it was cut from.
        """
        if not parts:
            return cls(lo=lo, hi=hi)
        centres = [
            (MeanAccumulator(weight=b.centre.weight, mean=olo + (b.knot - b.lo) / b.width * (ohi - olo)), s)
            for b, s, olo, ohi in parts
        ]
        last = [b.last_update for b, _, _, _ in parts if b.last_update is not None]
        return cls(
            lo=lo,
            hi=hi,
            regression=pooled_regression([(b.regression, s) for b, s, _, _ in parts]),
            residuals=pooled_mean_var([(b.residuals, s) for b, s, _, _ in parts]),
            centre=pooled_mean(centres),
            error=pooled_mean([(b.error, s) for b, s, _, _ in parts]),
            last_update=max(last) if last else None,
        )

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interval": [self.lo, self.hi],
            "regression": self.regression.to_dict(),
            "residuals": self.residuals.to_dict(),
            "centre": self.centre.to_dict(),
            "error": self.error.to_dict(),
            "last_update": self.last_update,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "BucketModel":
        lo, hi = d["interval"]
        last = d.get("last_update")
        return cls(
            lo=float(lo),
            hi=float(hi),
            regression=RegressionAccumulator.from_dict(d["regression"]),
            residuals=MeanVarAccumulator.from_dict(d["residuals"]),
            centre=MeanAccumulator.from_dict(d["centre"]),
            error=MeanAccumulator.from_dict(d["error"]),
            last_update=None if last is None else float(last),
        )

    def as_array(self) -> np.ndarray:
        """Flat float vector of the bucket state (checksums)."""
        last = np.nan if self.last_update is None else self.last_update
        return np.array(
            (self.lo, self.hi)
            + self.regression.as_tuple()
            + self.residuals.as_tuple()
            + self.centre.as_tuple()
            + self.error.as_tuple()
            + (last,),
            dtype="<f8",
        )
