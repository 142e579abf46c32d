"""Adaptive bucketing of one period of a seasonal signal.

The period ``[0, P)`` is tiled by at most ``max_size`` contiguous buckets,
each a :class:`~adaptive_seasonality.estimation.bucket.BucketModel`. The
boundaries are adapted by :meth:`AdaptiveBucketing.refine` so that no single
bucket dominates the prediction error:

1) Boundary moves

   Every interior boundary moves toward the neighbour with the larger mean
   squared prediction error accumulated since the previous refine. The move
   is proportional to the relative error imbalance

     (e_left - e_right) / (e_left + e_right)

   and is capped so that no bucket shrinks below ``minimum_bucket_length``.

2) Split (at most one per refine)

   A bucket whose error exceeds ``SPLIT_ERROR_RATIO`` times the mean error is
   split while fewer than ``max_size`` buckets exist. Raw samples are not
   retained, so the error density inside the bucket is modelled as linear
   between the levels implied by its neighbours and the split point is the
   one that gives both halves the same integrated error.

3) Merge (only when no split happened)

   The adjacent pair with the lowest error, both below ``MERGE_ERROR_RATIO``
   times the mean error, is merged if the merged width stays under
   ``MERGE_WIDTH_FACTOR * P / max_size``.

Whenever the partition changes, bucket statistics are redistributed onto the
new partition in proportion to interval overlap (sample mass is assumed
uniform within a bucket). With no samples added since the previous refine
there is no error information and refine leaves the bucketing untouched.

Regression time
---------------
A sample at time ``t`` and phase ``p`` falling in bucket ``[lo, hi)`` is
regressed at abscissa ``(t - p + (lo + hi) / 2 - origin) / P``: the time, in
periods, at which that period instance passes through the bucket midpoint.
"""

from __future__ import annotations

import logging
import math
import sys
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from ..models.summaries import WindowSummary
from .bucket import BucketModel
from .statistics import MeanAccumulator

logger = logging.getLogger(__name__)

# Largest boundary move, as a fraction of half the shrinking bucket's width.
BOUNDARY_STEP = 0.5
# Relative error imbalances below this do not move a boundary.
BOUNDARY_TOLERANCE = 0.1
SPLIT_ERROR_RATIO = 4.0
MERGE_ERROR_RATIO = 0.25
MERGE_WIDTH_FACTOR = 2.0


def _equal_error_split(rho0: float, rho1: float) -> float:
    """Fraction ``s`` of ``[0, 1]`` splitting a linear density ``rho0 -> rho1`` into equal halves."""
    delta = rho1 - rho0
    if abs(delta) <= 1e-12 * max(abs(rho0), abs(rho1), 1e-300):
        return 0.5
    total = 0.5 * (rho0 + rho1)
    return (math.sqrt(max(rho0 * rho0 + delta * total, 0.0)) - rho0) / delta


class AdaptiveBucketing:
    """Ordered, period-covering collection of bucket models."""

    def __init__(
        self,
        period: float,
        max_size: int,
        decay_rate: float = 0.0,
        minimum_bucket_length: float = 0.0,
    ) -> None:
        if not (math.isfinite(period) and period > 0.0):
            raise ValueError(f"period must be finite and > 0, got {period}")
        if int(max_size) < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        if not decay_rate >= 0.0:
            raise ValueError(f"decay_rate must be >= 0, got {decay_rate}")
        if not minimum_bucket_length >= 0.0:
            raise ValueError(f"minimum_bucket_length must be >= 0, got {minimum_bucket_length}")
        self.period = float(period)
        self.max_size = int(max_size)
        self.decay_rate = float(decay_rate)
        self.minimum_bucket_length = float(minimum_bucket_length)
        self.time_origin = 0.0
        self.buckets: List[BucketModel] = []
        self._endpoints = np.empty(0)

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return bool(self.buckets)

    def __len__(self) -> int:
        return len(self.buckets)

    @property
    def endpoints(self) -> np.ndarray:
        return self._endpoints.copy()

    @property
    def widths(self) -> np.ndarray:
        return np.diff(self._endpoints)

    def _sync_endpoints(self) -> None:
        if not self.buckets:
            self._endpoints = np.empty(0)
            return
        self._endpoints = np.array([b.lo for b in self.buckets] + [self.buckets[-1].hi], dtype=float)

    def bucket_index(self, phase: float) -> int:
        i = int(np.searchsorted(self._endpoints, phase, side="right")) - 1
        return min(max(i, 0), len(self.buckets) - 1)

    def bucket(self, phase: float) -> BucketModel:
        return self.buckets[self.bucket_index(phase)]

    def regression_time(self, time: float) -> float:
        return (time - self.time_origin) / self.period

    def initial_size(self) -> int:
        n = self.max_size
        if self.minimum_bucket_length > 0.0:
            n = min(n, int(math.floor(self.period / self.minimum_bucket_length + 1e-9)))
        return max(n, 1)

    def clear(self) -> None:
        self.buckets = []
        self.time_origin = 0.0
        self._sync_endpoints()

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def initialize(
        self,
        start_time: float,
        end_time: float,
        values: Sequence[WindowSummary],
        phase_of: Callable[[float], float],
    ) -> bool:
        """Create a uniform partition and seed it from windowed summaries.

        Returns False (and leaves the bucketing untouched) if there is nothing
        to seed from.
        """
        if not end_time > start_time:
            return False
        windows = [
            w for w in values
            if w.end > w.start and w.count > 0.0 and math.isfinite(w.mean) and math.isfinite(w.variance)
        ]
        if not windows:
            return False

        endpoints = np.linspace(0.0, self.period, self.initial_size() + 1)
        endpoints[-1] = self.period
        self.buckets = [BucketModel(lo=float(a), hi=float(b)) for a, b in zip(endpoints[:-1], endpoints[1:])]
        self.time_origin = float(start_time)
        self._sync_endpoints()

        for w in windows:
            self._seed(w, phase_of(w.start))
        return True

    def _seed(self, window: WindowSummary, phase0: float) -> None:
        """Spread a window's samples over the buckets its phase range crosses."""
        length = window.length
        offset = 0.0
        while offset < length:
            phase = math.fmod(phase0 + offset, self.period)
            b = self.bucket(phase)
            step = max(min(length - offset, b.hi - phase), 1e-12 * self.period)
            weight = window.count * step / length
            mid = 0.5 * (b.lo + b.hi)
            x = self.regression_time(window.start + offset - phase + mid)
            b.regression.add(x, window.mean, weight)
            b.residuals.add_summary(0.0, window.variance, weight)
            b.centre.add(phase + 0.5 * min(step, b.hi - phase), weight)
            b.last_update = x if b.last_update is None else max(b.last_update, x)
            offset += step

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def add(self, time: float, phase: float, value: float, weight: float = 1.0) -> None:
        if not self.buckets:
            return
        b = self.bucket(phase)
        x = self.regression_time(time - phase + 0.5 * (b.lo + b.hi))
        b.update(value, weight, x, phase)

    def propagate_forwards_by_time(self, elapsed: float, mean_revert: bool = False) -> None:
        """Age the buckets by ``exp(-decay_rate * elapsed)``.

        With ``mean_revert`` the bucket levels and variances also relax toward
        their population means, and the boundaries toward a uniform partition,
        by the fraction of information lost.
        """
        if not self.buckets or not elapsed > 0.0:
            return
        factor = math.exp(-self.decay_rate * elapsed)
        for b in self.buckets:
            b.age(factor)
        if not mean_revert or factor >= 1.0:
            return

        alpha = 1.0 - factor
        level = self.mean_value()
        variance = self.mean_variance()
        residual = self._mean_residual()
        for b in self.buckets:
            if b.last_update is None:
                continue
            b.regression.shift_ordinate(alpha * (level - b.regression.mean_y))
            b.residuals.mean += alpha * (residual - b.residuals.mean)
            b.residuals.variance += alpha * (variance - b.residuals.variance)

        uniform = np.linspace(0.0, self.period, len(self.buckets) + 1)
        relaxed = factor * self._endpoints + alpha * uniform
        relaxed[0], relaxed[-1] = 0.0, self.period
        if not np.array_equal(relaxed, self._endpoints):
            self._rebucket(relaxed)

    # ------------------------------------------------------------------
    # Refinement
    # ------------------------------------------------------------------

    def refine(self, time: float) -> bool:
        """Adapt the partition to the errors seen since the last refine.

        Returns True if the partition changed.
        """
        n = len(self.buckets)
        if n == 0:
            return False
        counts = np.array([b.error.weight for b in self.buckets])
        active = counts > 0.0
        if not np.any(active):
            return False

        errors = np.array([b.error.mean for b in self.buckets])
        mean_error = float(np.mean(errors[active]))
        endpoints = self._endpoints
        if mean_error > 0.0:
            endpoints = self._moved_boundaries(errors, active)
            structural = self._split(endpoints, errors, active, mean_error)
            if structural is None:
                structural = self._merge(endpoints, errors, active, mean_error)
            if structural is not None:
                endpoints = structural

        changed = not np.array_equal(endpoints, self._endpoints)
        if changed:
            logger.debug(
                "Refined bucketing at %s: %d -> %d buckets (mean error %.6g)",
                time, n, len(endpoints) - 1, mean_error,
            )
            self._rebucket(endpoints)
        for b in self.buckets:
            b.error = MeanAccumulator()
        return changed

    def _moved_boundaries(self, errors: np.ndarray, active: np.ndarray) -> np.ndarray:
        endpoints = self._endpoints.copy()
        widths = np.diff(self._endpoints)
        slack = np.maximum(widths - self.minimum_bucket_length, 0.0) / 2.0
        for k in range(1, len(widths)):
            left, right = k - 1, k
            if not (active[left] and active[right]):
                continue
            total = errors[left] + errors[right]
            if total <= 0.0:
                continue
            imbalance = (errors[left] - errors[right]) / total
            if abs(imbalance) < BOUNDARY_TOLERANCE:
                continue
            if imbalance > 0.0:
                endpoints[k] -= min(BOUNDARY_STEP * imbalance * widths[left] / 2.0, slack[left])
            else:
                endpoints[k] += min(BOUNDARY_STEP * -imbalance * widths[right] / 2.0, slack[right])
        return endpoints

    def _split(
        self,
        endpoints: np.ndarray,
        errors: np.ndarray,
        active: np.ndarray,
        mean_error: float,
    ) -> Optional[np.ndarray]:
        n = len(endpoints) - 1
        if n >= self.max_size:
            return None
        widths = np.diff(endpoints)
        smallest = 2.0 * max(self.minimum_bucket_length, 1e-6 * self.period)
        candidates = [
            j for j in range(n)
            if active[j] and errors[j] > SPLIT_ERROR_RATIO * mean_error and widths[j] >= smallest
        ]
        if not candidates:
            return None
        j = max(candidates, key=lambda i: errors[i])
        left = errors[(j - 1) % n] if active[(j - 1) % n] else errors[j]
        right = errors[(j + 1) % n] if active[(j + 1) % n] else errors[j]
        s = _equal_error_split(0.5 * (left + errors[j]), 0.5 * (errors[j] + right))
        margin = max(self.minimum_bucket_length / widths[j], 0.25)
        s = min(max(s, margin), 1.0 - margin)
        logger.debug("Splitting bucket %d at fraction %.3f (error %.6g)", j, s, errors[j])
        return np.insert(endpoints, j + 1, endpoints[j] + s * widths[j])

    def _merge(
        self,
        endpoints: np.ndarray,
        errors: np.ndarray,
        active: np.ndarray,
        mean_error: float,
    ) -> Optional[np.ndarray]:
        n = len(endpoints) - 1
        if n <= 1:
            return None
        widths = np.diff(endpoints)
        limit = MERGE_WIDTH_FACTOR * self.period / self.max_size * (1.0 + 1e-9)
        threshold = MERGE_ERROR_RATIO * mean_error
        best, best_score = None, math.inf
        for k in range(n - 1):
            if not (active[k] and active[k + 1]):
                continue
            if errors[k] >= threshold or errors[k + 1] >= threshold:
                continue
            if widths[k] + widths[k + 1] > limit:
                continue
            score = errors[k] + errors[k + 1]
            if score < best_score:
                best, best_score = k, score
        if best is None:
            return None
        logger.debug("Merging buckets %d and %d", best, best + 1)
        return np.delete(endpoints, best + 1)

    def _rebucket(self, endpoints: np.ndarray) -> None:
        """Redistribute the bucket statistics onto a new partition."""
        old = self.buckets
        result: List[BucketModel] = []
        j = 0
        for a, b in zip(endpoints[:-1], endpoints[1:]):
            a, b = float(a), float(b)
            while j < len(old) and old[j].hi <= a:
                j += 1
            parts = []
            k = j
            while k < len(old) and old[k].lo < b:
                lo, hi = max(a, old[k].lo), min(b, old[k].hi)
                if hi > lo:
                    parts.append((old[k], (hi - lo) / old[k].width, lo, hi))
                k += 1
            result.append(BucketModel.from_overlaps(a, b, parts))
        self.buckets = result
        self._sync_endpoints()

    # ------------------------------------------------------------------
    # Shifts
    # ------------------------------------------------------------------

    def shift_origin(self, time: float) -> None:
        """Move the regression time origin to ``time``; predictions are unchanged."""
        dx = (self.time_origin - time) / self.period
        for b in self.buckets:
            b.regression.shift_abscissa(dx)
            if b.last_update is not None:
                b.last_update += dx
        self.time_origin = float(time)

    def shift_level(self, delta: float) -> None:
        for b in self.buckets:
            b.regression.shift_ordinate(delta)

    def shift_slope(self, delta: float) -> None:
        for b in self.buckets:
            b.regression.shift_gradient(delta)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _populated(self) -> List[BucketModel]:
        return [b for b in self.buckets if b.last_update is not None]

    def knots(self, time: Optional[float] = None):
        """Knot phases, values and variances of the populated buckets.

        Values are the bucket predictions at ``time`` (or the bucket levels).
        """
        populated = self._populated()
        x = None if time is None else self.regression_time(time)
        centres = np.array([b.knot for b in populated], dtype=float)
        values = np.array([b.predict(x)[0] for b in populated], dtype=float)
        variances = np.array([b.variance for b in populated], dtype=float)
        return centres, values, variances

    def counts(self) -> np.ndarray:
        return np.array([b.weight for b in self.buckets], dtype=float)

    def variances(self) -> np.ndarray:
        return np.array([b.variance for b in self.buckets], dtype=float)

    def mean_value(self, time: Optional[float] = None) -> float:
        populated = self._populated()
        if not populated:
            return 0.0
        x = None if time is None else self.regression_time(time)
        widths = np.array([b.width for b in populated])
        values = np.array([b.predict(x)[0] for b in populated])
        return float(np.average(values, weights=widths))

    def mean_variance(self) -> float:
        populated = self._populated()
        if not populated:
            return 0.0
        widths = np.array([b.width for b in populated])
        return float(np.average([b.variance for b in populated], weights=widths))

    def _mean_residual(self) -> float:
        populated = self._populated()
        if not populated:
            return 0.0
        widths = np.array([b.width for b in populated])
        return float(np.average([b.residuals.mean for b in populated], weights=widths))

    def heteroscedasticity(self) -> float:
        populated = self._populated()
        if len(populated) <= 1:
            return 1.0
        variances = np.array([b.variance for b in populated])
        if np.ptp(variances) == 0.0:
            return 1.0
        mean = self.mean_variance()
        if mean <= 0.0:
            return 1.0
        return float(np.max(variances) / mean)

    def slope(self) -> float:
        counts = self.counts()
        if counts.size == 0 or np.sum(counts) <= 0.0:
            return 0.0
        return float(np.average([b.regression.slope for b in self.buckets], weights=counts))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": self.period,
            "max_size": self.max_size,
            "decay_rate": self.decay_rate,
            "minimum_bucket_length": self.minimum_bucket_length,
            "time_origin": self.time_origin,
            "buckets": [b.to_dict() for b in self.buckets],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> AdaptiveBucketing:
        """Rebuild from :meth:`to_dict` output.

        Raises ``KeyError``/``TypeError``/``ValueError`` on a malformed document,
        or ``OverflowError`` when an integer field is infinite.
        """
        result = cls(
            period=float(d["period"]),
            max_size=int(d["max_size"]),
            decay_rate=float(d["decay_rate"]),
            minimum_bucket_length=float(d["minimum_bucket_length"]),
        )
        result.time_origin = float(d.get("time_origin", 0.0))
        buckets = [BucketModel.from_dict(b) for b in d["buckets"]]
        if len(buckets) > result.max_size:
            raise ValueError(f"{len(buckets)} buckets exceed max_size={result.max_size}")
        if buckets:
            if buckets[0].lo != 0.0 or buckets[-1].hi != result.period:
                raise ValueError("buckets do not cover [0, period)")
            for left, right in zip(buckets[:-1], buckets[1:]):
                if left.hi != right.lo:
                    raise ValueError(f"buckets are not contiguous at {left.hi} / {right.lo}")
            if not all(np.all(np.isfinite(b.as_array()[:-1])) for b in buckets):
                raise ValueError("non-finite bucket statistics")
        result.buckets = buckets
        result._sync_endpoints()
        return result

    def as_array(self) -> np.ndarray:
        """Flat float vector of the full state in boundary order (checksums)."""
        header = np.array(
            [self.period, self.max_size, self.decay_rate, self.minimum_bucket_length, self.time_origin],
            dtype="<f8",
        )
        return np.concatenate([header] + [b.as_array() for b in self.buckets])

    def memory_usage(self) -> int:
        total = sys.getsizeof(self) + sys.getsizeof(self.buckets) + self._endpoints.nbytes
        for b in self.buckets:
            total += sys.getsizeof(b)
            total += sum(sys.getsizeof(a) for a in (b.regression, b.residuals, b.centre, b.error))
        return total
