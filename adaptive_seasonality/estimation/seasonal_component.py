"""Online estimate of one seasonal component of a time series.

The component learns the repeating shape of a signal from a single pass over
``(time, value)`` observations:

- :meth:`SeasonalComponent.add` maps a time to its phase (through the time
  provider), jitters the phase and folds the value into the owning bucket of
  an :class:`~adaptive_seasonality.estimation.bucketing.AdaptiveBucketing`.
- :meth:`SeasonalComponent.interpolate` optionally refines the bucketing and
  rebuilds the value (cubic) and variance (linear) periodic splines from the
  bucket predictions. Queries serve the last interpolation until the next
  call, so ``add`` bursts should be followed by one ``interpolate``.
- :meth:`SeasonalComponent.propagate_forwards_by_time` forgets history.

Queries never mutate state. The checksum covers exactly the state that the
mutating operations change, and survives a persist/restore round trip.
"""

from __future__ import annotations

import dataclasses
import hashlib
import logging
import math
import sys
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy.stats import chi2, norm

from ..models import state as state_doc
from ..models.profile import SeasonalProfile
from ..models.seasonal_time import SeasonalTime
from ..models.summaries import WindowSummary
from .bucketing import AdaptiveBucketing
from .spline import PeriodicSpline

logger = logging.getLogger(__name__)

# Confidence percentages are clamped below 100 so quantiles stay finite.
MAXIMUM_CONFIDENCE = 100.0 - 1e-6


def _two_sided(confidence: float) -> float:
    return min(max(float(confidence), 0.0), MAXIMUM_CONFIDENCE) / 100.0


class SeasonalComponent:
    """Adaptive bucketing plus periodic splines for one period of a series.

    Parameters
    ----------
    time:
        Time provider mapping an absolute time to ``(phase, period)``.
    max_size:
        Maximum number of buckets.
    decay_rate:
        Rate at which information is lost per unit of elapsed time.
    minimum_bucket_length:
        Smallest bucket width produced by refinement; also the jitter range.
    boundary_condition, value_interpolation, variance_interpolation:
        Spline options, see :class:`~adaptive_seasonality.models.profile.SeasonalProfile`.
    seed:
        Seed of the counter-based jitter generator.
    """

    def __init__(
        self,
        time: SeasonalTime,
        max_size: int,
        decay_rate: float = 0.0,
        minimum_bucket_length: float = 0.0,
        boundary_condition: str = "periodic",
        value_interpolation: str = "cubic",
        variance_interpolation: str = "linear",
        seed: int = 0,
    ) -> None:
        if not isinstance(time, SeasonalTime):
            raise TypeError(f"time must provide period and phase(time), got {type(time).__name__}")
        self.profile = SeasonalProfile(
            max_size=int(max_size),
            decay_rate=float(decay_rate),
            minimum_bucket_length=float(minimum_bucket_length),
            boundary_condition=boundary_condition,
            value_interpolation=value_interpolation,
            variance_interpolation=variance_interpolation,
            seed=int(seed),
        )
        self._time = time
        self._bucketing = AdaptiveBucketing(
            time.period,
            self.profile.max_size,
            decay_rate=self.profile.decay_rate,
            minimum_bucket_length=self.profile.minimum_bucket_length,
        )
        self._reset_rng()
        self._value_spline: Optional[PeriodicSpline] = None
        self._variance_spline: Optional[PeriodicSpline] = None
        self._interpolation_time: Optional[float] = None

    @classmethod
    def from_profile(cls, time: SeasonalTime, profile: SeasonalProfile) -> SeasonalComponent:
        return cls(time, **profile.to_dict())

    def _reset_rng(self) -> None:
        self._bit_generator = np.random.Philox(self.profile.seed)
        self._rng = np.random.Generator(self._bit_generator)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._bucketing.initialized

    @property
    def size(self) -> int:
        return len(self._bucketing)

    @property
    def period(self) -> float:
        return self._bucketing.period

    @property
    def time(self) -> SeasonalTime:
        return self._time

    @property
    def bucketing(self) -> AdaptiveBucketing:
        return self._bucketing

    @property
    def decay_rate(self) -> float:
        return self._bucketing.decay_rate

    @decay_rate.setter
    def decay_rate(self, value: float) -> None:
        if not value >= 0.0:
            raise ValueError(f"decay_rate must be >= 0, got {value}")
        self._bucketing.decay_rate = float(value)
        self.profile = dataclasses.replace(self.profile, decay_rate=float(value))

    @property
    def value_spline(self) -> Optional[PeriodicSpline]:
        return self._value_spline

    @property
    def variance_spline(self) -> Optional[PeriodicSpline]:
        return self._variance_spline

    def _phase(self, time: float) -> float:
        return self._time.phase(time)[0]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, start_time: float, end_time: float, values: Sequence[WindowSummary]) -> bool:
        """Seed the bucketing from windowed summaries covering ``[start_time, end_time)``."""
        if not self._bucketing.initialize(start_time, end_time, values, self._phase):
            return False
        self.interpolate(end_time, refine=False)
        return True

    def clear(self) -> None:
        """Drop all learned state; the component becomes uninitialized."""
        self._bucketing.clear()
        self._value_spline = None
        self._variance_spline = None
        self._interpolation_time = None

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def _jitter(self, phase: float) -> Tuple[float, float]:
        length = self._bucketing.minimum_bucket_length
        if length <= 0.0:
            return phase, 0.0
        dt = float(self._rng.uniform(-0.5 * length, 0.5 * length))
        return float(np.mod(phase + dt, self.period)), dt

    def add(self, time: float, value: float, weight: float = 1.0) -> None:
        """Add the value ``value`` observed at ``time`` with weight ``weight``."""
        if not self.initialized:
            logger.debug("Ignoring value at %s: component not initialized", time)
            return
        if not (math.isfinite(time) and math.isfinite(value) and math.isfinite(weight)):
            logger.error("Dropping non-finite sample: time=%s value=%s weight=%s", time, value, weight)
            return
        if weight <= 0.0:
            return
        phase, dt = self._jitter(self._phase(time))
        self._bucketing.add(time + dt, phase, value, weight)

    def interpolate(self, time: float, refine: bool = True) -> None:
        """Refine the bucketing (optionally) and rebuild both splines at ``time``."""
        if not self.initialized:
            return
        if refine:
            self._bucketing.refine(time)
        knots, values, variances = self._bucketing.knots(time)
        self._interpolation_time = float(time)
        if knots.size == 0:
            self._value_spline = None
            self._variance_spline = None
            return
        values = self._finite_or(values, "value")
        variances = np.maximum(self._finite_or(variances, "variance"), 0.0)
        self._value_spline = PeriodicSpline(self.period, knots, values, kind=self.profile.value_interpolation)
        self._variance_spline = PeriodicSpline(
            self.period, knots, variances, kind=self.profile.variance_interpolation
        )

    @staticmethod
    def _finite_or(x: np.ndarray, what: str) -> np.ndarray:
        ok = np.isfinite(x)
        if np.all(ok):
            return x
        fallback = float(np.mean(x[ok])) if np.any(ok) else 0.0
        logger.error("Replacing %d non-finite bucket %s(s) by %g", int(np.sum(~ok)), what, fallback)
        return np.where(ok, x, fallback)

    def propagate_forwards_by_time(self, elapsed: float, mean_revert: bool = False) -> None:
        """Age out old data to account for ``elapsed`` time."""
        self._bucketing.propagate_forwards_by_time(elapsed, mean_revert=mean_revert)

    def shift_origin(self, time: float) -> None:
        self._bucketing.shift_origin(time)

    def shift_level(self, shift: float) -> None:
        self._bucketing.shift_level(shift)
        if self._value_spline is not None:
            self._value_spline = self._value_spline.shifted(shift)

    def shift_slope(self, shift: float) -> None:
        self._bucketing.shift_slope(shift)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def value(self, time: float, confidence: float) -> Tuple[float, float]:
        """Return ``(mean, half width)`` of the ``confidence``% interval for the component at ``time``."""
        if self._value_spline is None:
            return 0.0, 0.0
        phase = self._phase(time)
        mean = self._value_spline(phase)
        c = _two_sided(confidence)
        if c <= 0.0:
            return mean, 0.0
        n = self._bucketing.bucket(phase).weight
        variance = max(self._variance_spline(phase), 0.0) / max(n, 1.0)
        variance += self.variance_due_to_parameter_drift(time)
        return mean, float(norm.ppf(0.5 + 0.5 * c)) * math.sqrt(variance)

    def mean_value(self) -> float:
        return self._bucketing.mean_value(self._interpolation_time)

    def difference_from_mean(self, time: float, period: float) -> float:
        """Mean over the repeats ``time + k * period`` of the value minus :meth:`mean_value`.

        ``period`` must be shorter than and divide the component's period, otherwise
        0 is returned.
        """
        if self._value_spline is None or not 0.0 < period < self.period:
            return 0.0
        ratio = self.period / period
        n = int(round(ratio))
        if n < 2 or abs(ratio - n) > 1e-9 * ratio:
            return 0.0
        phases = np.array([self._phase(time + k * period) for k in range(n)])
        return float(np.mean(self._value_spline(phases)) - self.mean_value())

    def variance(self, time: float, confidence: float) -> Tuple[float, float]:
        """Return ``(variance, half width)`` of the ``confidence``% interval for the residual variance."""
        if self._variance_spline is None:
            return 0.0, 0.0
        phase = self._phase(time)
        variance = max(self._variance_spline(phase), 0.0)
        c = _two_sided(confidence)
        n = self._bucketing.bucket(phase).weight
        if c <= 0.0 or n <= 1.0:
            return variance, 0.0
        lower = variance * (n - 1.0) / chi2.ppf(0.5 + 0.5 * c, n - 1.0)
        upper = variance * (n - 1.0) / chi2.ppf(0.5 - 0.5 * c, n - 1.0)
        return variance, 0.5 * float(upper - lower)

    def mean_variance(self) -> float:
        return self._bucketing.mean_variance()

    def heteroscedasticity(self) -> float:
        """Maximum ratio of a bucket's residual variance to the mean residual variance."""
        return self._bucketing.heteroscedasticity()

    def covariances(self, time: float) -> Optional[np.ndarray]:
        """Covariance of the owning bucket's regression parameters, or ``None``."""
        if not self.initialized:
            return None
        return self._bucketing.bucket(self._phase(time)).covariance()

    def variance_due_to_parameter_drift(self, time: float) -> float:
        """Prediction variance from the owning bucket's parameters carried forward to ``time``."""
        if not self.initialized:
            return 0.0
        bucket = self._bucketing.bucket(self._phase(time))
        cov = bucket.covariance()
        if cov is None:
            return 0.0
        t = max(self._bucketing.regression_time(time) - bucket.last_update, 0.0)
        return max(float(cov[0, 0] + 2.0 * t * cov[0, 1] + t * t * cov[1, 1]), 0.0)

    def sufficient_history_to_predict(self, time: float) -> bool:
        if not self.initialized:
            return False
        return self._bucketing.bucket(self._phase(time)).sufficient_history()

    def slope(self) -> float:
        """Common slope of the bucket regressions, in value per period."""
        return self._bucketing.slope()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def persist(self) -> dict:
        """Return the state document from which :meth:`restore` resumes identically."""
        splines = None
        if self._interpolation_time is not None:
            splines = {
                state_doc.SPLINES_TIME_TAG: self._interpolation_time,
                state_doc.VALUE_SPLINE_TAG: None if self._value_spline is None else self._value_spline.to_dict(),
                state_doc.VARIANCE_SPLINE_TAG: (
                    None if self._variance_spline is None else self._variance_spline.to_dict()
                ),
            }
        return {
            state_doc.RNG_TAG: state_doc.rng_state_to_dict(self._bit_generator.state),
            state_doc.BUCKETING_TAG: self._bucketing.to_dict(),
            state_doc.SPLINES_TAG: splines,
        }

    def restore(self, state: dict) -> bool:
        """Replace this component's state by ``state``.

        On a malformed or incomplete document the component is reset to its
        freshly constructed, uninitialized state and False is returned.
        """
        try:
            bit_generator = np.random.Philox()
            bit_generator.state = state_doc.rng_state_from_dict(state_doc.require(state, state_doc.RNG_TAG))
            bucketing = AdaptiveBucketing.from_dict(state_doc.require(state, state_doc.BUCKETING_TAG))
            if bucketing.period != self._time.period:
                raise ValueError(f"period {bucketing.period} does not match time provider period {self._time.period}")
            splines = state.get(state_doc.SPLINES_TAG)
            interpolation_time = None
            value_spline = variance_spline = None
            if splines is not None:
                interpolation_time = float(state_doc.require(splines, state_doc.SPLINES_TIME_TAG))
                value_doc = state_doc.require(splines, state_doc.VALUE_SPLINE_TAG)
                variance_doc = state_doc.require(splines, state_doc.VARIANCE_SPLINE_TAG)
                if value_doc is not None:
                    value_spline = PeriodicSpline.from_dict(bucketing.period, value_doc)
                if variance_doc is not None:
                    variance_spline = PeriodicSpline.from_dict(bucketing.period, variance_doc)
            profile = dataclasses.replace(
                self.profile,
                max_size=bucketing.max_size,
                decay_rate=bucketing.decay_rate,
                minimum_bucket_length=bucketing.minimum_bucket_length,
            )
        except (KeyError, TypeError, ValueError, OverflowError) as e:
            logger.error("Failed to restore seasonal component: %s", e)
            self.clear()
            self._reset_rng()
            return False

        self.profile = profile
        self._bit_generator = bit_generator
        self._rng = np.random.Generator(bit_generator)
        self._bucketing = bucketing
        self._value_spline = value_spline
        self._variance_spline = variance_spline
        self._interpolation_time = interpolation_time
        return True

    def checksum(self, seed: int = 0) -> int:
        """64-bit digest of the generator state, the bucketing and the splines."""
        h = hashlib.sha256()
        h.update(int(seed).to_bytes(16, "little", signed=True))
        h.update(state_doc.rng_state_bytes(state_doc.rng_state_to_dict(self._bit_generator.state)))
        h.update(self._bucketing.as_array().tobytes())
        if self._interpolation_time is not None:
            h.update(np.array([self._interpolation_time], dtype="<f8").tobytes())
        for spline in (self._value_spline, self._variance_spline):
            if spline is not None:
                h.update(spline.kind.encode("utf-8"))
                h.update(spline.knots.astype("<f8").tobytes())
                h.update(spline.values.astype("<f8").tobytes())
        return int.from_bytes(h.digest()[:8], "little")

    def memory_usage(self) -> int:
        """Approximate dynamic memory footprint in bytes."""
        total = sys.getsizeof(self) + self._bucketing.memory_usage()
        for spline in (self._value_spline, self._variance_spline):
            if spline is not None:
                total += sys.getsizeof(spline) + spline.knots.nbytes + spline.coefficients.nbytes
        return total
