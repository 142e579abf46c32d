"""Weighted online accumulators shared by the bucket models.

All accumulators store *normalised* statistics (means and centred second
moments) together with an effective weight. Aging therefore only scales the
weight and the centred sums, and never rescales a fitted mean or slope.

Classes
-------
MeanAccumulator
    Weighted mean.
MeanVarAccumulator
    Weighted mean and (population) variance.
RegressionAccumulator
    Weighted least squares ``y ~ a + b x`` in Welford form.

Functions
---------
pooled_mean, pooled_mean_var, pooled_regression
    Combine fractions of several accumulators into one (Chan's parallel
    update). Used when bucket statistics are redistributed onto a new
    partition of the period.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

import numpy as np

# Abscissa variance (in periods squared) below which a regression has no
# slope information.
MINIMUM_ABSCISSA_VARIANCE = 0.01


@dataclass
class MeanAccumulator:
    weight: float = 0.0
    mean: float = 0.0

    def add(self, x: float, weight: float = 1.0) -> None:
        if weight <= 0.0:
            return
        self.weight += weight
        self.mean += weight / self.weight * (x - self.mean)

    def age(self, factor: float) -> None:
        self.weight *= factor

    def to_dict(self) -> Dict[str, float]:
        return {"weight": self.weight, "mean": self.mean}

    @classmethod
    def from_dict(cls, d: Dict[str, float]) -> MeanAccumulator:
        return cls(weight=float(d["weight"]), mean=float(d["mean"]))

    def as_tuple(self) -> Tuple[float, ...]:
        return (self.weight, self.mean)


@dataclass
class MeanVarAccumulator:
    """Weighted mean and variance (West's weighted Welford update)."""

    weight: float = 0.0
    mean: float = 0.0
    variance: float = 0.0

    def add(self, x: float, weight: float = 1.0) -> None:
        if weight <= 0.0:
            return
        total = self.weight + weight
        delta = x - self.mean
        r = weight / total
        self.mean += r * delta
        self.variance = (1.0 - r) * (self.variance + r * delta * delta)
        self.weight = total

    def add_summary(self, mean: float, variance: float, weight: float) -> None:
        """Fold in a pre-aggregated group of ``weight`` samples."""
        if weight <= 0.0:
            return
        other = MeanVarAccumulator(weight=weight, mean=mean, variance=max(variance, 0.0))
        merged = pooled_mean_var([(self, 1.0), (other, 1.0)])
        self.weight, self.mean, self.variance = merged.weight, merged.mean, merged.variance

    def age(self, factor: float) -> None:
        self.weight *= factor

    def to_dict(self) -> Dict[str, float]:
        return {"weight": self.weight, "mean": self.mean, "variance": self.variance}

    @classmethod
    def from_dict(cls, d: Dict[str, float]) -> MeanVarAccumulator:
        return cls(weight=float(d["weight"]), mean=float(d["mean"]), variance=float(d["variance"]))

    def as_tuple(self) -> Tuple[float, ...]:
        return (self.weight, self.mean, self.variance)


@dataclass
class RegressionAccumulator:
    """Weighted least squares fit of ``y = a + b x``.

    Attributes
    ----------
    weight:
        Effective number of samples.
    mean_x, mean_y:
        Weighted means of the abscissa and the ordinate.
    m2_x:
        ``sum w (x - mean_x)^2``.
    c_xy:
        ``sum w (x - mean_x)(y - mean_y)``.

    Notes
    -----
    The fit is always evaluated in centred form,
    ``y(x) = mean_y + slope * (x - mean_x)``, which keeps it well conditioned
    for abscissae far from the origin.
    """

    weight: float = 0.0
    mean_x: float = 0.0
    mean_y: float = 0.0
    m2_x: float = 0.0
    c_xy: float = 0.0

    def add(self, x: float, y: float, weight: float = 1.0) -> None:
        if weight <= 0.0:
            return
        total = self.weight + weight
        dx = x - self.mean_x
        dy = y - self.mean_y
        r = weight / total
        self.mean_x += r * dx
        self.mean_y += r * dy
        # (x - new mean_x) = (1 - r) dx
        self.m2_x += weight * dx * dx * (1.0 - r)
        self.c_xy += weight * dx * dy * (1.0 - r)
        self.weight = total

    def age(self, factor: float) -> None:
        self.weight *= factor
        self.m2_x *= factor
        self.c_xy *= factor

    @property
    def abscissa_variance(self) -> float:
        if self.weight <= 0.0:
            return 0.0
        return self.m2_x / self.weight

    @property
    def slope(self) -> float:
        if self.abscissa_variance <= MINIMUM_ABSCISSA_VARIANCE:
            return 0.0
        return self.c_xy / self.m2_x

    def intercept(self, origin: float = 0.0) -> float:
        """Value of the fit at ``x = origin``."""
        return self.mean_y + self.slope * (origin - self.mean_x)

    def predict(self, x: float) -> float:
        return self.intercept(x)

    def parameter_covariance(self, residual_variance: float, origin: float = 0.0) -> np.ndarray:
        """Covariance of ``(intercept at origin, slope)`` for the given noise level.

        A regression without slope information has a fixed zero slope, so only
        the level carries uncertainty.
        """
        cov = np.zeros((2, 2))
        if self.weight <= 0.0:
            return cov
        var_level = residual_variance / self.weight
        if self.abscissa_variance <= MINIMUM_ABSCISSA_VARIANCE:
            cov[0, 0] = var_level
            return cov
        var_slope = residual_variance / self.m2_x
        offset = origin - self.mean_x
        cov[0, 0] = var_level + offset * offset * var_slope
        cov[0, 1] = cov[1, 0] = offset * var_slope
        cov[1, 1] = var_slope
        return cov

    def shift_abscissa(self, dx: float) -> None:
        self.mean_x += dx

    def shift_ordinate(self, dy: float) -> None:
        self.mean_y += dy

    def shift_gradient(self, db: float) -> None:
        """Add ``db`` to the slope, pivoting about ``x = 0``."""
        self.mean_y += db * self.mean_x
        self.c_xy += db * self.m2_x

    def to_dict(self) -> Dict[str, float]:
        return {
            "weight": self.weight,
            "mean_x": self.mean_x,
            "mean_y": self.mean_y,
            "m2_x": self.m2_x,
            "c_xy": self.c_xy,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, float]) -> RegressionAccumulator:
        return cls(
            weight=float(d["weight"]),
            mean_x=float(d["mean_x"]),
            mean_y=float(d["mean_y"]),
            m2_x=float(d["m2_x"]),
            c_xy=float(d["c_xy"]),
        )

    def as_tuple(self) -> Tuple[float, ...]:
        return (self.weight, self.mean_x, self.mean_y, self.m2_x, self.c_xy)


# ---------------------------------------------------------------------------
# Pooling
# ---------------------------------------------------------------------------
#
# Each pooling helper takes ``(accumulator, share)`` pairs. ``share`` scales
# the accumulator's weight. When the scaled weights are all zero the means are
# averaged with the shares themselves, so a partition with no data left after
# aging still carries its last estimates.


def _mixing_weights(weights: np.ndarray, shares: np.ndarray) -> Tuple[np.ndarray, float]:
    total = float(np.sum(weights))
    if total > 0.0:
        return weights / total, total
    s = float(np.sum(shares))
    if s <= 0.0:
        return np.full(shares.size, 1.0 / shares.size), 0.0
    return shares / s, 0.0


def pooled_mean(parts: Sequence[Tuple[MeanAccumulator, float]]) -> MeanAccumulator:
    shares = np.array([s for _, s in parts], dtype=float)
    weights = np.array([a.weight * s for a, s in parts], dtype=float)
    mix, total = _mixing_weights(weights, shares)
    mean = float(np.dot(mix, [a.mean for a, _ in parts]))
    return MeanAccumulator(weight=total, mean=mean)


def pooled_mean_var(parts: Sequence[Tuple[MeanVarAccumulator, float]]) -> MeanVarAccumulator:
    shares = np.array([s for _, s in parts], dtype=float)
    weights = np.array([a.weight * s for a, s in parts], dtype=float)
    mix, total = _mixing_weights(weights, shares)
    means = np.array([a.mean for a, _ in parts], dtype=float)
    variances = np.array([a.variance for a, _ in parts], dtype=float)
    mean = float(np.dot(mix, means))
    # within-group plus between-group spread
    variance = float(np.dot(mix, variances + (means - mean) ** 2))
    return MeanVarAccumulator(weight=total, mean=mean, variance=variance)


def pooled_regression(parts: Sequence[Tuple[RegressionAccumulator, float]]) -> RegressionAccumulator:
    shares = np.array([s for _, s in parts], dtype=float)
    weights = np.array([a.weight * s for a, s in parts], dtype=float)
    mix, total = _mixing_weights(weights, shares)
    mx = np.array([a.mean_x for a, _ in parts], dtype=float)
    my = np.array([a.mean_y for a, _ in parts], dtype=float)
    mean_x = float(np.dot(mix, mx))
    mean_y = float(np.dot(mix, my))
    m2_x = sum(a.m2_x * s for a, s in parts)
    c_xy = sum(a.c_xy * s for a, s in parts)
    if total > 0.0:
        m2_x += float(np.dot(weights, (mx - mean_x) ** 2))
        c_xy += float(np.dot(weights, (mx - mean_x) * (my - mean_y)))
    return RegressionAccumulator(weight=total, mean_x=mean_x, mean_y=mean_y, m2_x=m2_x, c_xy=c_xy)
