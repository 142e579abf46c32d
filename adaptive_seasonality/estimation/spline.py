"""Periodic interpolation of bucket values and variances.

Functions of phase are interpolated through the bucket knots with periodic
boundary conditions: the interpolant at phase ``0`` joins smoothly with the
interpolant at phase ``period``.

- "cubic": :class:`scipy.interpolate.CubicSpline` with ``bc_type="periodic"``
  (value and first two derivatives match across the wrap).
- "linear": periodic piecewise-linear interpolation (``numpy.interp`` with
  ``period``).

A spline is immutable. It is rebuilt from scratch on every interpolation.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import numpy as np
from scipy.interpolate import CubicSpline

logger = logging.getLogger(__name__)

# Knots closer than this fraction of the period are merged.
KNOT_TOLERANCE = 1e-9


class PeriodicSpline:
    """Periodic interpolant through ``(knots[i], values[i])``.

    Parameters
    ----------
    period:
        Length of the period; evaluation wraps phases into ``[0, period)``.
    knots:
        Knot phases in ``[0, period)``, non-decreasing.
    values:
        Values at the knots.
    kind:
        "cubic" or "linear".
    """

    def __init__(self, period: float, knots, values, kind: str = "cubic") -> None:
        if kind not in ("cubic", "linear"):
            raise ValueError(f"kind must be 'cubic' or 'linear', got {kind!r}")
        knots = np.asarray(knots, dtype=float)
        values = np.asarray(values, dtype=float)
        if knots.ndim != 1 or knots.shape != values.shape:
            raise ValueError(f"knots and values must be 1D of equal length, got {knots.shape} and {values.shape}")
        if knots.size == 0:
            raise ValueError("at least one knot is required")

        self.period = float(period)
        self.kind = kind
        self.knots, self.values = self._distinct(np.mod(knots, self.period), values)
        self._cubic: Optional[CubicSpline] = None
        if kind == "cubic" and self.knots.size >= 3:
            self._cubic = self._fit_cubic()

    def _distinct(self, knots: np.ndarray, values: np.ndarray):
        order = np.argsort(knots, kind="stable")
        knots, values = knots[order], values[order]
        keep_k, keep_v = [knots[0]], [[values[0]]]
        for k, v in zip(knots[1:], values[1:]):
            if k - keep_k[-1] <= KNOT_TOLERANCE * self.period:
                keep_v[-1].append(v)
            else:
                keep_k.append(k)
                keep_v.append([v])
        # a knot at the very end of the period coincides with the first knot
        if len(keep_k) > 1 and keep_k[0] + self.period - keep_k[-1] <= KNOT_TOLERANCE * self.period:
            keep_v[0].extend(keep_v.pop())
            keep_k.pop()
        return np.array(keep_k), np.array([np.mean(v) for v in keep_v])

    def _fit_cubic(self) -> Optional[CubicSpline]:
        x = np.append(self.knots, self.knots[0] + self.period)
        y = np.append(self.values, self.values[0])
        if not np.all(np.isfinite(y)):
            logger.error("Non-finite spline values %s; falling back to linear interpolation", self.values)
            return None
        try:
            return CubicSpline(x, y, bc_type="periodic", extrapolate="periodic")
        except ValueError as e:
            logger.error("Failed to fit periodic cubic spline: %s; falling back to linear interpolation", e)
            return None

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def __call__(self, phase):
        return self.evaluate(phase)

    def evaluate(self, phase):
        """Evaluate at ``phase`` (scalar or array), wrapped into ``[0, period)``."""
        scalar = np.ndim(phase) == 0
        p = np.mod(np.asarray(phase, dtype=float), self.period)
        if self.knots.size == 1:
            out = np.full(p.shape, self.values[0])
        elif self._cubic is not None:
            out = self._cubic(p)
        else:
            out = np.interp(p, self.knots, self.values, period=self.period)
        return float(out) if scalar else out

    def mean(self) -> float:
        """Average of the interpolant over one period."""
        if self.knots.size == 1:
            return float(self.values[0])
        if self._cubic is not None:
            a = self.knots[0]
            return float(self._cubic.integrate(a, a + self.period) / self.period)
        x = np.append(self.knots, self.knots[0] + self.period)
        y = np.append(self.values, self.values[0])
        return float(np.sum(0.5 * (y[1:] + y[:-1]) * np.diff(x)) / self.period)

    @property
    def coefficients(self) -> np.ndarray:
        """Piecewise polynomial coefficients, or the knot values for linear interpolation."""
        if self._cubic is not None:
            return self._cubic.c.copy()
        return self.values.copy()

    def shifted(self, delta: float) -> PeriodicSpline:
        return PeriodicSpline(self.period, self.knots, self.values + delta, kind=self.kind)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "knots": self.knots.tolist(), "values": self.values.tolist()}

    @classmethod
    def from_dict(cls, period: float, d: Dict[str, Any]) -> PeriodicSpline:
        return cls(period, d["knots"], d["values"], kind=d["kind"])
