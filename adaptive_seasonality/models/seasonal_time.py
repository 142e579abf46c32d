"""Time-to-phase providers.

The estimator never interprets absolute time itself. It asks a provider for
the phase of a time inside the repeating period and for the period length.
Providers must be pure: the same time always maps to the same phase.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Protocol, Tuple, runtime_checkable


@runtime_checkable
class SeasonalTime(Protocol):
    """Interface consumed by :class:`~adaptive_seasonality.estimation.SeasonalComponent`."""

    @property
    def period(self) -> float:
        ...

    def phase(self, time: float) -> Tuple[float, float]:
        """Return ``(phase, period)`` with ``0 <= phase < period``."""
        ...


@dataclass(frozen=True)
class PeriodicTime:
    """Fixed-length period anchored at ``offset``.

    Example: ``PeriodicTime(86400.0)`` maps epoch seconds to seconds of the
    (UTC) day.
    """

    period: float
    offset: float = 0.0

    def __post_init__(self) -> None:
        if not (math.isfinite(self.period) and self.period > 0.0):
            raise ValueError(f"period must be finite and > 0, got {self.period}")

    def phase(self, time: float) -> Tuple[float, float]:
        p = math.fmod(time - self.offset, self.period)
        if p < 0.0:
            p += self.period
        if p >= self.period:
            p = 0.0
        return p, self.period

    def start_of_period(self, time: float) -> float:
        return time - self.phase(time)[0]


DAY = 86400.0
WEEK = 7.0 * DAY
