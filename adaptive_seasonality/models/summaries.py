from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class WindowSummary:
    """Mean, variance and count of the samples in the time window ``[start, end)``.

    This is the unit of history handed to
    :meth:`~adaptive_seasonality.estimation.SeasonalComponent.initialize`.
    ``variance`` is the population variance of the window's values.
    """

    start: float
    end: float
    mean: float
    variance: float
    count: float

    @property
    def length(self) -> float:
        return self.end - self.start
