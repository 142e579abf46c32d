from .profile import SeasonalProfile
from .seasonal_time import DAY, WEEK, PeriodicTime, SeasonalTime
from .summaries import WindowSummary

__all__ = [
    "SeasonalProfile",
    "DAY",
    "WEEK",
    "PeriodicTime",
    "SeasonalTime",
    "WindowSummary",
]
