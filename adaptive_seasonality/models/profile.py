"""Seasonal profile -- bundles every parameter of a seasonal component.

A SeasonalProfile groups the configuration that affects the estimator
into one frozen dataclass. It can be:

- Constructed directly with the bucket budget and decay rate
- Overridden field-by-field via ``dataclasses.replace()``
- Serialized to/from a dict for JSON provenance
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict

BOUNDARY_CONDITIONS = ("periodic",)
INTERPOLATION_TYPES = ("cubic", "linear")


@dataclass(frozen=True)
class SeasonalProfile:
    """Frozen configuration for a seasonal component.

    Required fields
    ---------------
    max_size : int
        Maximum number of buckets covering one period.

    Optional fields (sensible defaults)
    ------------------------------------
    decay_rate : float
        Rate at which bucket weight is forgotten per unit of elapsed time.
    minimum_bucket_length : float
        Smallest bucket width (phase units) refinement may produce. Also sets
        the jitter amplitude applied to added samples.
    boundary_condition : str
        Spline boundary condition. Only "periodic" is supported.
    value_interpolation : str
        "cubic" or "linear" interpolation of the bucket values.
    variance_interpolation : str
        "cubic" or "linear" interpolation of the bucket variances.
    seed : int
        Seed of the jitter generator.
    """

    max_size: int

    decay_rate: float = 0.0
    minimum_bucket_length: float = 0.0
    boundary_condition: str = "periodic"
    value_interpolation: str = "cubic"
    variance_interpolation: str = "linear"
    seed: int = 0

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise ``ValueError`` for an unusable configuration."""
        if int(self.max_size) < 1:
            raise ValueError(f"max_size must be >= 1, got {self.max_size}")
        if not self.decay_rate >= 0.0:
            raise ValueError(f"decay_rate must be >= 0, got {self.decay_rate}")
        if not self.minimum_bucket_length >= 0.0:
            raise ValueError(f"minimum_bucket_length must be >= 0, got {self.minimum_bucket_length}")
        if self.boundary_condition not in BOUNDARY_CONDITIONS:
            raise ValueError(
                f"boundary_condition must be one of {BOUNDARY_CONDITIONS}, got {self.boundary_condition!r}"
            )
        for name in ("value_interpolation", "variance_interpolation"):
            kind = getattr(self, name)
            if kind not in INTERPOLATION_TYPES:
                raise ValueError(f"{name} must be one of {INTERPOLATION_TYPES}, got {kind!r}")

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-friendly dict."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SeasonalProfile:
        """Reconstruct from a dict (e.g. loaded from JSON). Unknown keys are ignored."""
        known = {k: v for k, v in d.items() if k in cls.__dataclass_fields__}
        if "max_size" in known:
            known["max_size"] = int(known["max_size"])
        return cls(**known)
