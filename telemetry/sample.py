# telemetry/sample.py
"""
Telemetry sample ingestion.
Everything the entity source reports is optional. Absent fields are
filled with 0 here, once, so the detector never has to deal with None.
"""
import math
from dataclasses import dataclass
from typing import Optional

SAMPLE_FIELDS = ("x", "y", "z", "pitch", "yaw")


class InvalidTelemetry(ValueError):
    """A telemetry field is present but not a finite number."""


@dataclass(frozen=True)
class TelemetrySample:
    x: Optional[float] = None
    y: Optional[float] = None
    z: Optional[float] = None
    pitch: Optional[float] = None
    yaw: Optional[float] = None

    @classmethod
    def from_mapping(cls, data) -> "TelemetrySample":
        """
        Build a sample from a source record (extra keys such as health or
        dimension are ignored).

        Raises:
            InvalidTelemetry: a known field holds a non-numeric value
        """
        if data is None:
            return cls()
        values = {}
        for name in SAMPLE_FIELDS:
            value = data.get(name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidTelemetry(f"{name} must be numeric (got {value!r})")
            if not math.isfinite(value):
                raise InvalidTelemetry(f"{name} must be finite (got {value!r})")
            values[name] = float(value)
        return cls(**values)

    @property
    def has_position(self) -> bool:
        return self.x is not None and self.y is not None and self.z is not None

    def normalized(self) -> "TelemetrySample":
        """Copy with every absent field set to 0.0."""
        return TelemetrySample(
            x=self.x if self.x is not None else 0.0,
            y=self.y if self.y is not None else 0.0,
            z=self.z if self.z is not None else 0.0,
            pitch=self.pitch if self.pitch is not None else 0.0,
            yaw=self.yaw if self.yaw is not None else 0.0,
        )

    def distance_to(self, point) -> float:
        """Euclidean distance to a {x, y, z} mapping (absent coordinates count as 0)."""
        s = self.normalized()
        dx = s.x - point.get("x", 0.0)
        dy = s.y - point.get("y", 0.0)
        dz = s.z - point.get("z", 0.0)
        return math.sqrt(dx * dx + dy * dy + dz * dz)
