"""
shared/types.py
Value objects passed between the scheduling services: geographic points,
half-open time windows, and references to schedulable resources.
"""

import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from shared.errors import ValidationError
from shared.models.models import ResourceType


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float

    def __post_init__(self):
        for value in (self.latitude, self.longitude):
            if value is None or isinstance(value, bool) or not math.isfinite(value):
                raise ValidationError("Coordinates must be finite numbers")
        if not -90 <= self.latitude <= 90:
            raise ValidationError("Latitude must be between -90 and 90")
        if not -180 <= self.longitude <= 180:
            raise ValidationError("Longitude must be between -180 and 180")

    def as_tuple(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval [start, end) between two aware datetimes."""

    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValidationError("Window boundaries must include a timezone offset")
        if self.end <= self.start:
            raise ValidationError("Window end must be after its start")

    @classmethod
    def from_duration(cls, start: datetime, duration_minutes: int) -> "TimeWindow":
        if duration_minutes is None or duration_minutes <= 0:
            raise ValidationError("Duration must be a positive number of minutes")
        return cls(start, start + timedelta(minutes=duration_minutes))

    @classmethod
    def from_parts(
        cls,
        start: datetime,
        end: Optional[datetime] = None,
        duration_minutes: Optional[int] = None,
    ) -> "TimeWindow":
        """Build a window from either an explicit end or a duration."""
        if end is not None and duration_minutes is not None:
            window = cls(start, end)
            if window.end != start + timedelta(minutes=duration_minutes):
                raise ValidationError("Window end does not match the given duration")
            return window
        if end is not None:
            return cls(start, end)
        if duration_minutes is not None:
            return cls.from_duration(start, duration_minutes)
        raise ValidationError("Window needs an end time or a duration")

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    @property
    def is_whole_minutes(self) -> bool:
        return self.end - self.start == timedelta(minutes=self.duration_minutes)

    def overlaps(self, other: "TimeWindow") -> bool:
        return self.start < other.end and self.end > other.start


@dataclass(frozen=True)
class ResourceRef:
    """Identifies one schedulable resource: an individual provider or an agency member."""

    resource_type: ResourceType
    resource_id: uuid.UUID

    @classmethod
    def individual(cls, resource_id: uuid.UUID) -> "ResourceRef":
        return cls(ResourceType.INDIVIDUAL, resource_id)

    @classmethod
    def agency_member(cls, resource_id: uuid.UUID) -> "ResourceRef":
        return cls(ResourceType.AGENCY_MEMBER, resource_id)
