from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .clock import to_utc, utcnow
from .errors import InvalidWindow


class BookingStatus(StrEnum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})


def new_booking_id() -> str:
    return str(uuid.uuid4())


class TimeWindow(BaseModel):
    """Half-open interval ``[start, end)``."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _normalize(cls, v: datetime) -> datetime:
        return to_utc(v)

    @model_validator(mode="after")
    def _end_after_start(self) -> TimeWindow:
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self

    @classmethod
    def between(cls, start: datetime, end: datetime) -> TimeWindow:
        """Build a window, raising ``InvalidWindow`` unless start < end."""
        start, end = to_utc(start), to_utc(end)
        if start >= end:
            raise InvalidWindow()
        return cls(start=start, end=end)

    def overlaps(self, other: TimeWindow) -> bool:
        # Touching windows (one ends as the other starts) do not overlap
        return self.start < other.end and other.start < self.end


class BookingCreate(BaseModel):
    client_id: str = Field(..., min_length=1)
    resource_id: str = Field(..., min_length=1)
    start_time: datetime
    end_time: datetime
    notes: str | None = None

    @field_validator("notes")
    @classmethod
    def _strip_notes(cls, v: str | None) -> str | None:
        return v.strip() if v is not None else None


class BookingUpdate(BaseModel):
    resource_id: str | None = Field(default=None, min_length=1)
    start_time: datetime | None = None
    end_time: datetime | None = None
    notes: str | None = None
    status: BookingStatus | None = None

    @field_validator("notes")
    @classmethod
    def _strip_notes(cls, v: str | None) -> str | None:
        return v.strip() if v is not None else None


class Booking(BaseModel):
    booking_id: str = Field(default_factory=new_booking_id)
    client_id: str
    resource_id: str
    start_time: datetime
    end_time: datetime
    status: BookingStatus = BookingStatus.SCHEDULED
    notes: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("start_time", "end_time", "created_at", "updated_at")
    @classmethod
    def _normalize(cls, v: datetime) -> datetime:
        return to_utc(v)

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(start=self.start_time, end=self.end_time)

    @property
    def is_active(self) -> bool:
        # Completed bookings still hold their window
        return self.status != BookingStatus.CANCELLED
