from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import TimeWindow

BOOKING_NOT_FOUND = "Booking not found"


class SchedulingError(Exception):
    code = "scheduling_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class InvalidWindow(SchedulingError):
    code = "invalid_window"

    def __init__(self, message: str = "End time must be after start time") -> None:
        super().__init__(message)


class UnknownClient(SchedulingError):
    code = "unknown_client"

    def __init__(self, client_id: str) -> None:
        super().__init__(f"Patient not found: {client_id}")
        self.client_id = client_id


class UnknownResource(SchedulingError):
    code = "unknown_resource"

    def __init__(self, resource_id: str) -> None:
        super().__init__(f"Doctor not found: {resource_id}")
        self.resource_id = resource_id


class ResourceUnavailable(SchedulingError):
    code = "resource_unavailable"

    def __init__(
        self,
        resource_id: str,
        conflicting_booking_id: str | None = None,
        conflicting_window: TimeWindow | None = None,
    ) -> None:
        super().__init__("Doctor is not available at this time")
        self.resource_id = resource_id
        self.conflicting_booking_id = conflicting_booking_id
        self.conflicting_window = conflicting_window


class BookingNotFound(SchedulingError, KeyError):
    code = "not_found"

    def __init__(self, booking_id: str) -> None:
        super().__init__(BOOKING_NOT_FOUND)
        self.booking_id = booking_id

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.message


class DuplicateIdentifier(SchedulingError):
    code = "duplicate_identifier"

    def __init__(self, booking_id: str) -> None:
        super().__init__(f"Booking identifier already in use: {booking_id}")
        self.booking_id = booking_id


class InvalidTransition(SchedulingError):
    code = "invalid_transition"

    def __init__(self, booking_id: str, current: str, requested: str) -> None:
        super().__init__(f"Cannot move booking from {current} to {requested}")
        self.booking_id = booking_id
        self.current = current
        self.requested = requested


class ResourceBusy(SchedulingError):
    code = "resource_busy"

    def __init__(self, resource_id: str) -> None:
        super().__init__(f"Doctor calendar is busy, try again: {resource_id}")
        self.resource_id = resource_id
