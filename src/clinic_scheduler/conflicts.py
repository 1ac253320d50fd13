from __future__ import annotations

from .models import Booking, TimeWindow
from .store import BookingStore


def find_conflicts(
    store: BookingStore,
    resource_id: str,
    window: TimeWindow,
    exclude_id: str | None = None,
) -> list[Booking]:
    """Return active bookings on ``resource_id`` that overlap ``window``.

    Overlap rule: conflict if window.start < other.end AND other.start < window.end.
    Exact boundary touches (end == start) are NOT considered conflicts. Pass
    ``exclude_id`` when re-validating an existing booking so it is not compared
    against its own record.
    """
    return store.find_active_overlapping(resource_id, window, exclude_id=exclude_id)


def has_conflict(
    store: BookingStore,
    resource_id: str,
    window: TimeWindow,
    exclude_id: str | None = None,
) -> bool:
    return bool(find_conflicts(store, resource_id, window, exclude_id))
