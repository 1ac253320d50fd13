from __future__ import annotations

from .clock import utcnow
from .conflicts import find_conflicts
from .directory import EntityDirectory
from .errors import (
    InvalidTransition,
    ResourceUnavailable,
    UnknownClient,
    UnknownResource,
)
from .models import (
    TERMINAL_STATUSES,
    Booking,
    BookingCreate,
    BookingStatus,
    BookingUpdate,
    TimeWindow,
    new_booking_id,
)
from .store import BookingStore

_SLOT_FIELDS = ("start_time", "end_time", "resource_id")


class BookingManager:
    def __init__(
        self,
        store: BookingStore,
        clients: EntityDirectory,
        resources: EntityDirectory,
    ) -> None:
        self.store = store
        self.clients = clients
        self.resources = resources

    def create(self, payload: BookingCreate) -> Booking:
        window = TimeWindow.between(payload.start_time, payload.end_time)
        if not self.clients.exists(payload.client_id):
            raise UnknownClient(payload.client_id)
        if not self.resources.exists(payload.resource_id):
            raise UnknownResource(payload.resource_id)

        with self.store.resource_lock(payload.resource_id):
            self._ensure_available(payload.resource_id, window)
            booking = Booking(
                booking_id=new_booking_id(),
                client_id=payload.client_id,
                resource_id=payload.resource_id,
                start_time=window.start,
                end_time=window.end,
                notes=payload.notes,
            )
            return self.store.insert(booking)

    def update(self, booking_id: str, payload: BookingUpdate) -> Booking:
        """Apply a partial update, re-validating the calendar if the slot moves."""
        while True:
            current = self.store.get(booking_id)
            target_resource = payload.resource_id or current.resource_id
            with self.store.resource_lock(current.resource_id, target_resource):
                fresh = self.store.get(booking_id)
                if fresh.resource_id != current.resource_id:
                    # Moved to another doctor while we waited; lock the new pair
                    continue
                changes = self._plan_update(fresh, payload)
                if not changes:
                    return fresh
                return self.store.update(booking_id, lambda b: _apply(b, changes))

    def cancel(self, booking_id: str) -> Booking:
        """Release the booking's window. Cancelling twice is a no-op."""
        return self._transition(booking_id, BookingStatus.CANCELLED)

    def complete(self, booking_id: str) -> Booking:
        return self._transition(booking_id, BookingStatus.COMPLETED)

    def remove(self, booking_id: str) -> None:
        """Hard delete in any state; only shrinks the active set."""
        while True:
            current = self.store.get(booking_id)
            with self.store.resource_lock(current.resource_id):
                if self.store.get(booking_id).resource_id != current.resource_id:
                    continue
                self.store.remove(booking_id)
                return

    def get(self, booking_id: str) -> Booking:
        return self.store.get(booking_id)

    def list_all(self) -> list[Booking]:
        return self.store.list_all()

    def list_for_resource(self, resource_id: str) -> list[Booking]:
        return self.store.list_for_resource(resource_id)

    def list_for_client(self, client_id: str) -> list[Booking]:
        return self.store.list_for_client(client_id)

    def close(self) -> None:
        self.store.close()

    def _ensure_available(
        self, resource_id: str, window: TimeWindow, exclude_id: str | None = None
    ) -> None:
        conflicts = find_conflicts(self.store, resource_id, window, exclude_id)
        if conflicts:
            first = conflicts[0]
            raise ResourceUnavailable(resource_id, first.booking_id, first.window)

    def _plan_update(self, current: Booking, payload: BookingUpdate) -> dict:
        changes: dict = {}
        start = payload.start_time or current.start_time
        end = payload.end_time or current.end_time
        resource_id = payload.resource_id or current.resource_id

        moves = (
            payload.start_time is not None
            or payload.end_time is not None
            or payload.resource_id is not None
        )
        if moves:
            window = TimeWindow.between(start, end)
            slot_changed = window != current.window or resource_id != current.resource_id
            if slot_changed:
                if current.status in TERMINAL_STATUSES:
                    raise InvalidTransition(
                        current.booking_id, current.status, BookingStatus.SCHEDULED
                    )
                if resource_id != current.resource_id and not self.resources.exists(
                    resource_id
                ):
                    raise UnknownResource(resource_id)
                if payload.status != BookingStatus.CANCELLED:
                    self._ensure_available(resource_id, window, exclude_id=current.booking_id)
                changes.update(
                    start_time=window.start, end_time=window.end, resource_id=resource_id
                )

        if payload.status is not None:
            _check_transition(current, payload.status)
            if payload.status != current.status:
                changes["status"] = payload.status

        if "notes" in payload.model_fields_set and payload.notes != current.notes:
            changes["notes"] = payload.notes

        return changes

    def _transition(self, booking_id: str, target: BookingStatus) -> Booking:
        while True:
            booking = self.store.get(booking_id)
            with self.store.resource_lock(booking.resource_id):
                current = self.store.get(booking_id)
                if current.resource_id != booking.resource_id:
                    continue
                _check_transition(current, target)
                if current.status == target:
                    return current
                return self.store.update(booking_id, lambda b: _apply(b, {"status": target}))


def _check_transition(booking: Booking, target: BookingStatus) -> None:
    if booking.status == target:
        return
    if booking.status in TERMINAL_STATUSES:
        raise InvalidTransition(booking.booking_id, booking.status, target)


def _apply(booking: Booking, changes: dict) -> Booking:
    # Re-checked against the stored record, not the snapshot the changes were planned on
    moves = any(
        field in changes and changes[field] != getattr(booking, field) for field in _SLOT_FIELDS
    )
    if moves and booking.status in TERMINAL_STATUSES:
        raise InvalidTransition(booking.booking_id, booking.status, BookingStatus.SCHEDULED)
    if "status" in changes:
        _check_transition(booking, changes["status"])
    return booking.model_copy(update={**changes, "updated_at": utcnow()})
