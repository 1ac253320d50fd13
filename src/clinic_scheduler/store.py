from __future__ import annotations

import bisect
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Callable, Iterator
from contextlib import ExitStack, contextmanager
from datetime import datetime
from typing import ContextManager

from .errors import BookingNotFound, DuplicateIdentifier
from .models import Booking, TimeWindow

Mutator = Callable[[Booking], Booking]


class BookingStore(ABC):
    @abstractmethod
    def insert(self, booking: Booking) -> Booking:
        """Commit a new booking; ``DuplicateIdentifier`` if its id is taken."""

    @abstractmethod
    def get(self, booking_id: str) -> Booking:
        """Return the booking or raise ``BookingNotFound``."""

    @abstractmethod
    def find_active_overlapping(
        self, resource_id: str, window: TimeWindow, exclude_id: str | None = None
    ) -> list[Booking]:
        """Non-cancelled bookings on ``resource_id`` overlapping ``window``, by start."""

    @abstractmethod
    def update(self, booking_id: str, mutator: Mutator) -> Booking:
        """Apply ``mutator`` to the stored record and write the whole result back."""

    @abstractmethod
    def remove(self, booking_id: str) -> None: ...

    @abstractmethod
    def list_for_resource(self, resource_id: str) -> list[Booking]: ...

    @abstractmethod
    def list_for_client(self, client_id: str) -> list[Booking]: ...

    @abstractmethod
    def list_all(self) -> list[Booking]: ...

    @abstractmethod
    def resource_lock(self, *resource_ids: str) -> ContextManager[None]:
        """Hold the check-then-write lock for each resource id (sorted order)."""

    def close(self) -> None:  # noqa: B027 - optional hook
        pass


class InMemoryBookingStore(BookingStore):
    def __init__(self) -> None:
        self._store: dict[str, Booking] = {}
        # resource_id -> sorted [(start_time, booking_id)]
        self._by_resource: dict[str, list[tuple[datetime, str]]] = defaultdict(list)
        self._mutex = threading.Lock()
        self._locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def insert(self, booking: Booking) -> Booking:
        with self._mutex:
            if booking.booking_id in self._store:
                raise DuplicateIdentifier(booking.booking_id)
            self._store[booking.booking_id] = booking
            self._index(booking)
        return booking

    def get(self, booking_id: str) -> Booking:
        with self._mutex:
            booking = self._store.get(booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)
        return booking

    def find_active_overlapping(
        self, resource_id: str, window: TimeWindow, exclude_id: str | None = None
    ) -> list[Booking]:
        with self._mutex:
            entries = self._by_resource.get(resource_id, [])
            # Only bookings starting before the window ends can overlap it
            hi = bisect.bisect_left(entries, window.end, key=lambda e: e[0])
            candidates = [self._store[bid] for _, bid in entries[:hi]]
        return [
            b
            for b in candidates
            if b.is_active and b.booking_id != exclude_id and b.window.overlaps(window)
        ]

    def update(self, booking_id: str, mutator: Mutator) -> Booking:
        with self._mutex:
            current = self._store.get(booking_id)
            if current is None:
                raise BookingNotFound(booking_id)
            updated = mutator(current)
            self._unindex(current)
            self._store[booking_id] = updated
            self._index(updated)
        return updated

    def remove(self, booking_id: str) -> None:
        with self._mutex:
            booking = self._store.pop(booking_id, None)
            if booking is None:
                raise BookingNotFound(booking_id)
            self._unindex(booking)

    def list_for_resource(self, resource_id: str) -> list[Booking]:
        with self._mutex:
            return [self._store[bid] for _, bid in self._by_resource.get(resource_id, [])]

    def list_for_client(self, client_id: str) -> list[Booking]:
        with self._mutex:
            items = [b for b in self._store.values() if b.client_id == client_id]
        return sorted(items, key=lambda b: b.start_time)

    def list_all(self) -> list[Booking]:
        with self._mutex:
            items = list(self._store.values())
        return sorted(items, key=lambda b: b.start_time, reverse=True)

    @contextmanager
    def resource_lock(self, *resource_ids: str) -> Iterator[None]:
        with ExitStack() as stack:
            for resource_id in sorted(set(resource_ids)):
                with self._locks_guard:
                    lock = self._locks[resource_id]
                stack.enter_context(lock)
            yield

    def _index(self, booking: Booking) -> None:
        bisect.insort(
            self._by_resource[booking.resource_id], (booking.start_time, booking.booking_id)
        )

    def _unindex(self, booking: Booking) -> None:
        entries = self._by_resource[booking.resource_id]
        entries.remove((booking.start_time, booking.booking_id))
        if not entries:
            del self._by_resource[booking.resource_id]
