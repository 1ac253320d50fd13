from __future__ import annotations

import time
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, ContextManager, TypedDict, cast

import boto3
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    # Only for static type checking; not imported at runtime
    from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource
    from mypy_boto3_dynamodb.service_resource import Table as DynamoDBTable
else:
    # Fallbacks to satisfy annotations at runtime
    DynamoDBServiceResource = Any  # type: ignore[assignment]
    DynamoDBTable = Any  # type: ignore[assignment]

from .clock import dt_to_iso, iso_to_dt
from .config import Settings
from .errors import BookingNotFound, DuplicateIdentifier, ResourceBusy
from .models import Booking, BookingStatus, TimeWindow
from .store import BookingStore, Mutator

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"
TRANSACTION_CANCELED = "TransactionCanceledException"

# Bookings table: partition resource_id, sort booking_id.
# LSI start_time_index (resource_id, start_time) serves the overlap query with ConsistentRead.
# GSI client_id_index (client_id, start_time) serves patient listings.
# Each booking also has a pointer item (resource_id="BOOKING#<id>") naming its doctor,
# written in the same transaction so id lookups never depend on an index.
START_TIME_INDEX = "start_time_index"
CLIENT_ID_INDEX = "client_id_index"
POINTER_PREFIX = "BOOKING#"

_serializer = TypeSerializer()


class BookingItem(TypedDict, total=False):
    booking_id: str
    client_id: str
    resource_id: str
    start_time: str
    end_time: str
    status: str
    notes: str
    created_at: str
    updated_at: str


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class DynamoDBResourceLock:
    # A lease left behind by a crashed writer expires after lease_seconds
    def __init__(
        self,
        table: DynamoDBTable,
        lease_seconds: int = 10,
        wait_seconds: float = 5.0,
        retry_interval: float = 0.05,
    ) -> None:
        self._table = table
        self._lease_seconds = lease_seconds
        self._wait_seconds = wait_seconds
        self._retry_interval = retry_interval

    def acquire(self, resource_id: str) -> str:
        token = uuid.uuid4().hex
        deadline = time.monotonic() + self._wait_seconds
        while True:
            now = int(time.time())
            try:
                self._table.put_item(
                    Item={
                        "lock_id": resource_id,
                        "owner": token,
                        "expires_at": now + self._lease_seconds,
                    },
                    ConditionExpression="attribute_not_exists(lock_id) OR expires_at < :now",
                    ExpressionAttributeValues={":now": now},
                )
                return token
            except ClientError as exc:
                if _error_code(exc) != CONDITIONAL_CHECK_FAILED:
                    raise
            if time.monotonic() >= deadline:
                raise ResourceBusy(resource_id)
            time.sleep(self._retry_interval)

    def release(self, resource_id: str, token: str) -> None:
        try:
            self._table.delete_item(
                Key={"lock_id": resource_id},
                ConditionExpression="#o = :token",
                ExpressionAttributeNames={"#o": "owner"},
                ExpressionAttributeValues={":token": token},
            )
        except ClientError as exc:
            # Lease expired and another writer holds it now; nothing to release
            if _error_code(exc) != CONDITIONAL_CHECK_FAILED:
                raise

    @contextmanager
    def hold(self, *resource_ids: str) -> Iterator[None]:
        held: list[tuple[str, str]] = []
        try:
            for resource_id in sorted(set(resource_ids)):
                held.append((resource_id, self.acquire(resource_id)))
            yield
        finally:
            for resource_id, token in reversed(held):
                self.release(resource_id, token)


class DynamoDBBookingStore(BookingStore):
    def __init__(self, table: DynamoDBTable, lock: DynamoDBResourceLock) -> None:
        self._table = table
        self._lock = lock

    @classmethod
    def from_settings(
        cls, settings: Settings, dynamodb: DynamoDBServiceResource | None = None
    ) -> DynamoDBBookingStore:
        resource = dynamodb or boto3.resource("dynamodb")
        lock = DynamoDBResourceLock(
            resource.Table(settings.lock_table_name),
            lease_seconds=settings.lock_lease_seconds,
            wait_seconds=settings.lock_wait_seconds,
        )
        return cls(resource.Table(settings.table_name), lock)

    def insert(self, booking: Booking) -> Booking:
        failed = self._transact(
            booking.resource_id,
            [
                self._put(_to_item(booking), "attribute_not_exists(booking_id)"),
                self._put(_pointer_item(booking), "attribute_not_exists(booking_id)"),
            ],
        )
        if failed:
            raise DuplicateIdentifier(booking.booking_id)
        return booking

    def get(self, booking_id: str) -> Booking:
        resource_id = self._home_resource(booking_id)
        if resource_id is None:
            raise BookingNotFound(booking_id)
        resp = cast(
            dict[str, Any],
            self._table.get_item(
                Key={"resource_id": resource_id, "booking_id": booking_id},
                ConsistentRead=True,
            ),
        )
        item = resp.get("Item")
        if not isinstance(item, dict):
            raise BookingNotFound(booking_id)
        return _to_model(cast(BookingItem, item))

    def find_active_overlapping(
        self, resource_id: str, window: TimeWindow, exclude_id: str | None = None
    ) -> list[Booking]:
        # Bookings starting before the window ends, then those still running after it starts
        items = self._query_all(
            IndexName=START_TIME_INDEX,
            KeyConditionExpression="resource_id = :rid AND start_time < :end",
            FilterExpression="end_time > :start AND #s <> :cancelled",
            ExpressionAttributeNames={"#s": "status"},
            ExpressionAttributeValues={
                ":rid": resource_id,
                ":start": dt_to_iso(window.start),
                ":end": dt_to_iso(window.end),
                ":cancelled": BookingStatus.CANCELLED.value,
            },
            ConsistentRead=True,
        )
        bookings = [_to_model(it) for it in items if it.get("booking_id") != exclude_id]
        return sorted(bookings, key=lambda b: b.start_time)

    def update(self, booking_id: str, mutator: Mutator) -> Booking:
        current = self.get(booking_id)
        updated = mutator(current)
        if updated.resource_id == current.resource_id:
            try:
                self._table.put_item(
                    Item=_to_item(updated),  # type: ignore[arg-type]
                    ConditionExpression="attribute_exists(booking_id)",
                )
            except ClientError as exc:
                if _error_code(exc) == CONDITIONAL_CHECK_FAILED:
                    raise BookingNotFound(booking_id) from exc
                raise
            return updated

        # Moving to another doctor changes the primary key
        self._move(current, updated)
        return updated

    def remove(self, booking_id: str) -> None:
        current = self.get(booking_id)
        failed = self._transact(
            current.resource_id,
            [
                self._delete(current.resource_id, booking_id),
                self._delete(POINTER_PREFIX + booking_id, booking_id),
            ],
        )
        if failed:
            raise BookingNotFound(booking_id)

    def list_for_resource(self, resource_id: str) -> list[Booking]:
        items = self._query_all(
            IndexName=START_TIME_INDEX,
            KeyConditionExpression="resource_id = :rid",
            ExpressionAttributeValues={":rid": resource_id},
            ConsistentRead=True,
        )
        return sorted((_to_model(it) for it in items), key=lambda b: b.start_time)

    def list_for_client(self, client_id: str) -> list[Booking]:
        items = self._query_all(
            IndexName=CLIENT_ID_INDEX,
            KeyConditionExpression="client_id = :cid",
            ExpressionAttributeValues={":cid": client_id},
        )
        return sorted((_to_model(it) for it in items), key=lambda b: b.start_time)

    def list_all(self) -> list[Booking]:
        items: list[BookingItem] = []
        # Pointer items carry no client_id
        kwargs: dict[str, Any] = {"FilterExpression": "attribute_exists(client_id)"}
        while True:
            resp = cast(dict[str, Any], self._table.scan(**kwargs))
            raw_items = resp.get("Items", [])
            items.extend(cast(BookingItem, it) for it in raw_items if isinstance(it, dict))
            if "LastEvaluatedKey" not in resp:
                break
            kwargs["ExclusiveStartKey"] = resp["LastEvaluatedKey"]
        return sorted((_to_model(it) for it in items), key=lambda b: b.start_time, reverse=True)

    def resource_lock(self, *resource_ids: str) -> ContextManager[None]:
        return self._lock.hold(*resource_ids)

    def close(self) -> None:
        self._table.meta.client.close()

    def _home_resource(self, booking_id: str) -> str | None:
        resp = cast(
            dict[str, Any],
            self._table.get_item(
                Key={"resource_id": POINTER_PREFIX + booking_id, "booking_id": booking_id},
                ConsistentRead=True,
            ),
        )
        item = resp.get("Item")
        if not isinstance(item, dict):
            return None
        return cast(str, item["home_resource_id"])

    def _query_all(self, **kwargs: Any) -> list[BookingItem]:
        items: list[BookingItem] = []
        while True:
            resp = cast(dict[str, Any], self._table.query(**kwargs))
            raw_items = resp.get("Items", [])
            items.extend(cast(BookingItem, it) for it in raw_items if isinstance(it, dict))
            if "LastEvaluatedKey" not in resp:
                return items
            kwargs["ExclusiveStartKey"] = resp["LastEvaluatedKey"]

    def _move(self, current: Booking, updated: Booking) -> None:
        failed = self._transact(
            current.resource_id,
            [
                self._delete(current.resource_id, current.booking_id),
                self._put(_to_item(updated), "attribute_not_exists(booking_id)"),
                self._put(_pointer_item(updated), "attribute_exists(booking_id)"),
            ],
        )
        if 1 in failed:
            raise DuplicateIdentifier(current.booking_id)
        if failed:
            raise BookingNotFound(current.booking_id)

    def _transact(self, resource_id: str, actions: list[dict[str, Any]]) -> list[int]:
        """Write ``actions`` atomically and return the indexes whose condition failed."""
        try:
            self._table.meta.client.transact_write_items(TransactItems=actions)
        except ClientError as exc:
            if _error_code(exc) != TRANSACTION_CANCELED:
                raise
            reasons = exc.response.get("CancellationReasons", [])
            codes = [str(r.get("Code", "None")) for r in reasons]
            failed = [i for i, code in enumerate(codes) if code == "ConditionalCheckFailed"]
            # TransactionConflict or throttling: none of our conditions failed
            if not failed:
                raise ResourceBusy(resource_id) from exc
            return failed
        return []

    def _put(self, item: Mapping[str, object], condition: str) -> dict[str, Any]:
        return {
            "Put": {
                "TableName": self._table.name,
                "Item": {k: _serializer.serialize(v) for k, v in item.items()},
                "ConditionExpression": condition,
            }
        }

    def _delete(self, resource_id: str, booking_id: str) -> dict[str, Any]:
        return {
            "Delete": {
                "TableName": self._table.name,
                "Key": {
                    "resource_id": _serializer.serialize(resource_id),
                    "booking_id": _serializer.serialize(booking_id),
                },
                "ConditionExpression": "attribute_exists(booking_id)",
            }
        }


def _pointer_item(booking: Booking) -> dict[str, Any]:
    return {
        "resource_id": POINTER_PREFIX + booking.booking_id,
        "booking_id": booking.booking_id,
        "home_resource_id": booking.resource_id,
    }


def _to_item(booking: Booking) -> BookingItem:
    item: BookingItem = {
        "booking_id": booking.booking_id,
        "client_id": booking.client_id,
        "resource_id": booking.resource_id,
        "start_time": dt_to_iso(booking.start_time),
        "end_time": dt_to_iso(booking.end_time),
        "status": booking.status.value,
        "created_at": dt_to_iso(booking.created_at),
        "updated_at": dt_to_iso(booking.updated_at),
    }
    if booking.notes is not None:
        item["notes"] = booking.notes
    return item


def _to_model(item: BookingItem) -> Booking:
    return Booking(
        booking_id=item["booking_id"],
        client_id=item["client_id"],
        resource_id=item["resource_id"],
        start_time=iso_to_dt(item["start_time"]),
        end_time=iso_to_dt(item["end_time"]),
        status=BookingStatus(item.get("status", BookingStatus.SCHEDULED)),
        notes=item.get("notes"),
        created_at=iso_to_dt(item["created_at"]),
        updated_at=iso_to_dt(item["updated_at"]),
    )
