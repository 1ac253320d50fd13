from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import pytest
from boto3.dynamodb.types import TypeDeserializer
from botocore.exceptions import ClientError

from clinic_scheduler.config import Settings
from clinic_scheduler.dal import DynamoDBBookingStore, DynamoDBResourceLock
from clinic_scheduler.directory import InMemoryDirectory
from clinic_scheduler.errors import (
    BookingNotFound,
    DuplicateIdentifier,
    ResourceBusy,
    ResourceUnavailable,
)
from clinic_scheduler.lifecycle import BookingManager
from clinic_scheduler.models import Booking, BookingCreate, BookingStatus, BookingUpdate, TimeWindow

START = datetime(2030, 1, 1, 12, 0, tzinfo=UTC)


def conditional_failure(op: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "failed"}}, op
    )


def transaction_canceled(codes: list[str]) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": "TransactionCanceledException", "Message": "canceled"},
            "CancellationReasons": [{"Code": code} for code in codes],
        },
        "TransactWriteItems",
    )


class FakeClient:
    def __init__(self, table: FakeBookingsTable) -> None:
        self._table = table
        self._deserializer = TypeDeserializer()
        self.closed = False
        # Cancellation code to raise on the next transaction, e.g. "TransactionConflict"
        self.fail_next: str | None = None

    def transact_write_items(self, TransactItems):  # noqa NOSONAR
        if self.fail_next is not None:
            code, self.fail_next = self.fail_next, None
            raise transaction_canceled([code] + ["None"] * (len(TransactItems) - 1))

        with self._table.guard:
            writes: list[tuple[str, dict[str, Any]]] = []
            codes = []
            for action in TransactItems:
                kind, body = next(iter(action.items()))
                raw = body["Item"] if kind == "Put" else body["Key"]
                item = {k: self._deserializer.deserialize(v) for k, v in raw.items()}
                exists = self._table.key_of(item) in self._table.items
                condition = body.get("ConditionExpression")
                if condition == "attribute_not_exists(booking_id)":
                    ok = not exists
                elif condition == "attribute_exists(booking_id)":
                    ok = exists
                else:
                    ok = True
                codes.append("None" if ok else "ConditionalCheckFailed")
                writes.append((kind, item))
            if any(code != "None" for code in codes):
                raise transaction_canceled(codes)
            for kind, item in writes:
                if kind == "Put":
                    self._table.items[self._table.key_of(item)] = item
                else:
                    del self._table.items[self._table.key_of(item)]

    def close(self) -> None:
        self.closed = True


class FakeBookingsTable:
    """Enough of a DynamoDB Table for the bookings store: one partition per doctor."""

    name = "bookings"

    def __init__(self, page_size: int = 2) -> None:
        self.items: dict[tuple[str, str], dict[str, Any]] = {}
        self.page_size = page_size
        self.queries: list[dict[str, Any]] = []
        self.guard = threading.RLock()
        self.meta = SimpleNamespace(client=FakeClient(self))

    @staticmethod
    def key_of(item: dict[str, Any]) -> tuple[str, str]:
        return item["resource_id"], item["booking_id"]

    def put_item(self, Item, ConditionExpression=None):  # noqa NOSONAR
        with self.guard:
            exists = self.key_of(Item) in self.items
            if ConditionExpression == "attribute_not_exists(booking_id)" and exists:
                raise conditional_failure("PutItem")
            if ConditionExpression == "attribute_exists(booking_id)" and not exists:
                raise conditional_failure("PutItem")
            self.items[self.key_of(Item)] = dict(Item)

    def get_item(self, Key, ConsistentRead=False):  # noqa NOSONAR
        with self.guard:
            item = self.items.get(self.key_of(Key))
        return {"Item": dict(item)} if item else {}

    def query(self, **kwargs):
        self.queries.append(kwargs)
        values = kwargs["ExpressionAttributeValues"]
        index = kwargs.get("IndexName")
        with self.guard:
            items = list(self.items.values())
        if index == "start_time_index":
            # Local secondary index: only items carrying start_time, in start order
            matched = sorted(
                (
                    it
                    for it in items
                    if it["resource_id"] == values[":rid"]
                    and "start_time" in it
                    and (":end" not in values or it["start_time"] < values[":end"])
                ),
                key=lambda it: it["start_time"],
            )
            if kwargs.get("FilterExpression"):
                matched = [
                    it
                    for it in matched
                    if it["end_time"] > values[":start"] and it["status"] != values[":cancelled"]
                ]
        elif index == "client_id_index":
            matched = [it for it in items if it.get("client_id") == values[":cid"]]
        else:
            raise AssertionError(f"unexpected query: {kwargs}")
        return self._page(matched, kwargs.get("ExclusiveStartKey"))

    def scan(self, **kwargs):
        with self.guard:
            items = list(self.items.values())
        if kwargs.get("FilterExpression") == "attribute_exists(client_id)":
            items = [it for it in items if "client_id" in it]
        return self._page(items, kwargs.get("ExclusiveStartKey"))

    def _page(self, matched: list[dict[str, Any]], start_key: dict | None) -> dict[str, Any]:
        offset = start_key["offset"] if start_key else 0
        page = matched[offset : offset + self.page_size]
        resp: dict[str, Any] = {"Items": [dict(it) for it in page]}
        if offset + self.page_size < len(matched):
            resp["LastEvaluatedKey"] = {"offset": offset + self.page_size}
        return resp


class FakeLockTable:
    def __init__(self) -> None:
        self.items: dict[str, dict[str, Any]] = {}
        self._guard = threading.Lock()

    def put_item(self, Item, ConditionExpression, ExpressionAttributeValues):  # noqa NOSONAR
        with self._guard:
            current = self.items.get(Item["lock_id"])
            if current is not None and current["expires_at"] >= ExpressionAttributeValues[":now"]:
                raise conditional_failure("PutItem")
            self.items[Item["lock_id"]] = dict(Item)

    def delete_item(self, Key, ConditionExpression, ExpressionAttributeNames, ExpressionAttributeValues):  # noqa NOSONAR
        with self._guard:
            current = self.items.get(Key["lock_id"])
            if current is None or current["owner"] != ExpressionAttributeValues[":token"]:
                raise conditional_failure("DeleteItem")
            del self.items[Key["lock_id"]]


@pytest.fixture()
def table() -> FakeBookingsTable:
    return FakeBookingsTable()


@pytest.fixture()
def locks() -> FakeLockTable:
    return FakeLockTable()


@pytest.fixture()
def store(table: FakeBookingsTable, locks: FakeLockTable) -> DynamoDBBookingStore:
    lock = DynamoDBResourceLock(locks, lease_seconds=10, wait_seconds=0.2, retry_interval=0.01)
    return DynamoDBBookingStore(table, lock)


def booking_factory(hours: int = 0, **overrides: Any) -> Booking:
    base = dict(
        client_id="u1",
        resource_id="r1",
        start_time=START + timedelta(hours=hours),
        end_time=START + timedelta(hours=hours + 1),
    )
    base.update(overrides)
    return Booking(**base)


def test_insert_and_get_booking(store: DynamoDBBookingStore, table: FakeBookingsTable) -> None:
    booking = store.insert(booking_factory(notes="follow-up"))
    fetched = store.get(booking.booking_id)
    assert fetched == booking
    stored = table.items[("r1", booking.booking_id)]
    assert stored["status"] == "scheduled"
    assert stored["start_time"] == "2030-01-01T12:00:00.000000+00:00"
    pointer = table.items[("BOOKING#" + booking.booking_id, booking.booking_id)]
    assert pointer == {
        "resource_id": "BOOKING#" + booking.booking_id,
        "booking_id": booking.booking_id,
        "home_resource_id": "r1",
    }


def test_notes_are_omitted_when_empty(store: DynamoDBBookingStore, table: FakeBookingsTable) -> None:
    booking = store.insert(booking_factory())
    assert "notes" not in table.items[("r1", booking.booking_id)]
    assert store.get(booking.booking_id).notes is None


def test_get_booking_not_found_raises_keyerror(store: DynamoDBBookingStore) -> None:
    with pytest.raises(KeyError):
        store.get("does-not-exist")


def test_insert_duplicate_identifier(store: DynamoDBBookingStore) -> None:
    b = store.insert(booking_factory())
    with pytest.raises(DuplicateIdentifier):
        store.insert(booking_factory(hours=5, booking_id=b.booking_id))
    with pytest.raises(DuplicateIdentifier):
        store.insert(booking_factory(hours=5, booking_id=b.booking_id, resource_id="r2"))


def test_find_active_overlapping(store: DynamoDBBookingStore) -> None:
    early = store.insert(booking_factory(hours=0))
    store.insert(booking_factory(hours=1))  # starts as the window ends
    store.insert(booking_factory(hours=-1, status=BookingStatus.CANCELLED))
    store.insert(booking_factory(hours=0, resource_id="r2"))
    window = TimeWindow.between(START - timedelta(minutes=30), START + timedelta(hours=1))
    hits = store.find_active_overlapping("r1", window)
    assert [b.booking_id for b in hits] == [early.booking_id]
    assert store.find_active_overlapping("r1", window, exclude_id=early.booking_id) == []


def test_overlap_query_reads_only_bookings_starting_before_window_end(
    store: DynamoDBBookingStore, table: FakeBookingsTable
) -> None:
    for h in range(6):
        store.insert(booking_factory(hours=h))
    table.queries.clear()
    window = TimeWindow.between(START, START + timedelta(minutes=30))
    assert len(store.find_active_overlapping("r1", window)) == 1
    (query,) = table.queries
    assert query["IndexName"] == "start_time_index"
    assert query["KeyConditionExpression"] == "resource_id = :rid AND start_time < :end"
    assert query["ConsistentRead"] is True


def test_update_in_place(store: DynamoDBBookingStore) -> None:
    b = store.insert(booking_factory())
    updated = store.update(b.booking_id, lambda cur: cur.model_copy(update={"notes": "late"}))
    assert updated.notes == "late"
    assert store.get(b.booking_id).notes == "late"


def test_update_moving_doctor_rewrites_key(
    store: DynamoDBBookingStore, table: FakeBookingsTable
) -> None:
    b = store.insert(booking_factory())
    moved = store.update(b.booking_id, lambda cur: cur.model_copy(update={"resource_id": "r-new"}))
    assert moved.resource_id == "r-new"
    assert ("r1", b.booking_id) not in table.items
    assert store.get(b.booking_id).resource_id == "r-new"
    assert store.list_for_resource("r1") == []


def test_update_missing_raises(store: DynamoDBBookingStore) -> None:
    with pytest.raises(BookingNotFound):
        store.update("missing", lambda cur: cur)


def test_remove_then_get_raises(store: DynamoDBBookingStore) -> None:
    b = store.insert(booking_factory())
    store.remove(b.booking_id)
    with pytest.raises(BookingNotFound):
        store.get(b.booking_id)
    with pytest.raises(BookingNotFound):
        store.remove(b.booking_id)


def test_remove_deletes_booking_and_pointer(
    store: DynamoDBBookingStore, table: FakeBookingsTable
) -> None:
    b = store.insert(booking_factory())
    store.update(b.booking_id, lambda cur: cur.model_copy(update={"resource_id": "r2"}))
    store.remove(b.booking_id)
    assert table.items == {}


def test_move_onto_existing_key_is_duplicate(
    store: DynamoDBBookingStore, table: FakeBookingsTable
) -> None:
    b = store.insert(booking_factory())
    table.items[("r2", b.booking_id)] = {"resource_id": "r2", "booking_id": b.booking_id}
    with pytest.raises(DuplicateIdentifier):
        store.update(b.booking_id, lambda cur: cur.model_copy(update={"resource_id": "r2"}))
    assert store.get(b.booking_id).resource_id == "r1"


@pytest.mark.parametrize("code", ["TransactionConflict", "ThrottlingError"])
def test_move_conflict_is_resource_busy(
    store: DynamoDBBookingStore, table: FakeBookingsTable, code: str
) -> None:
    b = store.insert(booking_factory())
    table.meta.client.fail_next = code
    with pytest.raises(ResourceBusy):
        store.update(b.booking_id, lambda cur: cur.model_copy(update={"resource_id": "r2"}))
    assert store.get(b.booking_id).resource_id == "r1"
    assert ("r2", b.booking_id) not in table.items


def test_insert_conflict_is_resource_busy(
    store: DynamoDBBookingStore, table: FakeBookingsTable
) -> None:
    table.meta.client.fail_next = "TransactionConflict"
    with pytest.raises(ResourceBusy):
        store.insert(booking_factory())
    assert table.items == {}


def test_unexpected_transaction_errors_propagate(
    store: DynamoDBBookingStore, table: FakeBookingsTable
) -> None:
    table.meta.client.transact_write_items = MagicMock(
        side_effect=ClientError(
            {"Error": {"Code": "ValidationException", "Message": "bad"}}, "TransactWriteItems"
        )
    )
    with pytest.raises(ClientError):
        store.insert(booking_factory())


def test_listings_follow_pagination(store: DynamoDBBookingStore) -> None:
    ids = [store.insert(booking_factory(hours=h)).booking_id for h in (3, 0, 2, 1, 4)]
    store.insert(booking_factory(hours=9, client_id="u2", resource_id="r2"))

    by_resource = [b.booking_id for b in store.list_for_resource("r1")]
    assert by_resource == [ids[1], ids[3], ids[2], ids[0], ids[4]]
    assert [b.booking_id for b in store.list_for_client("u1")] == by_resource
    everything = store.list_all()
    assert len(everything) == 6
    assert everything[0].client_id == "u2"


def test_close_closes_client(store: DynamoDBBookingStore, table: FakeBookingsTable) -> None:
    store.close()
    assert table.meta.client.closed


def test_from_settings_uses_configured_tables() -> None:
    dynamodb = MagicMock()
    settings = Settings(table_name="t-bookings", lock_table_name="t-locks")
    DynamoDBBookingStore.from_settings(settings, dynamodb)
    names = [c.args[0] for c in dynamodb.Table.call_args_list]
    assert names == ["t-locks", "t-bookings"]


def test_lock_is_released_after_block(store: DynamoDBBookingStore, locks: FakeLockTable) -> None:
    with store.resource_lock("r2", "r1"):
        assert set(locks.items) == {"r1", "r2"}
    assert locks.items == {}


def test_lock_is_released_on_error(store: DynamoDBBookingStore, locks: FakeLockTable) -> None:
    with pytest.raises(RuntimeError):
        with store.resource_lock("r1"):
            raise RuntimeError("boom")
    assert locks.items == {}


def test_held_lock_times_out_with_resource_busy(locks: FakeLockTable) -> None:
    lock = DynamoDBResourceLock(locks, lease_seconds=60, wait_seconds=0.05, retry_interval=0.01)
    token = lock.acquire("r1")
    with pytest.raises(ResourceBusy):
        lock.acquire("r1")
    lock.release("r1", token)
    lock.release("r1", lock.acquire("r1"))


def test_expired_lease_can_be_taken_over(locks: FakeLockTable) -> None:
    locks.items["r1"] = {"lock_id": "r1", "owner": "crashed", "expires_at": int(time.time()) - 5}
    lock = DynamoDBResourceLock(locks, wait_seconds=0)
    token = lock.acquire("r1")
    assert locks.items["r1"]["owner"] == token


def test_release_after_takeover_leaves_new_owner(locks: FakeLockTable) -> None:
    lock = DynamoDBResourceLock(locks)
    stale = lock.acquire("r1")
    locks.items["r1"]["owner"] = "someone-else"
    lock.release("r1", stale)
    assert locks.items["r1"]["owner"] == "someone-else"


def test_unexpected_lock_errors_propagate() -> None:
    table = MagicMock()
    table.put_item.side_effect = ClientError(
        {"Error": {"Code": "ProvisionedThroughputExceededException", "Message": "slow"}},
        "PutItem",
    )
    with pytest.raises(ClientError):
        DynamoDBResourceLock(table).acquire("r1")


def test_manager_rejects_overlap_and_allows_reschedule(store: DynamoDBBookingStore) -> None:
    manager = BookingManager(store, InMemoryDirectory(["u1"]), InMemoryDirectory(["r1"]))
    a = manager.create(
        BookingCreate(client_id="u1", resource_id="r1", start_time=START, end_time=START + timedelta(hours=1))
    )
    with pytest.raises(ResourceUnavailable):
        manager.create(
            BookingCreate(
                client_id="u1",
                resource_id="r1",
                start_time=START + timedelta(minutes=45),
                end_time=START + timedelta(minutes=75),
            )
        )
    moved = manager.update(
        a.booking_id,
        BookingUpdate(start_time=START + timedelta(minutes=15), end_time=START + timedelta(minutes=75)),
    )
    assert moved.start_time == START + timedelta(minutes=15)
    assert manager.cancel(a.booking_id).status == BookingStatus.CANCELLED


class LaggingIndexTable(FakeBookingsTable):
    """Global secondary index queries answer from a frozen snapshot of the table."""

    def __init__(self) -> None:
        super().__init__()
        self.snapshot: list[dict[str, Any]] | None = None

    def query(self, **kwargs):
        if kwargs.get("IndexName") == "client_id_index" and self.snapshot is not None:
            self.queries.append(kwargs)
            values = kwargs["ExpressionAttributeValues"]
            return self._page(
                [it for it in self.snapshot if it.get("client_id") == values[":cid"]],
                kwargs.get("ExclusiveStartKey"),
            )
        return super().query(**kwargs)


def test_moved_booking_is_found_while_global_index_lags(locks: FakeLockTable) -> None:
    table = LaggingIndexTable()
    lock = DynamoDBResourceLock(locks, wait_seconds=0.2, retry_interval=0.01)
    manager = BookingManager(
        DynamoDBBookingStore(table, lock),
        InMemoryDirectory(["u1"]),
        InMemoryDirectory(["r1", "r2"]),
    )
    a = manager.create(
        BookingCreate(client_id="u1", resource_id="r1", start_time=START, end_time=START + timedelta(hours=1))
    )
    table.snapshot = [dict(it) for it in table.items.values()]
    manager.update(a.booking_id, BookingUpdate(resource_id="r2"))

    assert manager.get(a.booking_id).resource_id == "r2"
    assert manager.update(a.booking_id, BookingUpdate(notes="moved")).notes == "moved"
    assert manager.complete(a.booking_id).status == BookingStatus.COMPLETED
    manager.remove(a.booking_id)
    with pytest.raises(BookingNotFound):
        manager.get(a.booking_id)
    # Only patient listings go through the lagging index
    assert {q.get("IndexName") for q in table.queries} <= {"start_time_index", "client_id_index"}


class SlowOverlapTable(FakeBookingsTable):
    """Widens the gap between the overlap check and the write."""

    def query(self, **kwargs):
        resp = super().query(**kwargs)
        if kwargs.get("FilterExpression"):
            time.sleep(0.05)
        return resp


def test_concurrent_creates_on_dynamodb_admit_exactly_one(locks: FakeLockTable) -> None:
    table = SlowOverlapTable()
    lock = DynamoDBResourceLock(locks, wait_seconds=2, retry_interval=0.005)
    manager = BookingManager(
        DynamoDBBookingStore(table, lock), InMemoryDirectory(["u1", "u2"]), InMemoryDirectory(["r1"])
    )
    barrier = threading.Barrier(2)

    def attempt(client_id: str, offset: int) -> str:
        barrier.wait()
        try:
            manager.create(
                BookingCreate(
                    client_id=client_id,
                    resource_id="r1",
                    start_time=START + timedelta(minutes=offset),
                    end_time=START + timedelta(minutes=offset + 60),
                )
            )
            return "ok"
        except ResourceUnavailable:
            return "conflict"

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(attempt, ["u1", "u2"], [0, 30]))

    assert sorted(results) == ["conflict", "ok"]
    assert len(manager.list_for_resource("r1")) == 1
    assert locks.items == {}
