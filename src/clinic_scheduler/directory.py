from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any, Protocol, cast

if TYPE_CHECKING:
    from mypy_boto3_dynamodb.service_resource import Table as DynamoDBTable
else:
    DynamoDBTable = Any  # type: ignore[assignment]


class EntityDirectory(Protocol):
    def exists(self, entity_id: str) -> bool: ...


class OpenDirectory:
    # Accepts every id; used when no directory is configured for local runs
    def exists(self, entity_id: str) -> bool:
        return True


class InMemoryDirectory:
    def __init__(self, entity_ids: list[str] | None = None) -> None:
        self._ids: set[str] = set(entity_ids or [])
        self._lock = threading.Lock()

    def register(self, entity_id: str) -> None:
        with self._lock:
            self._ids.add(entity_id)

    def unregister(self, entity_id: str) -> None:
        with self._lock:
            self._ids.discard(entity_id)

    def exists(self, entity_id: str) -> bool:
        with self._lock:
            return entity_id in self._ids


class DynamoDBDirectory:
    """Looks entities up by primary key in a DynamoDB table."""

    def __init__(self, table: DynamoDBTable, key_name: str = "id") -> None:
        self._table = table
        self._key_name = key_name

    def exists(self, entity_id: str) -> bool:
        resp = cast(
            dict[str, Any],
            self._table.get_item(
                Key={self._key_name: entity_id},
                ProjectionExpression="#k",
                ExpressionAttributeNames={"#k": self._key_name},
            ),
        )
        return isinstance(resp.get("Item"), dict)
