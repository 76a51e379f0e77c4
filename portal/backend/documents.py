"""Document store: JSON documents in SQL rows, with live queries.

Layout:
  one ``document`` row per (collection, doc_id); payload is a JSON object.

Notes:
  - Writes are serialised; after each commit every live query on the touched
    collection is re-evaluated and, when its result set changed, its callback
    receives the full new result list before the write call returns.
  - ``SERVER_TIMESTAMP`` resolves to a store-assigned timestamp that strictly
    increases across writes.
  - Queries that filter on one field and order on another need a declared
    composite index (see ``PortalSettings.composite_indexes``); otherwise they
    raise ``FailedPreconditionError``, the way the hosted store does.
"""

from __future__ import annotations

import asyncio
import copy
import functools
import inspect
import logging
import operator
import secrets
import string
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models.document import StoredDocument
from .errors import FailedPreconditionError, InvalidArgumentError, NotFoundError

logger = logging.getLogger(__name__)

IN_QUERY_LIMIT = 10
_ID_ALPHABET = string.ascii_letters + string.digits
_TS_MARKER = "__ts__"
_OPERATORS = {
    "==", "!=", "<", "<=", ">", ">=",
    "in", "not-in", "array-contains", "array-contains-any",
}
_RANGE_OPS = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


class ArrayUnion:
    """Field transform: append each value not already present."""

    def __init__(self, *values: Any):
        self.values = list(values)


class ArrayRemove:
    """Field transform: drop every occurrence of each value."""

    def __init__(self, *values: Any):
        self.values = list(values)


def new_document_id() -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(20))


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return {_TS_MARKER: _as_utc(value).isoformat()}
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, dict):
        if len(value) == 1 and _TS_MARKER in value:
            return datetime.fromisoformat(value[_TS_MARKER])
        return {k: _decode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode(v) for v in value]
    return value


def _resolve(value: Any, now: datetime) -> Any:
    if value is SERVER_TIMESTAMP:
        return now
    if isinstance(value, dict):
        return {k: _resolve(v, now) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_resolve(v, now) for v in value]
    return value


def _apply_field(existing: Any, value: Any, now: datetime) -> Any:
    if isinstance(value, ArrayUnion):
        current = list(existing) if isinstance(existing, list) else []
        for item in _resolve(value.values, now):
            if item not in current:
                current.append(item)
        return current
    if isinstance(value, ArrayRemove):
        current = list(existing) if isinstance(existing, list) else []
        return [item for item in current if item not in value.values]
    return _resolve(value, now)


def _lookup(data: dict, field_path: str) -> tuple[bool, Any]:
    """Resolve a dotted field path. Returns (present, value)."""
    current: Any = data
    for part in field_path.split("."):
        if not isinstance(current, dict) or part not in current:
            return False, None
        current = current[part]
    return True, current


def _sort_value(value: Any) -> tuple[int, Any]:
    # Cross-type order: null < bool < number < timestamp < string < other.
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, datetime):
        return (3, _as_utc(value).timestamp())
    if isinstance(value, str):
        return (4, value)
    return (5, repr(value))


@dataclass(frozen=True)
class DocumentSnapshot:
    collection: str
    id: str
    data: dict

    def get(self, field_path: str, default: Any = None) -> Any:
        present, value = _lookup(self.data, field_path)
        return value if present else default

    def to_dict(self) -> dict:
        return {"id": self.id, **copy.deepcopy(self.data)}


@dataclass(frozen=True)
class FieldFilter:
    field: str
    op: str
    value: Any

    def matches(self, data: dict) -> bool:
        present, actual = _lookup(data, self.field)
        if not present:
            return False
        if self.op == "==":
            return actual == self.value
        if self.op == "!=":
            return actual != self.value
        if self.op in _RANGE_OPS:
            if actual is None:
                return False
            try:
                return _RANGE_OPS[self.op](actual, self.value)
            except TypeError:
                return False
        if self.op == "in":
            return actual in self.value
        if self.op == "not-in":
            return actual not in self.value
        if self.op == "array-contains":
            return isinstance(actual, list) and self.value in actual
        if self.op == "array-contains-any":
            return isinstance(actual, list) and any(v in actual for v in self.value)
        return False


@dataclass(frozen=True)
class Ordering:
    field: str
    descending: bool = False


def _compare_positions(
    a: tuple[tuple, str], b: tuple[tuple, str], orders: tuple[Ordering, ...]
) -> int:
    (a_values, a_id), (b_values, b_id) = a, b
    for order, a_value, b_value in zip(orders, a_values, b_values):
        ka, kb = _sort_value(a_value), _sort_value(b_value)
        if ka != kb:
            result = -1 if ka < kb else 1
            return -result if order.descending else result
    return (a_id > b_id) - (a_id < b_id)


@dataclass(frozen=True)
class Query:
    """Immutable query builder; every method returns a new query."""

    collection: str
    filters: tuple[FieldFilter, ...] = ()
    orders: tuple[Ordering, ...] = ()
    limit_count: int | None = None
    cursor: tuple[tuple, str] | None = None

    def where(self, field: str, op: str, value: Any) -> Query:
        if op not in _OPERATORS:
            raise InvalidArgumentError(f"Unsupported filter operator {op!r}")
        if op in ("in", "not-in", "array-contains-any"):
            value = tuple(value or ())
            if not value:
                raise InvalidArgumentError(f"'{op}' filters need at least one value")
            if len(value) > IN_QUERY_LIMIT:
                raise InvalidArgumentError(
                    f"'{op}' filters support at most {IN_QUERY_LIMIT} values (got {len(value)})"
                )
        return replace(self, filters=self.filters + (FieldFilter(field, op, value),))

    def order_by(self, field: str, descending: bool = False) -> Query:
        return replace(self, orders=self.orders + (Ordering(field, descending),))

    def limit(self, count: int) -> Query:
        if count <= 0:
            raise InvalidArgumentError("limit must be positive")
        return replace(self, limit_count=count)

    def start_after(self, snapshot: DocumentSnapshot) -> Query:
        if not self.orders:
            raise InvalidArgumentError("start_after requires an order_by clause")
        values = tuple(snapshot.get(o.field) for o in self.orders)
        return replace(self, cursor=(values, snapshot.id))

    def without_ordering(self) -> Query:
        """Same filters with no ordering, cursor or limit (for client-side sorting)."""
        return replace(self, orders=(), cursor=None, limit_count=None)

    @property
    def index_key(self) -> tuple[str, tuple[str, ...], tuple[str, ...]]:
        filter_fields = tuple(sorted({f.field for f in self.filters}))
        return (self.collection, filter_fields, tuple(o.field for o in self.orders))

    def needs_composite_index(self) -> bool:
        if not self.filters or not self.orders:
            return False
        fields = {f.field for f in self.filters} | {o.field for o in self.orders}
        return len(fields) > 1

    def run(self, docs: Iterable[DocumentSnapshot]) -> list[DocumentSnapshot]:
        """Evaluate this query against an in-memory list of snapshots."""
        results = [d for d in docs if all(f.matches(d.data) for f in self.filters)]
        # Ordering on a field excludes documents that do not have it.
        for order in self.orders:
            results = [d for d in results if _lookup(d.data, order.field)[0]]

        if self.orders:
            def position(doc: DocumentSnapshot) -> tuple[tuple, str]:
                return tuple(doc.get(o.field) for o in self.orders), doc.id

            results.sort(
                key=functools.cmp_to_key(
                    lambda a, b: _compare_positions(position(a), position(b), self.orders)
                )
            )
            if self.cursor is not None:
                results = [
                    d for d in results
                    if _compare_positions(position(d), self.cursor, self.orders) > 0
                ]
        else:
            results.sort(key=lambda d: d.id)

        if self.limit_count is not None:
            results = results[: self.limit_count]
        return results


SnapshotCallback = Callable[[list[DocumentSnapshot]], Any]
ErrorCallback = Callable[[Exception], Any]


@dataclass
class _Listener:
    query: Query
    callback: SnapshotCallback
    on_error: ErrorCallback | None
    last: list | None = None
    active: bool = True


class DocumentStore:
    """Collection-scoped CRUD, compound queries and live query listeners."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        indexes: Iterable[tuple[str, Iterable[str], Iterable[str]]] = (),
        enforce_indexes: bool = True,
        rules=None,
        auth_state: Callable[[], Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._session_factory = session_factory
        self._indexes = {
            (collection, tuple(sorted(filter_fields)), tuple(order_fields))
            for collection, filter_fields, order_fields in indexes
        }
        self._enforce_indexes = enforce_indexes
        self._rules = rules
        self._auth_state = auth_state or (lambda: None)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._last_timestamp: datetime | None = None
        self._listeners: dict[int, _Listener] = {}
        self._next_listener_id = 0
        self._lock = asyncio.Lock()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _server_now(self) -> datetime:
        now = _as_utc(self._clock())
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def _check_index(self, query: Query) -> None:
        if not self._enforce_indexes or not query.needs_composite_index():
            return
        if query.index_key in self._indexes:
            return
        collection, filter_fields, order_fields = query.index_key
        raise FailedPreconditionError(
            "The query requires an index: "
            f"{collection} filtered on {', '.join(filter_fields)} "
            f"ordered by {', '.join(order_fields)}"
        )

    def _check_rules(self, op: str, collection: str, doc_id: str, data: dict | None) -> None:
        if self._rules is None:
            return
        self._rules.check(op, collection, doc_id, data, self._auth_state())

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot | None:
        async with self._session_factory() as db:
            row = await db.get(StoredDocument, (collection, doc_id))
            if row is None:
                return None
            return DocumentSnapshot(collection, doc_id, _decode(row.data))

    async def get_docs(self, query: Query) -> list[DocumentSnapshot]:
        self._check_index(query)
        docs = await self._load_collection(query.collection)
        return query.run(docs)

    async def _load_collection(self, collection: str) -> list[DocumentSnapshot]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(StoredDocument).where(StoredDocument.collection == collection)
            )
            rows = list(result.scalars().all())
        return [DocumentSnapshot(collection, row.doc_id, _decode(row.data)) for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add(self, collection: str, data: dict) -> str:
        doc_id = new_document_id()
        await self._write(collection, doc_id, data, mode="create")
        return doc_id

    async def set(self, collection: str, doc_id: str, data: dict, *, merge: bool = False) -> None:
        await self._write(collection, doc_id, data, mode="merge" if merge else "set")

    async def update(self, collection: str, doc_id: str, data: dict) -> None:
        await self._write(collection, doc_id, data, mode="update")

    async def delete(self, collection: str, doc_id: str) -> None:
        """Delete a document; deleting a missing document is not an error."""
        async with self._lock:
            self._check_rules("delete", collection, doc_id, None)
            async with self._session_factory() as db:
                await db.execute(
                    delete(StoredDocument).where(
                        StoredDocument.collection == collection,
                        StoredDocument.doc_id == doc_id,
                    )
                )
                await db.commit()
            await self._broadcast(collection)

    async def _write(self, collection: str, doc_id: str, data: dict, *, mode: str) -> None:
        async with self._lock:
            async with self._session_factory() as db:
                row = await db.get(StoredDocument, (collection, doc_id))
                if mode == "update" and row is None:
                    raise NotFoundError(f"No document to update: {collection}/{doc_id}")

                existing = _decode(row.data) if row is not None else {}
                now = self._server_now()
                if mode in ("update", "merge"):
                    merged = copy.deepcopy(existing)
                    for key, value in data.items():
                        merged[key] = _apply_field(merged.get(key), value, now)
                else:
                    merged = {key: _apply_field(None, value, now) for key, value in data.items()}

                self._check_rules("create" if row is None else "update", collection, doc_id, merged)

                encoded = _encode(merged)
                if row is None:
                    db.add(StoredDocument(collection=collection, doc_id=doc_id, data=encoded))
                else:
                    row.data = encoded
                await db.commit()
            await self._broadcast(collection)

    # ------------------------------------------------------------------
    # Live queries
    # ------------------------------------------------------------------

    async def on_snapshot(
        self,
        query: Query,
        callback: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Callable[[], None]:
        """Register a live query and deliver its first snapshot.

        Returns an unsubscribe function. Callbacks run while the store holds
        its write lock, so they must not await writes on the same store.
        """
        self._check_index(query)

        listener_id = self._next_listener_id
        self._next_listener_id += 1
        listener = _Listener(query=query, callback=callback, on_error=on_error)
        self._listeners[listener_id] = listener

        async with self._lock:
            await self._deliver([listener], query.collection)

        def unsubscribe() -> None:
            listener.active = False
            self._listeners.pop(listener_id, None)

        return unsubscribe

    async def _broadcast(self, collection: str) -> None:
        listeners = [
            listener for listener in self._listeners.values()
            if listener.active and listener.query.collection == collection
        ]
        if listeners:
            await self._deliver(listeners, collection)

    async def _deliver(self, listeners: list[_Listener], collection: str) -> None:
        try:
            docs = await self._load_collection(collection)
        except Exception as exc:
            logger.exception("Live query reload failed for %s", collection)
            for listener in listeners:
                if listener.on_error is not None:
                    listener.on_error(exc)
            return

        for listener in listeners:
            if not listener.active:
                continue
            results = listener.query.run(docs)
            fingerprint = [(d.id, d.data) for d in results]
            if listener.last is not None and fingerprint == listener.last:
                continue
            listener.last = fingerprint
            try:
                outcome = listener.callback(results)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:
                logger.exception("Snapshot callback failed for %s", collection)
                if listener.on_error is not None:
                    listener.on_error(exc)
