"""Live query subscriptions that mirror document collections into state slices.

The adapter only reads from the document store. Every snapshot replaces its
destination slice; merged subscriptions combine several queries into one
slice by document id before sorting. A slice has at most one live writer:
opening a different query on a slice closes the one already feeding it.
Commands never write data slices themselves: live queries and one-shot
loads both land here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Sequence

from ..backend.documents import DocumentSnapshot, DocumentStore, Query
from ..backend.errors import FailedPreconditionError
from ..helpers import sort_by_effective_date
from ..state import StateStore

logger = logging.getLogger(__name__)

DEFAULT_DATE_FIELDS = ("createdAt", "submittedAt")

Unsubscribe = Callable[[], None]
RowTransform = Callable[[dict], dict]


def _freeze(value: Any) -> Any:
    if isinstance(value, (list, tuple, set)):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, dict):
        return tuple(sorted((k, _freeze(v)) for k, v in value.items()))
    return value


@dataclass(frozen=True)
class QuerySpec:
    """Collection query description: ``filters`` are ``(field, op, value)`` triples."""

    filters: tuple = ()
    order_by: str | None = None
    descending: bool = True
    limit: int | None = None

    def build(self, collection: str) -> Query:
        query = Query(collection)
        for field_path, op, value in self.filters:
            query = query.where(field_path, op, value)
        if self.order_by:
            query = query.order_by(self.order_by, descending=self.descending)
        if self.limit:
            query = query.limit(self.limit)
        return query

    @property
    def key(self) -> tuple:
        return (_freeze(self.filters), self.order_by, self.descending, self.limit)


def _rows(snapshots: Iterable[DocumentSnapshot], transform: RowTransform | None) -> list[dict]:
    rows = [snap.to_dict() for snap in snapshots]
    if transform is not None:
        rows = [transform(row) for row in rows]
    return rows


async def fetch_with_fallback(
    documents: DocumentStore,
    query: Query,
    *,
    date_fields: Sequence[str] = DEFAULT_DATE_FIELDS,
    descending: bool = True,
) -> list[dict]:
    """One-shot read with the same missing-index fallback as live queries."""
    try:
        return _rows(await documents.get_docs(query), None)
    except FailedPreconditionError as exc:
        logger.warning("Index missing for %s, sorting client-side: %s", query.collection, exc)
        rows = _rows(await documents.get_docs(query.without_ordering()), None)
        rows = sort_by_effective_date(rows, date_fields, descending=descending)
        return rows[: query.limit_count] if query.limit_count else rows


class SyncAdapter:
    def __init__(self, documents: DocumentStore, state: StateStore):
        self._documents = documents
        self._state = state
        self._subscriptions: dict[tuple, Unsubscribe] = {}
        self._by_slice: dict[str, Unsubscribe] = {}
        self._tracked: list[Unsubscribe] = []

    @property
    def subscription_keys(self) -> list[tuple]:
        return list(self._subscriptions)

    @property
    def tracked_count(self) -> int:
        return len(self._tracked)

    def track(self, unsubscribe: Unsubscribe) -> Unsubscribe:
        if unsubscribe not in self._tracked:
            self._tracked.append(unsubscribe)
        return unsubscribe

    def untrack(self, unsubscribe: Unsubscribe) -> None:
        if unsubscribe in self._tracked:
            self._tracked.remove(unsubscribe)

    async def fetch(
        self,
        query: Query,
        *,
        date_fields: Sequence[str] = DEFAULT_DATE_FIELDS,
        descending: bool = True,
    ) -> list[dict]:
        return await fetch_with_fallback(
            self._documents, query, date_fields=date_fields, descending=descending
        )

    def publish(self, slice_name: str, rows: list[dict]) -> None:
        """Replace a slice with the result of a one-shot read."""
        self._state.set(slice_name, rows)

    def teardown(self) -> None:
        """Call every tracked unsubscribe handle once, then forget them all."""
        handles, self._tracked = self._tracked, []
        for handle in handles:
            try:
                handle()
            except Exception:
                logger.exception("Unsubscribe handle failed during teardown")
        self._subscriptions.clear()
        self._by_slice.clear()
        logger.info("Tore down %d live subscriptions", len(handles))

    async def _open(
        self,
        query: Query,
        on_rows: Callable[[list[dict]], None],
        *,
        date_fields: Sequence[str],
        descending: bool,
        transform: RowTransform | None,
    ) -> Unsubscribe:
        def deliver(snapshots: list[DocumentSnapshot]) -> None:
            on_rows(_rows(snapshots, transform))

        def deliver_sorted(snapshots: list[DocumentSnapshot]) -> None:
            rows = sort_by_effective_date(_rows(snapshots, transform), date_fields, descending=descending)
            on_rows(rows[: query.limit_count] if query.limit_count else rows)

        def on_error(exc: Exception) -> None:
            logger.error("Live query on %s failed: %s", query.collection, exc)

        try:
            return await self._documents.on_snapshot(query, deliver, on_error)
        except FailedPreconditionError as exc:
            logger.warning(
                "Index missing for %s, re-subscribing without ordering: %s", query.collection, exc
            )
            return await self._documents.on_snapshot(
                query.without_ordering(), deliver_sorted, on_error
            )

    def _release(self, slice_name: str) -> None:
        """Close the live query currently writing ``slice_name``, if any."""
        previous = self._by_slice.get(slice_name)
        if previous is not None:
            logger.info("Replacing live query on slice %s", slice_name)
            previous()

    def _register(self, key: tuple, slice_name: str, closers: list[Unsubscribe]) -> Unsubscribe:
        closed = False

        def unsubscribe() -> None:
            nonlocal closed
            if closed:
                return
            closed = True
            for close in closers:
                close()
            if self._subscriptions.get(key) is unsubscribe:
                del self._subscriptions[key]
            if self._by_slice.get(slice_name) is unsubscribe:
                del self._by_slice[slice_name]
            self.untrack(unsubscribe)

        self._subscriptions[key] = unsubscribe
        self._by_slice[slice_name] = unsubscribe
        return self.track(unsubscribe)

    async def subscribe_to_collection(
        self,
        collection: str,
        *,
        filters: Sequence[tuple[str, str, Any]] = (),
        order_by: str | None = None,
        descending: bool = True,
        limit: int | None = None,
        slice_name: str | None = None,
        date_fields: Sequence[str] = DEFAULT_DATE_FIELDS,
        transform: RowTransform | None = None,
    ) -> Unsubscribe:
        """Mirror one live query into ``slice_name`` (defaults to the collection name).

        A second call for the same collection, filters and slice returns the
        existing unsubscribe handle without opening another query.
        """
        slice_name = slice_name or collection
        spec = QuerySpec(tuple(filters), order_by, descending, limit)
        key = ("collection", collection, _freeze(spec.filters), slice_name)
        if key in self._subscriptions:
            return self._subscriptions[key]
        self._release(slice_name)

        def write(rows: list[dict]) -> None:
            self._state.set(slice_name, rows)

        close = await self._open(
            spec.build(collection),
            write,
            date_fields=date_fields,
            descending=descending,
            transform=transform,
        )
        return self._register(key, slice_name, [close])

    async def subscribe_merged(
        self,
        slice_name: str,
        collection: str,
        specs: Sequence[QuerySpec],
        *,
        date_fields: Sequence[str] = DEFAULT_DATE_FIELDS,
        transform: RowTransform | None = None,
    ) -> Unsubscribe:
        """Mirror several live queries into one slice, merged by document id.

        On every snapshot the latest results of all queries are combined in
        query order (a later query's copy of a document wins) and sorted
        newest first by the ``date_fields`` chain.
        """
        key = ("merged", collection, tuple(spec.key for spec in specs), slice_name)
        if key in self._subscriptions:
            return self._subscriptions[key]
        self._release(slice_name)

        results: list[list[dict]] = [[] for _ in specs]

        def publish() -> None:
            merged: dict[str, dict] = {}
            for rows in results:
                for row in rows:
                    merged[row["id"]] = row
            self._state.set(
                slice_name, sort_by_effective_date(merged.values(), date_fields, descending=True)
            )

        closers: list[Unsubscribe] = []
        try:
            for index, spec in enumerate(specs):
                def write(rows: list[dict], index: int = index) -> None:
                    results[index] = rows
                    publish()

                closers.append(
                    await self._open(
                        spec.build(collection),
                        write,
                        date_fields=date_fields,
                        descending=True,
                        transform=transform,
                    )
                )
        except Exception:
            for close in closers:
                close()
            raise

        if not specs:
            publish()
        return self._register(key, slice_name, closers)
