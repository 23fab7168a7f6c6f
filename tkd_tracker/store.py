"""
Table-addressed access to the relational store.

The ranking core reads and writes rows by table name through ``DataStore``
rather than through ORM objects, so every read hits the database and never a
session-cached instance. Writes are announced on an optional ``ChangeFeed``
that diagnostic monitors subscribe to.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import Table, delete, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from tkd_tracker.database import Base
from tkd_tracker.errors import ConflictError, ValidationError

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
Filter = Mapping[str, Any]


@dataclass(frozen=True)
class Change:
    table: str
    op: str  # insert, update, delete
    row: Row


@dataclass
class _Subscription:
    table: str
    match: Filter
    callback: Callable[[Change], None]
    active: bool = field(default=True)


class ChangeFeed:
    """In-process change notifications keyed by table name and column filter."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[_Subscription]] = defaultdict(list)

    def subscribe(
        self, table: str, callback: Callable[[Change], None], match: Optional[Filter] = None
    ) -> Callable[[], None]:
        sub = _Subscription(table=table, match=dict(match or {}), callback=callback)
        self._subscriptions[table].append(sub)

        def unsubscribe() -> None:
            sub.active = False
            if sub in self._subscriptions.get(table, []):
                self._subscriptions[table].remove(sub)

        return unsubscribe

    def publish(self, change: Change) -> None:
        for sub in list(self._subscriptions.get(change.table, [])):
            if not sub.active:
                continue
            if all(change.row.get(k) == v for k, v in sub.match.items()):
                sub.callback(change)


def _where(table: Table, filters: Optional[Filter]) -> list:
    conditions = []
    for column_name, value in (filters or {}).items():
        column = table.c[column_name]
        if isinstance(value, (list, tuple, set, frozenset)):
            conditions.append(column.in_(list(value)))
        elif value is None:
            conditions.append(column.is_(None))
        else:
            conditions.append(column == value)
    return conditions


class DataStore:
    def __init__(self, db: Session, feed: Optional[ChangeFeed] = None) -> None:
        self.db = db
        self.feed = feed

    def table(self, name: str) -> Table:
        try:
            return Base.metadata.tables[name]
        except KeyError:
            raise ValidationError(f"Unknown table {name!r}", {"table": name}) from None

    def select(
        self,
        table_name: str,
        filters: Optional[Filter] = None,
        order_by: Iterable[str] = ("id",),
    ) -> List[Row]:
        table = self.table(table_name)
        query = select(table).where(*_where(table, filters))
        query = query.order_by(*(table.c[name] for name in order_by))
        return [dict(row) for row in self.db.execute(query).mappings().all()]

    def select_one(self, table_name: str, filters: Filter) -> Optional[Row]:
        rows = self.select(table_name, filters)
        return rows[0] if rows else None

    def insert(self, table_name: str, rows: Iterable[Mapping[str, Any]]) -> List[Row]:
        table = self.table(table_name)
        inserted: List[Row] = []
        for values in rows:
            result = self.db.execute(insert(table).values(**values).returning(*table.c))
            row = dict(result.mappings().one())
            inserted.append(row)
            self._publish(table_name, "insert", row)
        return inserted

    def update(self, table_name: str, patch: Mapping[str, Any], filters: Filter) -> List[Row]:
        if not filters:
            raise ValidationError("Refusing to update without a filter", {"table": table_name})
        table = self.table(table_name)
        result = self.db.execute(
            update(table).where(*_where(table, filters)).values(**patch).returning(*table.c)
        )
        rows = [dict(row) for row in result.mappings().all()]
        for row in rows:
            self._publish(table_name, "update", row)
        return rows

    def delete(self, table_name: str, filters: Filter) -> List[Row]:
        if not filters:
            raise ValidationError("Refusing to delete without a filter", {"table": table_name})
        table = self.table(table_name)
        result = self.db.execute(delete(table).where(*_where(table, filters)).returning(*table.c))
        rows = [dict(row) for row in result.mappings().all()]
        for row in rows:
            self._publish(table_name, "delete", row)
        return rows

    def insert_or_fetch(
        self, table_name: str, values: Mapping[str, Any], conflict_columns: Iterable[str]
    ) -> tuple[Row, bool]:
        """
        Insert a row unless one already exists for ``conflict_columns``.

        A single ``INSERT ... ON CONFLICT DO NOTHING`` decides the winner, so two
        concurrent callers can never both create the row. Returns the stored
        row and whether this call created it.
        """
        table = self.table(table_name)
        keys = list(conflict_columns)
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(table)
        elif dialect == "sqlite":
            stmt = sqlite.insert(table)
        else:
            raise ConflictError(
                f"Atomic insert-or-fetch is not supported on {dialect}",
                {"table": table_name, "dialect": dialect},
            )
        stmt = stmt.values(**values).on_conflict_do_nothing(index_elements=keys).returning(*table.c)
        created = self.db.execute(stmt).mappings().first()
        if created is not None:
            row = dict(created)
            self._publish(table_name, "insert", row)
            return row, True

        existing = self.select_one(table_name, {k: values[k] for k in keys})
        logger.debug("insert_or_fetch on %s hit an existing row: %s", table_name, existing)
        if existing is None:
            raise ConflictError(
                f"Conflicting {table_name} row vanished before it could be read",
                {"table": table_name, "keys": {k: values[k] for k in keys}},
            )
        return existing, False

    def flush(self) -> None:
        self.db.flush()

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    def _publish(self, table_name: str, op: str, row: Row) -> None:
        if self.feed is not None:
            self.feed.publish(Change(table=table_name, op=op, row=row))
