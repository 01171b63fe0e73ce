# SPDX-License-Identifier: GPL-3.0-or-later
"""In-process coordination store.

Every operation runs to completion without yielding to the event loop, which
gives each statement the same atomicity a database row lock would.
"""

import copy

from strangers.store import (
    BaseStore,
    DuplicateKeyError,
    StoreError,
    TABLES,
    check_filters,
    check_table,
    matches,
)


class MemoryStore(BaseStore):
    def __init__(self):
        # Table name -> {unique key -> row}. Dicts keep insertion order.
        self.tables = {table: {} for table in TABLES}

    def _rows(self, table, filters):
        check_table(table)
        check_filters(filters)
        return [
            row for row in self.tables[table].values() if matches(row, filters)
        ]

    async def select(
        self, table, filters=(), order_by=None, descending=False, limit=None
    ):
        rows = self._rows(table, filters)
        if order_by is not None:
            rows.sort(key=lambda row: row.get(order_by), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def count(self, table, filters=()):
        return len(self._rows(table, filters))

    async def insert(self, table, rows):
        check_table(table)
        key = TABLES[table]
        existing = self.tables[table]

        new_keys = set()
        for row in rows:
            if key not in row:
                raise StoreError(f"Row for {table} lacks its {key} key")
            if row[key] in existing or row[key] in new_keys:
                raise DuplicateKeyError(
                    f"duplicate key value violates unique constraint on "
                    f"{table}.{key}: {row[key]!r}"
                )
            new_keys.add(row[key])

        for row in rows:
            existing[row[key]] = dict(row)

    async def update(self, table, values, filters):
        key = TABLES.get(table)
        if key in values:
            raise StoreError(f"Cannot update the unique key {table}.{key}")
        rows = self._rows(table, filters)
        for row in rows:
            row.update(values)
        return len(rows)

    async def delete(self, table, filters):
        key = TABLES.get(table)
        rows = self._rows(table, filters)
        for row in rows:
            del self.tables[table][row[key]]
        return rows

    def sizes(self):
        return {table: len(rows) for table, rows in self.tables.items()}
