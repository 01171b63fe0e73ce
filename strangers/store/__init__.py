# SPDX-License-Identifier: GPL-3.0-or-later
"""Coordination store interface: a per-row CRUD service over the presence
and waiting pool tables.

Nothing beyond single-statement atomicity is assumed from implementations:
every method is one statement and must either fully apply or not at all.
"""

PRESENCE = "presence"
WAITING_POOL = "waiting_pool"

# Table name -> unique key column.
TABLES = {
    PRESENCE: "user_id",
    WAITING_POOL: "transport_address",
}

FILTER_OPS = ("eq", "neq", "lt", "in")


class StoreError(Exception):
    """Base class for all coordination store failures."""

    pass


class DuplicateKeyError(StoreError):
    """Raised when an insert conflicts with an existing unique key."""

    pass


class StoreUnavailable(StoreError):
    """Raised when the store service cannot be reached or misbehaves."""

    pass


class RemoteError(StoreError):
    """Raised when the store service reported an error."""

    def __init__(self, type, message):
        self.type = type
        self.message = message
        super().__init__(type, message)


def check_table(table):
    if table not in TABLES:
        raise StoreError(f"Unknown table: {table!r}")


def check_filters(filters):
    for column, op, value in filters:
        if op not in FILTER_OPS:
            raise StoreError(f"Unknown filter operator: {op!r}")
        if op == "in" and not isinstance(value, (list, tuple, set)):
            raise StoreError(f"'in' filter on {column} needs a collection")


def matches(row, filters):
    """Returns whether `row` satisfies every filter."""
    for column, op, value in filters:
        field = row.get(column)
        if op == "eq" and not field == value:
            return False
        if op == "neq" and not field != value:
            return False
        if op == "lt" and not (field is not None and field < value):
            return False
        if op == "in" and field not in value:
            return False
    return True


class BaseStore:
    """Asynchronous coordination store.

    Filters are sequences of ``(column, op, value)`` triples, where `op` is
    one of :data:`FILTER_OPS`. Rows are plain dicts.
    """

    async def select(
        self, table, filters=(), order_by=None, descending=False, limit=None
    ):
        """Returns the list of rows of `table` matching `filters`."""
        raise NotImplementedError

    async def count(self, table, filters=()):
        """Returns the number of rows of `table` matching `filters`."""
        raise NotImplementedError

    async def insert(self, table, rows):
        """Inserts all `rows` or none of them.

        Raises DuplicateKeyError if any row conflicts on the unique key.
        """
        raise NotImplementedError

    async def update(self, table, values, filters):
        """Updates matching rows with `values`, returns the updated count."""
        raise NotImplementedError

    async def delete(self, table, filters):
        """Deletes matching rows and returns them."""
        raise NotImplementedError

    async def close(self):
        pass
