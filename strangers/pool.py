# SPDX-License-Identifier: GPL-3.0-or-later
"""Waiting pool: the shared queue of participants looking for a match.

A match is not a record: it is the outcome of deleting exactly two waiting
entries, ours and a counterpart's, in one statement.
"""

import dataclasses
import logging
import time
from typing import Optional, Set

from strangers import monitoring
from strangers.store import WAITING_POOL, DuplicateKeyError, StoreError


@dataclasses.dataclass(frozen=True)
class WaitingEntry:
    transport_address: str
    created_at: float

    @classmethod
    def from_row(cls, row) -> 'WaitingEntry':
        return cls(
            transport_address=row["transport_address"],
            created_at=row["created_at"],
        )

    def as_row(self):
        return dataclasses.asdict(self)


class WaitingPool:
    def __init__(self, store, clock=time.time):
        self.store = store
        self.clock = clock

    @staticmethod
    def _entry_of(address):
        return [("transport_address", "eq", address)]

    async def enqueue(self, address, created_at=None) -> WaitingEntry:
        """Adds a waiting entry for `address`.

        An existing entry for the same address counts as success.
        """
        entry = WaitingEntry(
            transport_address=address,
            created_at=self.clock() if created_at is None else created_at,
        )
        try:
            await self.store.insert(WAITING_POOL, [entry.as_row()])
        except DuplicateKeyError:
            logging.warning("%s is already in the waiting pool", address)
        else:
            logging.info("%s added to the waiting pool", address)
        return entry

    async def restore(self, entry: WaitingEntry) -> None:
        """Puts back an entry removed by mistake, keeping its position."""
        try:
            await self.store.insert(WAITING_POOL, [entry.as_row()])
        except DuplicateKeyError:
            pass
        logging.info(
            "%s restored in the waiting pool", entry.transport_address
        )

    async def withdraw(self, address) -> bool:
        """Removes our own entry, if any. Returns whether one was removed."""
        try:
            removed = await self.store.delete(
                WAITING_POOL, self._entry_of(address)
            )
        except StoreError as exn:
            monitoring.store_errors_total.labels("withdraw").inc()
            logging.error("cannot withdraw %s from the pool: %s", address, exn)
            return False
        if removed:
            logging.info("%s withdrawn from the waiting pool", address)
        return bool(removed)

    async def peek_self(self, address) -> bool:
        """Returns whether the entry for `address` is still in the pool."""
        rows = await self.store.select(
            WAITING_POOL, self._entry_of(address), limit=1
        )
        return bool(rows)

    async def find_oldest_other(self, address) -> Optional[WaitingEntry]:
        """Returns the earliest waiting entry that is not ours, if any."""
        rows = await self.store.select(
            WAITING_POOL,
            [("transport_address", "neq", address)],
            order_by="created_at",
            limit=1,
        )
        return WaitingEntry.from_row(rows[0]) if rows else None

    async def claim_pair(self, self_address, other_address) -> Set[str]:
        """Deletes both entries in one statement.

        Returns the set of addresses that were actually removed: the claim
        succeeded only if it holds both.
        """
        removed = await self.store.delete(
            WAITING_POOL,
            [("transport_address", "in", [self_address, other_address])],
        )
        return {row["transport_address"] for row in removed}

    async def size(self) -> int:
        return await self.store.count(WAITING_POOL)
