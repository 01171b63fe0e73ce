# SPDX-License-Identifier: GPL-3.0-or-later
"""Matchmaking controller: finds a counterpart through the waiting pool.

A search enqueues our transport address, then polls the pool at a fixed
interval. Each poll first checks that our entry still exists: if it vanished,
somebody claimed us and will dial us. Otherwise the oldest other entry is
claimed by deleting both entries at once, and the winner dials the
counterpart.

Polls are not linearizable: two pollers may pick the same candidate. The
claim reports which entries it really deleted, so a partial claim is undone
instead of silently stranding a participant.
"""

import asyncio
import contextlib
import dataclasses
import enum
import logging
from typing import Optional

from strangers import monitoring
from strangers.pool import WaitingEntry, WaitingPool
from strangers.store import StoreError


class NotReadyError(Exception):
    """Raised when searching before our own transport address is known."""

    pass


class SearchInProgress(Exception):
    pass


class SearchOutcome(enum.Enum):
    # We claimed a counterpart and must dial it.
    MATCHED = "matched"
    # Somebody claimed us and is going to dial us.
    CLAIMED = "claimed"
    # The attempt budget ran out.
    EXHAUSTED = "exhausted"


@dataclasses.dataclass(frozen=True)
class SearchResult:
    outcome: SearchOutcome
    attempts: int
    counterpart: Optional[str] = None


class Search:
    """One run of the pool protocol for `address`."""

    def __init__(
        self, pool: WaitingPool, address, poll_interval, max_attempts
    ):
        self.pool = pool
        self.address = address
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.attempts = 0
        self.entry: Optional[WaitingEntry] = None

    def result(self, outcome, counterpart=None):
        return SearchResult(outcome, self.attempts, counterpart)

    async def enqueue(self):
        try:
            self.entry = await self.pool.enqueue(self.address)
        except StoreError as exn:
            monitoring.store_errors_total.labels("enqueue").inc()
            logging.error("cannot enqueue %s, retrying: %s", self.address, exn)

    async def run(self) -> SearchResult:
        await self.enqueue()
        while True:
            await asyncio.sleep(self.poll_interval)
            if self.attempts >= self.max_attempts:
                logging.info(
                    "%s: no match after %d attempts",
                    self.address,
                    self.max_attempts,
                )
                await self.pool.withdraw(self.address)
                monitoring.searches_exhausted_total.inc()
                return self.result(SearchOutcome.EXHAUSTED)
            self.attempts += 1

            logging.debug(
                "%s: attempt %d/%d",
                self.address,
                self.attempts,
                self.max_attempts,
            )
            monitoring.search_attempts_total.inc()

            if self.entry is None:
                await self.enqueue()
                continue
            try:
                result = await self.poll()
            except StoreError as exn:
                monitoring.store_errors_total.labels("poll").inc()
                logging.error("%s: poll failed: %s", self.address, exn)
                continue
            if result is not None:
                return result

    async def poll(self) -> Optional[SearchResult]:
        """One tick of the protocol. Returns a result when the search ends."""
        if not await self.pool.peek_self(self.address):
            logging.info("%s: claimed by someone else", self.address)
            monitoring.matches_received_total.inc()
            return self.result(SearchOutcome.CLAIMED)

        candidate = await self.pool.find_oldest_other(self.address)
        if candidate is None:
            logging.debug("%s: nobody else is waiting", self.address)
            return None
        other = candidate.transport_address
        logging.info("%s: trying to claim %s", self.address, other)

        try:
            removed = await self.pool.claim_pair(self.address, other)
        except StoreError as exn:
            # Whatever happened, the next tick starts over from a fresh read.
            monitoring.store_errors_total.labels("claim_pair").inc()
            logging.error(
                "%s: claim of %s failed, abandoning candidate: %s",
                self.address,
                other,
                exn,
            )
            return None

        if removed == {self.address, other}:
            logging.info("%s: claimed %s", self.address, other)
            monitoring.matches_claimed_total.inc()
            return self.result(SearchOutcome.MATCHED, other)

        monitoring.claim_conflicts_total.inc()
        if removed == {self.address}:
            # The candidate was taken by a third party: get back in line.
            logging.info("%s: %s was already taken", self.address, other)
            await self.restore(self.entry)
            return None
        if removed == {other}:
            # We were claimed concurrently: give the candidate its place back.
            logging.info(
                "%s: claimed by someone else while claiming %s",
                self.address,
                other,
            )
            await self.restore(candidate)
            monitoring.matches_received_total.inc()
            return self.result(SearchOutcome.CLAIMED)
        # Nothing removed: our own entry is gone too, next peek tells.
        return None

    async def restore(self, entry: WaitingEntry):
        try:
            await self.pool.restore(entry)
        except StoreError as exn:
            monitoring.store_errors_total.labels("restore").inc()
            logging.error(
                "%s: cannot restore %s: %s",
                self.address,
                entry.transport_address,
                exn,
            )
            if entry is self.entry:
                # Enqueue again on the next tick rather than mistaking our
                # absence for a claim.
                self.entry = None


class Matchmaker:
    """Runs at most one search at a time."""

    def __init__(self, pool: WaitingPool, poll_interval=1.5, max_attempts=20):
        self.pool = pool
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.address = None
        self._task: Optional[asyncio.Task] = None

    @property
    def searching(self) -> bool:
        return self._task is not None and not self._task.done()

    def search(self, address) -> asyncio.Task:
        """Starts searching for a counterpart for `address`.

        The returned task resolves to a SearchResult.
        """
        if not address:
            raise NotReadyError("own transport address is not established")
        if self.searching:
            raise SearchInProgress(f"{self.address} is already searching")
        self.address = address
        monitoring.searches_total.inc()
        logging.info("%s: starting search", address)
        search = Search(
            self.pool, address, self.poll_interval, self.max_attempts
        )
        self._task = asyncio.ensure_future(search.run())
        return self._task

    async def cancel(self):
        """Stops polling and withdraws from the pool. No-op when idle."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        logging.info("%s: cancelling search", self.address)
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        await self.pool.withdraw(self.address)
