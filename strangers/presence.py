# SPDX-License-Identifier: GPL-3.0-or-later
"""Presence registry: which participants are currently active.

Each client keeps one presence record alive with periodic heartbeats. There
is no janitor process: any client sweeps expired records before counting,
so the count is eventually accurate, not instantaneous. Presence is advisory
only, so every store failure here is logged and swallowed.
"""

import asyncio
import logging
import time

from strangers import monitoring
from strangers.store import PRESENCE, DuplicateKeyError, StoreError


class PresenceRegistry:
    def __init__(
        self, store, identity, staleness_threshold=10, clock=time.time
    ):
        self.store = store
        self.identity = identity
        self.staleness_threshold = staleness_threshold
        # Tolerate one missed beat before being considered stale.
        self.heartbeat_period = staleness_threshold / 2
        self.clock = clock
        self.transport_address = None
        self._heartbeat_task = None

    def _own_record(self):
        return [("user_id", "eq", self.identity)]

    async def _upsert(self):
        """Creates or refreshes our own record. Returns whether it worked."""
        values = {
            "transport_address": self.transport_address,
            "last_seen": self.clock(),
        }
        try:
            updated = await self.store.update(
                PRESENCE, values, self._own_record()
            )
            if updated:
                return True
            try:
                await self.store.insert(
                    PRESENCE, [{"user_id": self.identity, **values}]
                )
            except DuplicateKeyError:
                # Another instance of the same identity was faster.
                await self.store.update(PRESENCE, values, self._own_record())
                return True
            logging.info("presence record created for %s", self.identity)
            return True
        except StoreError as exn:
            monitoring.store_errors_total.labels("refresh_presence").inc()
            logging.error(
                "cannot refresh presence of %s: %s", self.identity, exn
            )
            return False

    async def refresh_presence(self, transport_address=None):
        """Upserts our presence record and (re)starts the heartbeat."""
        if transport_address is not None:
            self.transport_address = transport_address
        ok = await self._upsert()
        self.start_heartbeat()
        return ok

    def start_heartbeat(self):
        self.stop_heartbeat()
        self._heartbeat_task = asyncio.ensure_future(self._heartbeat_loop())

    def stop_heartbeat(self):
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    @property
    def heartbeating(self):
        return self._heartbeat_task is not None

    async def _heartbeat_loop(self):
        while True:
            await asyncio.sleep(self.heartbeat_period)
            logging.debug("heartbeat for %s", self.identity)
            # A record swept after missed beats is created again.
            await self._upsert()

    async def sweep_stale(self, now=None):
        """Deletes every record older than the staleness threshold.

        Returns the number of removed records.
        """
        if now is None:
            now = self.clock()
        cutoff = now - self.staleness_threshold
        try:
            removed = await self.store.delete(
                PRESENCE, [("last_seen", "lt", cutoff)]
            )
        except StoreError as exn:
            monitoring.store_errors_total.labels("sweep_stale").inc()
            logging.error("cannot sweep stale presence records: %s", exn)
            return 0
        if removed:
            monitoring.stale_presence_removed_total.inc(len(removed))
            logging.debug(
                "swept %d stale presence records: %s",
                len(removed),
                [row["user_id"] for row in removed],
            )
        return len(removed)

    async def count_active(self):
        """Sweeps, then returns the number of active participants.

        Returns None when the store cannot be reached.
        """
        await self.sweep_stale()
        try:
            count = await self.store.count(PRESENCE)
        except StoreError as exn:
            monitoring.store_errors_total.labels("count_active").inc()
            logging.error("cannot count active participants: %s", exn)
            return None
        monitoring.online_users.set(count)
        return count

    async def remove_presence(self):
        """Explicit departure. The sweep reclaims the record on failure."""
        self.stop_heartbeat()
        try:
            await self.store.delete(PRESENCE, self._own_record())
        except StoreError as exn:
            monitoring.store_errors_total.labels("remove_presence").inc()
            logging.error(
                "cannot remove presence of %s: %s", self.identity, exn
            )
        else:
            logging.info("presence record removed for %s", self.identity)
