# SPDX-License-Identifier: GPL-3.0-or-later
"""In-process transport: every endpoint created from one LoopbackHub can
reach the others. Events are delivered through the event loop, never
synchronously, like a real network would.

The hub can misbehave on purpose: refuse registrations, drop the signaling
link of an endpoint, or swallow dials to some addresses.
"""

import asyncio
import logging
import uuid

from strangers.transport import (
    Channel,
    Closed,
    DataReceived,
    Endpoint,
    Errored,
    IncomingConnection,
    Opened,
    Registered,
    SignalingError,
    SignalingLost,
    TransportError,
)


class LoopbackChannel(Channel):
    def __init__(self, peer):
        super().__init__(peer)
        self.other = None

    @classmethod
    def pair(cls, local_address, remote_address):
        local, remote = cls(remote_address), cls(local_address)
        local.other, remote.other = remote, local
        return local, remote

    def _later(self, channel, event):
        asyncio.get_running_loop().call_soon(channel._emit, event)

    def _shut(self):
        self.is_open = False
        self.is_closed = True

    def send(self, payload):
        if not self.is_open:
            raise TransportError("not-open", f"channel to {self.peer}")
        self._later(self.other, DataReceived(payload))

    def close(self):
        if self.is_closed:
            return
        self._shut()
        self._later(self, Closed())
        if self.other is not None and not self.other.is_closed:
            self.other._shut()
            self._later(self.other, Closed())

    def fail(self, kind, message=""):
        self._shut()
        self._later(self, Errored(TransportError(kind, message)))


class LoopbackEndpoint(Endpoint):
    def __init__(self, hub):
        super().__init__()
        self.hub = hub
        self.channels = []

    def _register(self):
        if self.destroyed:
            return
        if self.hub.refuse_registration:
            kind = self.hub.refuse_registration
            self._emit(SignalingError(kind, "registration refused"))
            return
        if self.address is None or self.address in self.hub.endpoints:
            self.address = uuid.uuid4().hex
        self.hub.endpoints[self.address] = self
        logging.debug("loopback: registered %s", self.address)
        self._emit(Registered(self.address))

    def _schedule_registration(self):
        if self.hub.registration_delay is None:
            # Never answers.
            return
        asyncio.get_running_loop().call_later(
            self.hub.registration_delay, self._register
        )

    async def start(self):
        self._schedule_registration()

    async def reconnect(self):
        if self.destroyed:
            raise TransportError("destroyed", "cannot reconnect")
        self._schedule_registration()

    async def dial(self, address, reliable=True):
        if self.address is None or self.destroyed:
            raise TransportError("disconnected", "endpoint is not registered")
        local, remote = LoopbackChannel.pair(self.address, address)
        self.channels.append(local)
        loop = asyncio.get_running_loop()

        target = self.hub.endpoints.get(address)
        if target is None:
            local.fail("peer-unavailable", f"could not connect to {address}")
            return local
        if address in self.hub.silent:
            return local

        target.channels.append(remote)
        loop.call_soon(target._emit, IncomingConnection(remote))
        loop.call_soon(remote._emit, Opened())
        loop.call_soon(local._emit, Opened())
        return local

    def drop_signaling(self):
        """Simulates the loss of the link to the rendezvous service."""
        if self.hub.endpoints.get(self.address) is self:
            del self.hub.endpoints[self.address]
        asyncio.get_running_loop().call_soon(self._emit, SignalingLost())

    async def destroy(self):
        if self.destroyed:
            return
        self.destroyed = True
        if self.hub.endpoints.get(self.address) is self:
            del self.hub.endpoints[self.address]
        for channel in self.channels:
            channel.close()


class LoopbackHub:
    """Rendezvous service shared by loopback endpoints."""

    def __init__(self, registration_delay=0):
        # Seconds before an endpoint gets its address, None for never.
        self.registration_delay = registration_delay
        # Error kind to answer registrations with, if any.
        self.refuse_registration = None
        # Addresses whose inbound dials are silently dropped.
        self.silent = set()
        self.endpoints = {}

    def endpoint(self):
        return LoopbackEndpoint(self)
