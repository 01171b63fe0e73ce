# SPDX-License-Identifier: GPL-3.0-or-later
"""Peer transport boundary.

An Endpoint registers with a rendezvous service to obtain a transport
address, dials other addresses and receives inbound connections. Each
connection is a Channel. Both report what happens to them as event objects
passed to a single bound handler; events emitted before a handler is bound
are kept until one is.
"""

import dataclasses
import logging
from typing import Any, Callable, List, Optional


class TransportError(Exception):
    """Failure reported by the transport, tagged with a `kind` such as
    "network", "server-error", "unavailable-id" or "peer-unavailable".
    """

    def __init__(self, kind, message=""):
        self.kind = kind
        self.message = message
        super().__init__(kind, message)

    def __str__(self):
        return f"{self.kind}: {self.message}" if self.message else self.kind


class DialTimeout(TransportError):
    def __init__(self, message=""):
        super().__init__("timeout", message)


# Channel events.


@dataclasses.dataclass(frozen=True)
class Opened:
    pass


@dataclasses.dataclass(frozen=True)
class DataReceived:
    payload: str


@dataclasses.dataclass(frozen=True)
class Closed:
    pass


@dataclasses.dataclass(frozen=True)
class Errored:
    cause: TransportError


# Endpoint events.


@dataclasses.dataclass(frozen=True)
class Registered:
    address: str


@dataclasses.dataclass(frozen=True)
class IncomingConnection:
    channel: 'Channel'


@dataclasses.dataclass(frozen=True)
class SignalingLost:
    pass


@dataclasses.dataclass(frozen=True)
class SignalingError:
    kind: str
    message: str = ""


class EventSource:
    def __init__(self):
        self._handler: Optional[Callable[[Any], None]] = None
        self._pending: List[Any] = []

    def bind(self, handler):
        """Sets the event handler and hands it the events emitted so far."""
        self._handler = handler
        pending, self._pending = self._pending, []
        for event in pending:
            self._emit(event)

    def _emit(self, event):
        if self._handler is None:
            self._pending.append(event)
            return
        try:
            self._handler(event)
        except Exception:
            logging.exception("handler of %r raised on %r", self, event)


class Channel(EventSource):
    """One direct connection to the peer at `peer`."""

    def __init__(self, peer):
        super().__init__()
        self.peer = peer
        self.is_open = False
        self.is_closed = False

    def _emit(self, event):
        if isinstance(event, Opened):
            if self.is_closed:
                # An open notification in flight loses against a close.
                return
            self.is_open = True
        elif isinstance(event, (Closed, Errored)):
            self.is_open = False
            self.is_closed = True
        super()._emit(event)

    def accept(self):
        """Confirms an inbound connection the owner keeps.

        Transports that open inbound connections on their own need nothing
        here.
        """
        pass

    def send(self, payload):
        raise NotImplementedError

    def close(self):
        raise NotImplementedError

    def __repr__(self):
        return f"<{self.__class__.__name__} to {self.peer}>"


class Endpoint(EventSource):
    """Our own presence on the transport."""

    def __init__(self):
        super().__init__()
        self.address: Optional[str] = None
        self.destroyed = False

    async def start(self):
        raise NotImplementedError

    async def dial(self, address, reliable=True) -> Channel:
        raise NotImplementedError

    async def reconnect(self):
        raise NotImplementedError

    async def destroy(self):
        raise NotImplementedError
