# SPDX-License-Identifier: GPL-3.0-or-later
r"""Chat client: the connection lifecycle of one participant.

    CONNECTING --> READY --> SEARCHING --> CONNECTED --> READY
         |           \___________________/
         v                      |
       ERROR            DISCONNECTED (rendezvous link lost)

The client owns the transport endpoint, the presence heartbeat, the
matchmaker and at most one transport session, and decides which of them may
act in each phase. Transport events are dispatched on their type; store
failures never change the phase.
"""

import asyncio
import dataclasses
import datetime
import enum
import functools
import logging
import time
from typing import List, Optional

from strangers.matchmaker import (
    Matchmaker,
    NotReadyError,
    SearchOutcome,
    SearchResult,
)
from strangers.pool import WaitingPool
from strangers.presence import PresenceRegistry
from strangers.transport import (
    Closed,
    DataReceived,
    DialTimeout,
    Errored,
    IncomingConnection,
    Opened,
    Registered,
    SignalingError,
    SignalingLost,
    TransportError,
)
from strangers.transport.session import TransportSession

# Signaling error kinds after which only a reload helps.
FATAL_SIGNALING_ERRORS = {"network", "server-error"}


class Phase(enum.Enum):
    CONNECTING = "connecting"
    READY = "ready"
    SEARCHING = "searching"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


TRANSITIONS = {
    Phase.CONNECTING: {Phase.READY, Phase.DISCONNECTED, Phase.ERROR},
    Phase.READY: {
        Phase.SEARCHING,
        Phase.CONNECTED,
        Phase.CONNECTING,
        Phase.DISCONNECTED,
        Phase.ERROR,
    },
    Phase.SEARCHING: {
        Phase.READY,
        Phase.CONNECTED,
        Phase.CONNECTING,
        Phase.DISCONNECTED,
        Phase.ERROR,
    },
    Phase.CONNECTED: {
        Phase.READY,
        Phase.CONNECTING,
        Phase.DISCONNECTED,
        Phase.ERROR,
    },
    Phase.DISCONNECTED: {
        Phase.READY,
        Phase.SEARCHING,
        Phase.CONNECTED,
        Phase.CONNECTING,
        Phase.ERROR,
    },
    # Terminal until the program is restarted.
    Phase.ERROR: set(),
}


class InvalidTransition(Exception):
    pass


class Notice:
    READY = "Ready to chat!"
    SEARCHING = "Looking for someone to chat with..."
    FOUND = "Found someone! Connecting..."
    CONNECTED = "Connected! Say hi!"
    STRANGER_LEFT = "Stranger disconnected"
    YOU_LEFT = "You disconnected"
    CONNECTION_ERROR = "Connection error occurred"
    DIAL_FAILED = "Connection failed. Try again!"
    NO_ONE = "No one available. Try again!"
    OPEN_TIMEOUT = "Connection timeout. Please refresh."
    FATAL = "Connection error. Please refresh."
    RECONNECTING = "Reconnecting..."


@dataclasses.dataclass(frozen=True)
class Message:
    text: str
    # "me", "them" or "system".
    sender: str
    time: datetime.datetime


@dataclasses.dataclass(frozen=True)
class PhaseChanged:
    old: Phase
    new: Phase


@dataclasses.dataclass(frozen=True)
class MessageAdded:
    message: Message


@dataclasses.dataclass(frozen=True)
class OnlineCountChanged:
    count: int


class ChatClient:
    def __init__(
        self, store, endpoint_factory, identity_store, config, clock=time.time
    ):
        self.config = config
        self.identity = identity_store.get_or_create()
        self.registry = PresenceRegistry(
            store,
            self.identity,
            staleness_threshold=config["presence"]["staleness_threshold"],
            clock=clock,
        )
        self.matchmaker = Matchmaker(
            WaitingPool(store, clock=clock),
            poll_interval=config["search"]["poll_interval"],
            max_attempts=config["search"]["max_attempts"],
        )
        self.endpoint_factory = endpoint_factory
        self.endpoint = None

        self.phase = Phase.CONNECTING
        self.address: Optional[str] = None
        self.session: Optional[TransportSession] = None
        self.messages: List[Message] = []
        self.online_count = 0

        self._listeners = []
        self._tasks = set()
        self._dialing: Optional[TransportSession] = None
        self._dial_task: Optional[asyncio.Task] = None
        self._open_timer = None
        self._incoming_timer = None
        self._count_task = None
        self._closing = False

    # Observers.

    def subscribe(self, listener):
        """Calls ``listener(event)`` on every phase, message and count
        change."""
        self._listeners.append(listener)

    def _notify(self, event):
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logging.exception("listener %r failed on %r", listener, event)

    def _add_message(self, text, sender):
        message = Message(text, sender, datetime.datetime.now())
        self.messages.append(message)
        self._notify(MessageAdded(message))
        return message

    def _notice(self, text):
        logging.info("notice: %s", text)
        self._add_message(text, "system")

    def _set_phase(self, phase):
        if phase is self.phase:
            return
        if phase not in TRANSITIONS[self.phase]:
            raise InvalidTransition(f"{self.phase.name} -> {phase.name}")
        old, self.phase = self.phase, phase
        logging.info("phase: %s -> %s", old.name, phase.name)
        self._notify(PhaseChanged(old, phase))

    def _settle(self, phase):
        """Moves to `phase` once some activity ended.

        While the rendezvous link is down, the phase is recomputed when it
        comes back instead. Only a registration ends CONNECTING.
        """
        if self.phase in (Phase.ERROR, Phase.CONNECTING):
            return
        if self.phase is Phase.DISCONNECTED and phase is not Phase.CONNECTED:
            return
        self._set_phase(phase)

    def _spawn(self, coroutine):
        task = asyncio.ensure_future(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._reap)
        return task

    def _reap(self, task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logging.error(
                "background task failed", exc_info=task.exception()
            )

    @staticmethod
    def _cancel_timer(timer):
        if timer is not None:
            timer.cancel()
        return None

    # Endpoint lifecycle.

    async def start(self):
        """Registers with the transport and starts counting participants."""
        await self._open_endpoint()
        self._count_task = self._spawn(self._count_loop())

    async def _open_endpoint(self):
        self.endpoint = self.endpoint_factory()
        self.endpoint.bind(self._on_endpoint_event)
        self._open_timer = asyncio.get_running_loop().call_later(
            self.config["transport"]["open_timeout"], self._on_open_timeout
        )
        await self.endpoint.start()

    def _on_open_timeout(self):
        self._open_timer = None
        if self.phase is Phase.CONNECTING:
            logging.error(
                "no transport address after %ss",
                self.config["transport"]["open_timeout"],
            )
            self._fail(Notice.OPEN_TIMEOUT)

    def _fail(self, notice):
        """Enters the terminal ERROR phase."""
        self._set_phase(Phase.ERROR)
        self._notice(notice)
        self.registry.stop_heartbeat()
        self._abandon_activity()

    def _abandon_activity(self):
        """Drops the search, the dial and the session in progress."""
        self._incoming_timer = self._cancel_timer(self._incoming_timer)
        if self.matchmaker.searching:
            self._spawn(self.matchmaker.cancel())
        if self._dial_task is not None:
            self._dial_task.cancel()
        if self.session is not None:
            session, self.session = self.session, None
            session.close()

    @functools.singledispatchmethod
    def _on_endpoint_event(self, event):
        logging.warning("unexpected endpoint event %r", event)

    @_on_endpoint_event.register
    def _(self, event: Registered):
        self._open_timer = self._cancel_timer(self._open_timer)
        if self.phase is Phase.ERROR or self._closing:
            return
        previous, self.address = self.address, event.address
        logging.info("transport address: %s", self.address)
        self._spawn(self.registry.refresh_presence(self.address))

        if self.phase is Phase.CONNECTING:
            self._set_phase(Phase.READY)
            self._notice(Notice.READY)
        elif self.phase is Phase.DISCONNECTED:
            self._set_phase(self._resumed_phase())
            if previous != self.address and self.matchmaker.searching:
                # Our pool entry carries an address nobody can dial anymore.
                logging.info("address changed, cancelling search")
                self._spawn(self.cancel())

    def _resumed_phase(self):
        if self.session is not None and self.session.is_open:
            return Phase.CONNECTED
        if (
            self.matchmaker.searching
            or self._dialing is not None
            or self._dial_task is not None
            or self._incoming_timer is not None
        ):
            return Phase.SEARCHING
        return Phase.READY

    @_on_endpoint_event.register
    def _(self, event: SignalingLost):
        if self.phase is Phase.ERROR or self._closing:
            return
        logging.warning("disconnected from the rendezvous service")
        self._set_phase(Phase.DISCONNECTED)
        self._spawn(self.endpoint.reconnect())

    @_on_endpoint_event.register
    def _(self, event: SignalingError):
        self._open_timer = self._cancel_timer(self._open_timer)
        if self.phase is Phase.ERROR or self._closing:
            return
        logging.error("transport error %s: %s", event.kind, event.message)
        if event.kind in FATAL_SIGNALING_ERRORS:
            self._fail(Notice.FATAL)
        elif event.kind == "unavailable-id":
            self._set_phase(Phase.CONNECTING)
            self._notice(Notice.RECONNECTING)
            self._abandon_activity()
            self._spawn(self._recreate_endpoint())

    async def _recreate_endpoint(self):
        await asyncio.sleep(self.config["transport"]["recreate_delay"])
        if self._closing or self.phase is not Phase.CONNECTING:
            return
        old, self.endpoint = self.endpoint, None
        await old.destroy()
        await self._open_endpoint()

    @_on_endpoint_event.register
    def _(self, event: IncomingConnection):
        channel = event.channel
        busy = (
            self.session is not None
            or self._dialing is not None
            or self._dial_task is not None
        )
        if busy or self.phase in (Phase.CONNECTING, Phase.ERROR):
            logging.info("rejecting connection from %s", channel.peer)
            channel.close()
            return
        logging.info("incoming connection from %s", channel.peer)
        self._incoming_timer = self._cancel_timer(self._incoming_timer)
        if self.matchmaker.searching:
            self._spawn(self.matchmaker.cancel())
        self.session = TransportSession(channel, self._on_session_event)
        self._set_phase(Phase.CONNECTED)
        channel.accept()

    # Session events.

    def _on_session_event(self, session, event):
        if self.phase is Phase.ERROR:
            return
        if session is self._dialing:
            # Failures while dialing are reported by wait_open().
            if isinstance(event, Opened):
                self._dialing = None
                if self.session is not None:
                    logging.warning(
                        "dropping connection to %s: already connected",
                        session.peer,
                    )
                    session.close()
                    return
                self.session = session
                self._set_phase(Phase.CONNECTED)
                self._notice(Notice.CONNECTED)
            return
        if session is not self.session:
            logging.debug("ignoring %r from stale session", event)
            return
        self._on_current_session_event(event)

    @functools.singledispatchmethod
    def _on_current_session_event(self, event):
        logging.warning("unexpected session event %r", event)

    @_on_current_session_event.register
    def _(self, event: Opened):
        self._set_phase(Phase.CONNECTED)
        self._notice(Notice.CONNECTED)

    @_on_current_session_event.register
    def _(self, event: DataReceived):
        logging.debug("received from %s: %r", self.session.peer, event.payload)
        self._add_message(str(event.payload), "them")

    @_on_current_session_event.register
    def _(self, event: Closed):
        logging.info("connection with %s closed", self.session.peer)
        self.session = None
        self._settle(Phase.READY)
        self._notice(Notice.STRANGER_LEFT)

    @_on_current_session_event.register
    def _(self, event: Errored):
        logging.error(
            "connection with %s failed: %s", self.session.peer, event.cause
        )
        self.session = None
        self._settle(Phase.READY)
        self._notice(Notice.CONNECTION_ERROR)

    # Matchmaking.

    @property
    def searching(self):
        return self.phase is Phase.SEARCHING

    def search(self):
        """Starts looking for a counterpart. Returns the matchmaker task."""
        if self.address is None:
            raise NotReadyError("no transport address yet")
        if self.phase is not Phase.READY:
            raise InvalidTransition(f"cannot search while {self.phase.name}")
        if self.session is not None or self._dialing is not None:
            raise InvalidTransition("previous session is not closed")

        self.messages.clear()
        task = self.matchmaker.search(self.address)
        task.add_done_callback(self._on_search_done)
        self._set_phase(Phase.SEARCHING)
        self._notice(Notice.SEARCHING)
        return task

    def _on_search_done(self, task):
        if task.cancelled() or self._closing or self.phase is Phase.ERROR:
            return
        if task.exception() is not None:
            logging.error("search failed", exc_info=task.exception())
            self._settle(Phase.READY)
            return
        result: SearchResult = task.result()

        if result.outcome is SearchOutcome.MATCHED:
            if self.session is not None:
                # Somebody dialed us first, the counterpart will time out.
                logging.warning(
                    "ignoring match with %s: already connected",
                    result.counterpart,
                )
                return
            self._notice(Notice.FOUND)
            self._dial_task = self._spawn(self._dial(result.counterpart))
        elif result.outcome is SearchOutcome.CLAIMED:
            if self.session is None:
                self._incoming_timer = asyncio.get_running_loop().call_later(
                    self.config["search"]["incoming_timeout"],
                    self._on_incoming_timeout,
                )
        elif result.outcome is SearchOutcome.EXHAUSTED:
            self._settle(Phase.READY)
            self._notice(Notice.NO_ONE)

    def _on_incoming_timeout(self):
        self._incoming_timer = None
        if self.session is None and self._dialing is None:
            logging.warning("claimed, but nobody dialed us")
            self._settle(Phase.READY)
            self._notice(Notice.DIAL_FAILED)

    async def _dial(self, address):
        try:
            await asyncio.sleep(self.config["search"]["dial_delay"])
            if self.session is not None:
                logging.warning("not dialing %s: already connected", address)
                return
            logging.info("dialing %s", address)
            try:
                channel = await self.endpoint.dial(address, reliable=True)
            except TransportError as exn:
                logging.error("cannot dial %s: %s", address, exn)
                self._dial_failed()
                return
            session = TransportSession(channel, self._on_session_event)
            self._dialing = session
            try:
                await session.wait_open(
                    self.config["transport"]["dial_timeout"]
                )
            except asyncio.CancelledError:
                session.close()
                raise
            except DialTimeout:
                self._dial_failed()
            except TransportError as exn:
                logging.error("connection to %s failed: %s", address, exn)
                self._dial_failed()
            finally:
                if self._dialing is session:
                    self._dialing = None
        finally:
            self._dial_task = None

    def _dial_failed(self):
        self._settle(Phase.READY)
        self._notice(Notice.DIAL_FAILED)

    async def cancel(self):
        """Stops searching. Safe to call at any time."""
        self._incoming_timer = self._cancel_timer(self._incoming_timer)
        dial_task = self._dial_task
        if dial_task is not None and not dial_task.done():
            dial_task.cancel()
            await asyncio.gather(dial_task, return_exceptions=True)
        await self.matchmaker.cancel()
        if self.phase is Phase.SEARCHING and self.session is None:
            self._set_phase(Phase.READY)

    # Chat.

    def send(self, text):
        """Sends `text` to the stranger. Returns whether it was sent."""
        text = text.strip()
        if not text or self.session is None or not self.session.is_open:
            logging.warning("cannot send: empty message or no connection")
            return False
        self._add_message(text, "me")
        return self.session.send(text)

    async def disconnect(self):
        """Leaves the current chat, if any, and stops searching."""
        if self.session is not None:
            session, self.session = self.session, None
            logging.info("leaving the chat with %s", session.peer)
            session.close()
            self._settle(Phase.READY)
            self._notice(Notice.YOU_LEFT)
        await self.cancel()

    # Online count.

    async def refresh_online_count(self):
        count = await self.registry.count_active()
        if count is not None and count != self.online_count:
            self.online_count = count
            self._notify(OnlineCountChanged(count))
        return self.online_count

    async def _count_loop(self):
        while True:
            await self.refresh_online_count()
            await asyncio.sleep(self.config["presence"]["count_interval"])

    async def close(self):
        """Graceful departure."""
        self._closing = True
        self._open_timer = self._cancel_timer(self._open_timer)
        self._incoming_timer = self._cancel_timer(self._incoming_timer)
        if self._count_task is not None:
            self._count_task.cancel()
        if self._dial_task is not None:
            self._dial_task.cancel()
        await self.matchmaker.cancel()
        if self.session is not None:
            session, self.session = self.session, None
            session.close()
        # Let pending presence refreshes land before removing the record.
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.registry.remove_presence()
        if self.endpoint is not None:
            await self.endpoint.destroy()
