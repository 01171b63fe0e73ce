# SPDX-License-Identifier: GPL-3.0-or-later
"""Transport through the relay service (see strangers.relay.server)."""

import asyncio
import logging
import uuid
from urllib.parse import urlencode

import aiohttp

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


class RelayChannel(Channel):
    def __init__(self, endpoint, cid, peer):
        super().__init__(peer)
        self.endpoint = endpoint
        self.cid = cid

    def send(self, payload):
        if not self.is_open:
            raise TransportError("not-open", f"channel to {self.peer}")
        self.endpoint._write(
            {"type": "data", "cid": self.cid, "payload": payload}
        )

    def accept(self):
        if self.is_open or self.is_closed:
            return
        self.endpoint._write({"type": "accept", "cid": self.cid})
        self._emit(Opened())

    def close(self):
        if self.is_closed:
            return
        self.endpoint._write({"type": "close", "cid": self.cid})
        self.endpoint._forget(self)
        self._emit(Closed())


class RelayEndpoint(Endpoint):
    def __init__(self, url, http_client=None):
        super().__init__()
        self.url = url
        self.channels = {}
        # For testing, we may have to use an existing client. Its lifecycle
        # is handled externally.
        self._http_client = http_client
        self._own_client = None
        self._ws = None
        self._outbox = asyncio.Queue()
        self._reader = None
        self._writer = None

    def _client(self):
        if self._http_client is not None:
            return self._http_client
        if self._own_client is None:
            self._own_client = aiohttp.ClientSession()
        return self._own_client

    def _write(self, frame):
        self._outbox.put_nowait(frame)

    def _forget(self, channel):
        self.channels.pop(channel.cid, None)

    async def start(self):
        self._reader = asyncio.ensure_future(self._run())

    async def reconnect(self):
        if self.destroyed:
            raise TransportError("destroyed", "cannot reconnect")
        if self._reader is None or self._reader.done():
            self._reader = asyncio.ensure_future(self._run())

    def _connect_url(self):
        if self.address is None:
            return self.url
        return f"{self.url}?{urlencode({'address': self.address})}"

    async def _run(self):
        try:
            self._ws = await self._client().ws_connect(self._connect_url())
        except (aiohttp.ClientError, OSError) as exn:
            logging.error("cannot reach relay %s: %s", self.url, exn)
            self._emit(SignalingError("network", str(exn)))
            return

        self._writer = asyncio.ensure_future(self._write_loop(self._ws))
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_frame(msg.json())
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logging.warning("relay websocket error: %s", msg.data)
        finally:
            self._writer.cancel()
            self._ws = None
            # Frames queued for the lost link would reach nobody.
            self._outbox = asyncio.Queue()
            # The relay drops the links of a lost peer, so do our channels.
            for channel in list(self.channels.values()):
                self._forget(channel)
                channel._emit(
                    Errored(TransportError("network", "relay link lost"))
                )
        if not self.destroyed:
            logging.warning("lost the link to relay %s", self.url)
            self._emit(SignalingLost())

    async def _write_loop(self, ws):
        while True:
            frame = await self._outbox.get()
            try:
                await ws.send_json(frame)
            except ConnectionResetError as exn:
                logging.warning("cannot write to relay: %s", exn)
                return

    def _handle_frame(self, frame):
        frame_type = frame.get("type")
        channel = self.channels.get(frame.get("cid"))

        if frame_type == "registered":
            self.address = frame["address"]
            self._emit(Registered(self.address))
        elif frame_type == "incoming":
            channel = RelayChannel(self, frame["cid"], frame["src"])
            self.channels[channel.cid] = channel
            # Opened once the owner keeps it, see RelayChannel.accept().
            self._emit(IncomingConnection(channel))
        elif frame_type == "error" and channel is None:
            self._emit(SignalingError(frame["kind"], frame.get("message", "")))
        elif channel is None:
            logging.debug("relay frame for unknown channel: %s", frame)
        elif frame_type == "accepted":
            channel._emit(Opened())
        elif frame_type == "data":
            channel._emit(DataReceived(frame["payload"]))
        elif frame_type == "close":
            self._forget(channel)
            channel._emit(Closed())
        elif frame_type == "error":
            self._forget(channel)
            error = TransportError(frame["kind"], frame.get("message", ""))
            channel._emit(Errored(error))

    async def dial(self, address, reliable=True):
        # The relay keeps frames in order over TCP: every channel is reliable.
        if self._ws is None or self.destroyed:
            raise TransportError("disconnected", "not connected to the relay")
        channel = RelayChannel(self, uuid.uuid4().hex, address)
        self.channels[channel.cid] = channel
        self._write({"type": "dial", "cid": channel.cid, "dst": address})
        return channel

    async def destroy(self):
        if self.destroyed:
            return
        self.destroyed = True
        for channel in list(self.channels.values()):
            channel.close()
        if self._ws is not None:
            # Let the close frames go out first.
            while not self._outbox.empty() and not self._writer.done():
                await asyncio.sleep(0)
            await self._ws.close()
        if self._reader is not None:
            await asyncio.gather(self._reader, return_exceptions=True)
        if self._own_client is not None:
            await self._own_client.close()
