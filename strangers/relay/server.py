# SPDX-License-Identifier: GPL-3.0-or-later
"""Relay service: rendezvous and frame forwarding for RelayEndpoint.

Each websocket gets a transport address (it may ask for its previous one
with ``?address=``). Connections between two addresses are identified by a
connection id chosen by the dialing side. Frames are JSON objects:

    client -> relay  {"type": "dial", "cid": ..., "dst": ...}
                     {"type": "accept", "cid": ...}
                     {"type": "data", "cid": ..., "payload": ...}
                     {"type": "close", "cid": ...}
    relay -> client  {"type": "registered", "address": ...}
                     {"type": "incoming", "cid": ..., "src": ...}
                     {"type": "accepted", "cid": ...}
                     {"type": "data", "cid": ..., "payload": ...}
                     {"type": "close", "cid": ...}
                     {"type": "error", "kind": ..., "message": ..., "cid": ...}
"""

import dataclasses
import json
import logging
import uuid

import aiohttp
import aiohttp.web

import strangers.web


@dataclasses.dataclass
class Link:
    src: str
    dst: str
    accepted: bool = False

    def other(self, address):
        return self.dst if address == self.src else self.src


class RelayApp(strangers.web.AiohttpApp):
    exposed_attributes = {"peer_count", "link_count"}

    def __init__(self, **kwargs):
        super().__init__([("GET", "/relay", self.relay_handler)], **kwargs)
        self.peers = {}
        self.links = {}

    @property
    def peer_count(self):
        return len(self.peers)

    @property
    def link_count(self):
        return len(self.links)

    async def _send(self, address, frame):
        ws = self.peers.get(address)
        if ws is None or ws.closed:
            return False
        try:
            await ws.send_json(frame)
        except ConnectionResetError:
            return False
        return True

    async def _error(self, ws, kind, message, cid=None):
        frame = {"type": "error", "kind": kind, "message": message}
        if cid is not None:
            frame["cid"] = cid
        await ws.send_json(frame)

    def _allocate(self, requested):
        if requested and requested not in self.peers:
            return requested
        return uuid.uuid4().hex

    async def relay_handler(self, request):
        ws = aiohttp.web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)

        address = self._allocate(request.query.get("address"))
        self.peers[address] = ws
        logging.info("relay: %s registered", address)
        await ws.send_json({"type": "registered", "address": address})

        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = json.loads(msg.data)
                    except json.JSONDecodeError:
                        await self._error(ws, "bad-frame", "invalid JSON")
                        continue
                    await self.handle_frame(ws, address, frame)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logging.warning(
                        "relay: %s websocket error: %s",
                        address,
                        ws.exception(),
                    )
        finally:
            await self.unregister(address, ws)
        return ws

    async def handle_frame(self, ws, address, frame):
        frame_type = frame.get("type")
        cid = frame.get("cid")
        link = self.links.get(cid)

        if frame_type == "dial":
            dst = frame.get("dst")
            if not cid or cid in self.links:
                await self._error(ws, "bad-frame", "invalid connection id")
            elif dst not in self.peers or dst == address:
                await self._error(
                    ws,
                    "peer-unavailable",
                    f"could not connect to {dst}",
                    cid=cid,
                )
            else:
                self.links[cid] = Link(src=address, dst=dst)
                await self._send(
                    dst, {"type": "incoming", "cid": cid, "src": address}
                )
        elif link is None or address not in (link.src, link.dst):
            await self._error(ws, "bad-frame", "unknown connection", cid=cid)
        elif frame_type == "accept" and address == link.dst:
            link.accepted = True
            await self._send(link.src, {"type": "accepted", "cid": cid})
        elif frame_type == "data" and link.accepted:
            await self._send(
                link.other(address),
                {"type": "data", "cid": cid, "payload": frame.get("payload")},
            )
        elif frame_type == "close":
            del self.links[cid]
            frame = {"type": "close", "cid": cid}
            await self._send(link.other(address), frame)
        else:
            await self._error(ws, "bad-frame", f"unexpected {frame_type}")

    async def unregister(self, address, ws):
        if self.peers.get(address) is ws:
            del self.peers[address]
        logging.info("relay: %s left", address)
        for cid, link in list(self.links.items()):
            if address in (link.src, link.dst):
                del self.links[cid]
                await self._send(
                    link.other(address), {"type": "close", "cid": cid}
                )
