# SPDX-License-Identifier: GPL-3.0-or-later
import asyncio
import logging

from strangers.transport import (
    Closed,
    DialTimeout,
    Errored,
    Opened,
    TransportError,
)


class TransportSession:
    """Wraps one Channel for the chat client.

    Channel events are forwarded to ``handler(session, event)`` so the owner
    can tell a current session from a stale one. Sending is only done while
    the channel is open.
    """

    def __init__(self, channel, handler):
        self.channel = channel
        self.handler = handler
        self.failure = None
        self._waiter = None
        channel.bind(self._dispatch)

    @property
    def peer(self):
        return self.channel.peer

    @property
    def is_open(self):
        return self.channel.is_open

    def _dispatch(self, event):
        if isinstance(event, Opened):
            self._settle()
        elif isinstance(event, Errored):
            self.failure = event.cause
            self._settle()
        elif isinstance(event, Closed) and self.failure is None:
            self.failure = TransportError("closed", "connection closed")
            self._settle()
        self.handler(self, event)

    def _settle(self):
        if self._waiter is None or self._waiter.done():
            return
        if self.channel.is_open:
            self._waiter.set_result(None)
        else:
            self._waiter.set_exception(self.failure)

    async def wait_open(self, timeout):
        """Waits for the channel to open.

        Raises DialTimeout, after closing the channel, if it does not open
        within `timeout` seconds, or the TransportError it failed with.
        """
        if self.channel.is_open:
            return
        if self.failure is not None:
            raise self.failure
        self._waiter = asyncio.get_running_loop().create_future()
        try:
            await asyncio.wait_for(self._waiter, timeout)
        except asyncio.TimeoutError:
            logging.warning(
                "connection to %s not open after %ss", self.peer, timeout
            )
            self.close()
            raise DialTimeout(f"{self.peer} did not answer in {timeout}s")

    def send(self, payload):
        """Sends `payload`. Returns False, sending nothing, when not open."""
        if not self.channel.is_open:
            logging.warning("cannot send to %s: not open", self.peer)
            return False
        self.channel.send(payload)
        return True

    def close(self):
        if not self.channel.is_closed:
            self.channel.close()
