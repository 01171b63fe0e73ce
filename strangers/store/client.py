# SPDX-License-Identifier: GPL-3.0-or-later
"""Client for the coordination store service."""

import asyncio
import contextlib
import logging
from urllib.parse import urljoin

import aiohttp

import strangers.timeauth
from strangers.store import (
    BaseStore,
    DuplicateKeyError,
    RemoteError,
    StoreUnavailable,
)

# Exceptions raised by the service that map to a local exception class.
KNOWN_EXCEPTIONS = {
    "DuplicateKeyError": DuplicateKeyError,
}


class RemoteStore(BaseStore):
    """Coordination store reached over HTTP.

    Transport failures raise StoreUnavailable, errors reported by the service
    raise DuplicateKeyError or RemoteError.
    """

    def __init__(self, base_url, secret=None, http_client=None, timeout=10):
        self._base_url = base_url
        self._secret = secret
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        # For testing, we may have to use an existing client. Its lifecycle
        # is handled externally.
        self._http_client = http_client
        self._own_client = None

    @contextlib.asynccontextmanager
    async def _client(self):
        if self._http_client is not None:
            yield self._http_client
            return
        if self._own_client is None or self._own_client.closed:
            self._own_client = aiohttp.ClientSession(timeout=self._timeout)
        yield self._own_client

    def _call_params(self, method, args, kwargs):
        arguments = {"args": args, "kwargs": kwargs}
        if self._secret:
            arguments["hmac"] = strangers.timeauth.generate_token(
                self._secret, method
            )
        url = urljoin(self._base_url, f"call/{method}")
        return url, arguments

    async def _call_method(self, method, *args, **kwargs):
        """Calls the remote `method` passing `args` and `kwargs` to it."""
        url, data = self._call_params(method, list(args), kwargs)
        try:
            async with self._client() as client:
                async with client.post(url, json=data) as resp:
                    if resp.content_type != "application/json":
                        raise StoreUnavailable(
                            f"Unexpected {resp.status} response with "
                            f"Content-Type '{resp.content_type}' from {url}"
                        )
                    result = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exn:
            logging.debug("store call %s failed: %r", method, exn)
            raise StoreUnavailable(f"{url}: {exn!r}") from exn
        return self._parse_response(result)

    def _parse_response(self, result):
        result_type = result.get("type")
        if result_type == "result":
            return result["data"]
        elif result_type == "exception":
            exn_type = result["exn_type"]
            exn_message = result["exn_message"]
            if exn_type in KNOWN_EXCEPTIONS:
                raise KNOWN_EXCEPTIONS[exn_type](exn_message)
            raise RemoteError(exn_type, exn_message)
        else:
            raise StoreUnavailable(f"Invalid result type: {result_type}")

    @staticmethod
    def _filters(filters):
        return [
            [column, op, list(value) if op == "in" else value]
            for column, op, value in filters
        ]

    async def select(
        self, table, filters=(), order_by=None, descending=False, limit=None
    ):
        return await self._call_method(
            "select",
            table,
            self._filters(filters),
            order_by=order_by,
            descending=descending,
            limit=limit,
        )

    async def count(self, table, filters=()):
        return await self._call_method("count", table, self._filters(filters))

    async def insert(self, table, rows):
        await self._call_method("insert", table, list(rows))

    async def update(self, table, values, filters):
        return await self._call_method(
            "update", table, values, self._filters(filters)
        )

    async def delete(self, table, filters):
        return await self._call_method(
            "delete", table, self._filters(filters)
        )

    async def close(self):
        if self._own_client is not None:
            await self._own_client.close()
            self._own_client = None
