# SPDX-License-Identifier: GPL-3.0-or-later
"""Coordination store service: exposes a MemoryStore to remote clients.

Every store operation is a remote method reachable with
``POST /call/<method>`` and a JSON body ``{"args": [...], "kwargs": {...},
"hmac": token}``. Results and exceptions are returned as JSON documents
that :class:`strangers.store.client.RemoteStore` turns back into values and
:class:`strangers.store.StoreError` subclasses.
"""

import functools
import inspect
import json
import logging

import aiohttp.web

import strangers.timeauth
import strangers.web
from strangers import monitoring
from strangers.store import StoreError
from strangers.store.memory import MemoryStore


class MethodError(Exception):
    """Exception used to notice the remote callers that the requested method
    does not exist.
    """

    pass


class BadToken(Exception):
    """The timeauth token is wrong or has expired."""

    pass


class MissingToken(Exception):
    """The timeauth token cannot be found in the request."""

    pass


def remote_method(func):
    """Decorator for methods to be callable remotely."""
    func.remote_method = True
    return func


class MethodCollection(type):
    """Metaclass for services: collect remote methods and store them in a
    class-wide REMOTE_METHODS dictionnary. Stored methods are not bound to
    an instance.
    """

    def __init__(cls, name, bases, dct):
        super().__init__(name, bases, dct)

        remote_methods = {}
        for base in reversed(cls.__mro__[1:]):
            remote_methods.update(getattr(base, "REMOTE_METHODS", {}))
        for name, obj in dct.items():
            if callable(obj) and getattr(obj, "remote_method", False):
                if not inspect.iscoroutinefunction(obj):
                    raise RuntimeError(
                        f"Remote method {obj} is not a coroutine."
                    )
                remote_methods[name] = obj
        cls.REMOTE_METHODS = remote_methods


def format_exception(exn):
    return {
        "type": "exception",
        "exn_type": type(exn).__name__,
        "exn_message": str(exn),
    }


def json_response(data, http_error=None):
    body = json.dumps(data).encode() + b"\n"
    if http_error is not None:
        raise http_error(body=body, content_type="application/json")
    return aiohttp.web.Response(body=body, content_type="application/json")


class StoreApp(strangers.web.AiohttpApp, metaclass=MethodCollection):
    """Serves a MemoryStore over HTTP."""

    exposed_attributes = {"sizes"}

    def __init__(self, secret=None, store=None, **kwargs):
        super().__init__(
            [("POST", r"/call/{name:[0-9a-zA-Z_]+}", self.call_handler)],
            **kwargs,
        )
        self.secret = secret
        self.store = store if store is not None else MemoryStore()

    @property
    def sizes(self):
        return self.store.sizes()

    def _check_secret(self, method_name, data):
        if self.secret is None:
            return
        token = data.get("hmac")
        if not token:
            json_response(
                format_exception(MissingToken(method_name)),
                http_error=aiohttp.web.HTTPBadRequest,
            )
        if not strangers.timeauth.check_token(token, self.secret, method_name):
            json_response(
                format_exception(BadToken(method_name)),
                http_error=aiohttp.web.HTTPForbidden,
            )

    async def call_handler(self, request):
        method_name = request.match_info["name"]
        try:
            method = self.REMOTE_METHODS[method_name]
        except KeyError:
            json_response(
                format_exception(MethodError(method_name)),
                http_error=aiohttp.web.HTTPNotFound,
            )

        data = {"args": [], "kwargs": {}}
        try:
            data.update(await request.json())
        except json.decoder.JSONDecodeError as exn:
            json_response(
                format_exception(exn), http_error=aiohttp.web.HTTPBadRequest
            )

        self._check_secret(method_name, data)
        logging.debug(
            "store call %s(%s, %s)", method_name, data["args"], data["kwargs"]
        )

        with monitoring.store_call_seconds.labels(method_name).time():
            try:
                result = await method(self, *data["args"], **data["kwargs"])
            except Exception as exn:
                # Store errors are expected (duplicate keys...), anything else
                # is worth a traceback.
                if not isinstance(exn, StoreError):
                    logging.exception("store method %s raised:", method_name)
                return json_response(format_exception(exn))
        return json_response({"type": "result", "data": result})

    @staticmethod
    def _filters(filters):
        return [tuple(f) for f in filters or ()]

    @remote_method
    async def select(
        self, table, filters=(), order_by=None, descending=False, limit=None
    ):
        return await self.store.select(
            table, self._filters(filters), order_by, descending, limit
        )

    @remote_method
    async def count(self, table, filters=()):
        return await self.store.count(table, self._filters(filters))

    @remote_method
    async def insert(self, table, rows):
        await self.store.insert(table, rows)

    @remote_method
    async def update(self, table, values, filters):
        return await self.store.update(table, values, self._filters(filters))

    @remote_method
    async def delete(self, table, filters):
        return await self.store.delete(table, self._filters(filters))
