# SPDX-License-Identifier: GPL-3.0-or-later
"""Provides utilities for Strangers web services:

    import strangers.web
    application = strangers.web.AiohttpApp(routes)

This maps some special URLs to debug pages (WARNING: no authentication is
done, this could leak secrets):
  * /__info
    Returns Python version and a bunch of process info.
  * /__state
    Shows a state dump. Services choose what to expose here.
"""

import asyncio
import html
import os
import pprint
import sys
from typing import Mapping, Any, Set

import aiohttp.web


def html_response(text):
    return aiohttp.web.Response(
        text=text, content_type="text/html", charset="utf-8"
    )


def debug_header():
    return (
        "<style>body { font-family:monospace; white-space:pre-wrap; }</style>"
        + " ⋅ ".join(
            f"<a href='{url}'>{html.escape(text)}</a>"
            for url, text in (("/__info", "Summary"), ("/__state", "State"))
        )
        + "\n\n"
    )


class AiohttpApp:
    exposed_attributes: Set[str] = set()
    """Instance attributes to expose on the /__state page. For more control,
    override exposed_state()."""

    def __init__(self, routes, **kwargs):
        self.app = aiohttp.web.Application(**kwargs)
        for route in routes:
            self.app.router.add_route(*route)
        self.app.add_routes(
            [
                aiohttp.web.get("/__info", self.info_handler),
                aiohttp.web.get("/__state", self.state_handler),
            ]
        )

    async def info_handler(self, request):
        return html_response(
            debug_header()
            + html.escape(
                f"Python {sys.version}\n\n"
                f"Running {sys.executable} as pid {os.getpid()}\n\n"
                f"{self.__class__.__name__} in module "
                f"{self.__class__.__module__}\n\n"
                f"{len(asyncio.all_tasks())} asyncio tasks"
            )
        )

    async def state_handler(self, request):
        state = html.escape(pprint.pformat(await self.exposed_state()))
        return html_response(debug_header() + state)

    async def exposed_state(self) -> Mapping[str, Any]:
        """Returns dict of str -> object to expose on the /__state page.

        By default, this exposes attributes from :attr:`exposed_attributes`.
        """
        return {
            attr: getattr(self, attr)
            for attr in self.exposed_attributes
            if hasattr(self, attr)
        }

    def run(self, **kwargs):
        aiohttp.web.run_app(self.app, print=lambda *_: None, **kwargs)
