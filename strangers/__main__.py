# SPDX-License-Identifier: GPL-3.0-or-later
"""Console chat client.

Plain lines are sent to the stranger. Commands:

    /search  look for someone to chat with
    /cancel  stop looking
    /leave   leave the current chat
    /quit    leave and exit
"""

import asyncio
import functools
import logging
import optparse

from aioconsole import ainput, aprint

import strangers.config
import strangers.log
from strangers.client import (
    ChatClient,
    InvalidTransition,
    MessageAdded,
    OnlineCountChanged,
    Phase,
    PhaseChanged,
)
from strangers.identity import FileIdentityStore
from strangers.matchmaker import NotReadyError
from strangers.monitoring import monitoring_start
from strangers.store.client import RemoteStore
from strangers.transport.relay import RelayEndpoint

SENDER_TAGS = {"me": "[you]", "them": "[stranger]", "system": "***"}


def show(event):
    if isinstance(event, MessageAdded):
        message = event.message
        line = "{} {} {}".format(
            message.time.strftime("%H:%M"),
            SENDER_TAGS[message.sender],
            message.text,
        )
    elif isinstance(event, PhaseChanged):
        line = "--- {}".format(event.new.value)
    elif isinstance(event, OnlineCountChanged):
        line = "--- {} online".format(event.count)
    else:
        return
    asyncio.ensure_future(aprint(line))


async def console(client):
    while True:
        try:
            line = await ainput("> ")
        except EOFError:
            return
        line = line.strip()
        if not line:
            continue
        try:
            if line == "/quit":
                return
            elif line == "/search":
                client.search()
            elif line == "/cancel":
                await client.cancel()
            elif line == "/leave":
                await client.disconnect()
            elif line.startswith("/"):
                await aprint("unknown command: {}".format(line))
            elif client.phase is not Phase.CONNECTED:
                await aprint("not connected, try /search")
            else:
                client.send(line)
        except (NotReadyError, InvalidTransition) as exn:
            await aprint("cannot do that now: {}".format(exn))


async def main(config):
    secret = config["store"]["shared_secret"]
    store = RemoteStore(
        config["store"]["url"],
        secret=secret.encode("utf-8") if secret else None,
    )
    client = ChatClient(
        store,
        functools.partial(RelayEndpoint, config["relay"]["url"]),
        FileIdentityStore(config["identity"]["path"]),
        config,
    )
    client.subscribe(show)
    await aprint("you are {}".format(client.identity))
    await client.start()
    try:
        await console(client)
    finally:
        await client.close()
        await store.close()


if __name__ == "__main__":
    parser = optparse.OptionParser()
    parser.add_option(
        "-l",
        "--local-logging",
        action="store_true",
        dest="local_logging",
        default=False,
        help="Activate logging to stderr.",
    )
    parser.add_option(
        "-v",
        "--verbose",
        action="store_true",
        dest="verbose",
        default=False,
        help="Verbose mode.",
    )
    options, args = parser.parse_args()

    config = strangers.config.load("strangers-client")

    strangers.log.setup_logging(
        "strangers", verbose=options.verbose, local=options.local_logging
    )
    strangers.log.quiet_libraries()

    if config["monitoring"]["port"]:
        monitoring_start(config["monitoring"]["port"])

    logging.info("starting the chat client")
    try:
        asyncio.run(main(config))
    except KeyboardInterrupt:
        pass
