# SPDX-License-Identifier: GPL-3.0-or-later
import logging
import optparse

import strangers.config
import strangers.log
from strangers.relay.server import RelayApp

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
    parser.add_option(
        "-p", "--port", type="int", dest="port", help="Port to listen on."
    )
    options, args = parser.parse_args()

    config = strangers.config.load("strangers-relay")

    strangers.log.setup_logging(
        "strangers-relay", verbose=options.verbose, local=options.local_logging
    )
    strangers.log.quiet_libraries()

    port = options.port or config["port"]
    logging.info("relay listening on port %s", port)
    try:
        RelayApp().run(port=port)
    except KeyboardInterrupt:
        pass
