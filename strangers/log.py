# SPDX-License-Identifier: GPL-3.0-or-later

import logging
import logging.handlers
import os
import sys

# Do not log to stderr if started by systemd
LOG_STDERR = os.getppid() != 1

SYSLOG_SOCKET = "/dev/log"


def setup_logging(program, verbose=False, local=LOG_STDERR):
    """Sets up the default Python logger.

    Log to syslog when a syslog socket is available, optionaly log to stderr.

    Args:
      program: Name of the program logging informations.
      verbose: If true, log more messages (DEBUG instead of INFO).
      local: If true, log to stderr as well as syslog.
    """
    handlers = []
    if os.path.exists(SYSLOG_SOCKET):
        handlers.append(logging.handlers.SysLogHandler(SYSLOG_SOCKET))
    if local or not handlers:
        handlers.append(logging.StreamHandler(sys.stderr))
    for handler in handlers:
        handler.setFormatter(
            logging.Formatter(program + ": [%(levelname)s] %(message)s")
        )
        logging.getLogger("").addHandler(handler)
    logging.getLogger("").setLevel(logging.DEBUG if verbose else logging.INFO)


def quiet_libraries():
    """Lower the verbosity of the asyncio and aiohttp loggers."""
    for name in (
        "asyncio",
        "aiohttp.access",
        "aiohttp.client",
        "aiohttp.server",
        "aiohttp.web",
    ):
        logging.getLogger(name).setLevel(logging.WARNING)
