# SPDX-License-Identifier: GPL-3.0-or-later
"""Local identity persistence: a self-asserted opaque string that stays the
same across restarts of the same client.
"""

import logging
import os
import os.path
import secrets
import string
import time

BASE36 = string.digits + string.ascii_lowercase


def to_base36(number):
    digits = []
    while True:
        number, remainder = divmod(number, 36)
        digits.append(BASE36[remainder])
        if not number:
            break
    return "".join(reversed(digits))


def new_identity():
    """Returns a fresh identity: random part followed by a time part."""
    random_part = "".join(secrets.choice(BASE36) for _ in range(16))
    return "user_" + random_part + to_base36(int(time.time() * 1000))


class MemoryIdentityStore:
    def __init__(self, identity=None):
        self.identity = identity

    def get_or_create(self):
        if self.identity is None:
            self.identity = new_identity()
        return self.identity


class FileIdentityStore:
    """Keeps the identity as a single line in `path`."""

    def __init__(self, path):
        self.path = os.path.expanduser(path)

    def get_or_create(self):
        try:
            with open(self.path, "r") as fp:
                identity = fp.read().strip()
        except FileNotFoundError:
            identity = ""
        if identity:
            logging.info("retrieved existing identity %s", identity)
            return identity

        identity = new_identity()
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        with open(self.path, "w") as fp:
            fp.write(identity + "\n")
        logging.info("created new identity %s", identity)
        return identity
