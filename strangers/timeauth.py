# SPDX-License-Identifier: GPL-3.0-or-later
"""Tiny utilities to authenticate coordination store calls using a
pre-shared secret and time synchronisation between endpoints.
"""

import hashlib
import hmac
import time

# Validity time (in seconds) of a generated token.
TOKEN_TIMEOUT = 120


def generate_token(secret: bytes, message=None, now=None):
    """Generates a token for `message` given some `secret`."""
    timestamp = str(int(time.time() if now is None else now))
    return "{}:{}".format(
        timestamp, _get_hmac(secret, str(message) + timestamp)
    )


def check_token(token: str, secret: bytes, message=None, now=None):
    """Returns if `token` is valid according to `secret` and current time."""
    if token is None:
        return False

    # Reject badly formatted tokens.
    try:
        timestamp, user_digest = token.split(":")
        int_timestamp = int(timestamp)
    except ValueError:
        return False

    # Reject outdated tokens.
    if (time.time() if now is None else now) - int_timestamp > TOKEN_TIMEOUT:
        return False

    expected_digest = _get_hmac(secret, str(message) + timestamp)
    return hmac.compare_digest(expected_digest, user_digest)


def _get_hmac(secret: bytes, message: str):
    """Returns the HMAC digest of `message` keyed by `secret`."""
    return hmac.new(
        secret, message.encode("ascii"), digestmod=hashlib.sha256
    ).hexdigest()
