# SPDX-License-Identifier: GPL-3.0-or-later
"""Strangers pairs anonymous users for ephemeral one-to-one text chat.

Participants advertise presence and their willingness to chat in a small
shared coordination store, claim each other from a waiting pool, then talk
over a direct peer transport.
"""
