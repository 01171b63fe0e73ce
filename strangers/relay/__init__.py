# SPDX-License-Identifier: GPL-3.0-or-later
"""Relay is a websocket rendezvous service standing in for a peer-to-peer
transport: it hands out transport addresses and forwards chat frames
between connected addresses.

Relay configuration elements (profile ``strangers-relay``) are:

* **port** the TCP port to listen on.
"""
