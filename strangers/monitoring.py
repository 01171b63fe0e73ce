# SPDX-License-Identifier: GPL-3.0-or-later
from prometheus_client import start_http_server, Counter, Gauge, Summary

searches_total = Counter(
    "strangers_searches_total", "Number of searches started by this client"
)

search_attempts_total = Counter(
    "strangers_search_attempts_total", "Number of waiting pool polls"
)

matches_claimed_total = Counter(
    "strangers_matches_claimed_total",
    "Number of matches this client claimed as the dialing side",
)

matches_received_total = Counter(
    "strangers_matches_received_total",
    "Number of times this client was claimed by someone else",
)

claim_conflicts_total = Counter(
    "strangers_claim_conflicts_total",
    "Number of claims that did not remove exactly the two expected entries",
)

searches_exhausted_total = Counter(
    "strangers_searches_exhausted_total",
    "Number of searches that ran out of attempts",
)

store_errors_total = Counter(
    "strangers_store_errors_total",
    "Number of failed coordination store operations",
    ["operation"],
)

online_users = Gauge(
    "strangers_online_users", "Last observed number of active participants"
)

stale_presence_removed_total = Counter(
    "strangers_stale_presence_removed_total",
    "Number of stale presence records removed by this client",
)

store_call_seconds = Summary(
    "strangers_store_call_seconds",
    "Latency of the coordination store calls served",
    ["method"],
)


def monitoring_start(port):
    start_http_server(port)
