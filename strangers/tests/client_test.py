import asyncio
import warnings

import pytest

import strangers.client
import strangers.config
from strangers.client import (
    InvalidTransition,
    MessageAdded,
    Notice,
    OnlineCountChanged,
    Phase,
    PhaseChanged,
)
from strangers.matchmaker import NotReadyError
from strangers.pool import WaitingPool
from strangers.store import PRESENCE, WAITING_POOL, StoreUnavailable
from strangers.transport import Closed


def texts(client):
    return [message.text for message in client.messages]


def pool_addresses(store):
    return set(store.tables[WAITING_POOL])


class Events:
    def __init__(self, client):
        self.events = []
        client.subscribe(self.events.append)

    def phases(self):
        return [e.new for e in self.events if isinstance(e, PhaseChanged)]


@pytest.fixture
async def ready(make_client, until):
    async def factory(**kwargs):
        client = await make_client(**kwargs)
        await until(lambda: client.phase is Phase.READY)
        return client

    return factory


@pytest.fixture
async def connected_pair(ready, until):
    a = await ready(identity="user_a")
    b = await ready(identity="user_b")
    a.search()
    b.search()
    await until(lambda: a.phase is b.phase is Phase.CONNECTED)
    await until(lambda: a.session.is_open and b.session.is_open)
    return a, b


async def raw_endpoint(hub, until):
    endpoint = hub.endpoint()
    await endpoint.start()
    await until(lambda: endpoint.address is not None)
    return endpoint


async def test_startup(ready, store, until):
    client = await ready(identity="user_a")
    assert client.address is not None
    assert texts(client) == [Notice.READY]
    await until(lambda: "user_a" in store.tables[PRESENCE])
    assert store.tables[PRESENCE]["user_a"]["transport_address"] == (
        client.address
    )
    assert client.registry.heartbeating


async def test_match_and_chat(connected_pair, store, until):
    a, b = connected_pair
    assert pool_addresses(store) == set()
    for client in (a, b):
        assert Notice.SEARCHING in texts(client)
        assert texts(client)[-1] == Notice.CONNECTED
    # Exactly one of them claimed the other and dialed.
    dialers = [c for c in (a, b) if Notice.FOUND in texts(c)]
    assert len(dialers) == 1
    assert a.session.peer == b.address and b.session.peer == a.address

    assert a.send("  hello  ")
    await until(lambda: texts(b)[-1] == "hello")
    assert b.messages[-1].sender == "them"
    assert a.messages[-1].sender == "me"


async def test_leave(connected_pair, until):
    a, b = connected_pair
    await a.disconnect()
    assert a.phase is Phase.READY
    assert texts(a)[-1] == Notice.YOU_LEFT
    await until(lambda: b.phase is Phase.READY)
    assert texts(b)[-1] == Notice.STRANGER_LEFT
    assert not a.send("anyone?")


async def test_search_again_after_chat(connected_pair, until):
    a, b = connected_pair
    await b.disconnect()
    await until(lambda: a.phase is Phase.READY)
    a.search()
    b.search()
    # The chat log starts over.
    assert texts(a) == [Notice.SEARCHING]
    await until(lambda: a.phase is b.phase is Phase.CONNECTED)


async def test_send_requires_text_and_connection(ready, connected_pair):
    a, _ = connected_pair
    assert not a.send("   ")
    lonely = await ready()
    assert not lonely.send("hello?")


async def test_exhausted(ready, client_config, store, until):
    config = strangers.config.merge(
        client_config, {"search": {"max_attempts": 3}}
    )
    client = await ready(config=config)
    events = Events(client)
    client.search()
    await until(lambda: client.phase is Phase.READY)
    assert events.phases() == [Phase.SEARCHING, Phase.READY]
    assert texts(client)[-1] == Notice.NO_ONE
    assert pool_addresses(store) == set()


async def test_cancel(ready, store, until):
    client = await ready()
    client.search()
    await until(lambda: client.address in pool_addresses(store))
    await client.cancel()
    assert client.phase is Phase.READY
    assert pool_addresses(store) == set()
    await client.cancel()
    assert client.phase is Phase.READY


async def test_search_preconditions(ready, make_client, hub):
    client = await ready()
    client.search()
    with pytest.raises(InvalidTransition):
        client.search()
    await client.cancel()

    hub.registration_delay = None
    pending = await make_client()
    assert pending.phase is Phase.CONNECTING
    with pytest.raises(NotReadyError):
        pending.search()


async def test_open_timeout(make_client, hub, until):
    hub.registration_delay = None
    client = await make_client()
    await until(lambda: client.phase is Phase.ERROR)
    assert texts(client) == [Notice.OPEN_TIMEOUT]


async def test_fatal_signaling_error(make_client, hub, until):
    hub.refuse_registration = "network"
    client = await make_client()
    await until(lambda: client.phase is Phase.ERROR)
    assert texts(client) == [Notice.FATAL]
    # Terminal.
    with pytest.raises(NotReadyError):
        client.search()


async def test_unavailable_id_recreates_endpoint(make_client, hub, until):
    hub.refuse_registration = "unavailable-id"
    client = await make_client()
    first = client.endpoint
    await until(lambda: Notice.RECONNECTING in texts(client))
    assert client.phase is Phase.CONNECTING
    hub.refuse_registration = None
    await until(lambda: client.phase is Phase.READY)
    assert client.endpoint is not first
    assert first.destroyed


async def test_dial_timeout(ready, hub, store, until):
    silent = await raw_endpoint(hub, until)
    hub.silent.add(silent.address)
    await WaitingPool(store).enqueue(silent.address, created_at=0)
    client = await ready()
    client.search()
    await until(lambda: Notice.FOUND in texts(client))
    await until(lambda: client.phase is Phase.READY)
    assert texts(client)[-1] == Notice.DIAL_FAILED
    assert client.session is None
    await silent.destroy()


async def test_dial_vanished_peer(ready, store, until):
    await WaitingPool(store).enqueue("ghost", created_at=0)
    client = await ready()
    client.search()
    await until(lambda: client.phase is Phase.READY)
    assert texts(client)[-2:] == [Notice.FOUND, Notice.DIAL_FAILED]


async def test_claimed_but_never_dialed(ready, store, until):
    client = await ready()
    client.search()
    await until(lambda: client.address in pool_addresses(store))
    # A counterpart claims us, then vanishes.
    await store.delete(
        WAITING_POOL, [("transport_address", "eq", client.address)]
    )
    await until(lambda: client.phase is Phase.READY)
    assert texts(client)[-1] == Notice.DIAL_FAILED


async def test_second_connection_rejected(connected_pair, hub, until):
    a, b = connected_pair
    intruder = await raw_endpoint(hub, until)
    channel = await intruder.dial(a.address)
    events = []
    channel.bind(events.append)
    await until(lambda: channel.is_closed)
    assert Closed() in events
    assert not channel.is_open
    assert a.session.peer == b.address and a.session.is_open
    await intruder.destroy()


async def test_store_failure_keeps_searching(ready, store, mocker):
    client = await ready()
    client.search()
    mocker.patch.object(store, "select", side_effect=StoreUnavailable("down"))
    await asyncio.sleep(0.05)
    assert client.phase is Phase.SEARCHING
    await client.cancel()
    assert client.phase is Phase.READY


async def test_signaling_lost_while_ready(ready, until):
    client = await ready()
    events = Events(client)
    address = client.address
    client.endpoint.drop_signaling()
    await until(lambda: Phase.DISCONNECTED in events.phases())
    await until(lambda: client.phase is Phase.READY)
    assert events.phases() == [Phase.DISCONNECTED, Phase.READY]
    assert client.address == address


async def test_signaling_lost_while_connected(connected_pair, until):
    a, b = connected_pair
    events = Events(a)
    a.endpoint.drop_signaling()
    await until(lambda: Phase.DISCONNECTED in events.phases())
    await until(lambda: a.phase is Phase.CONNECTED)
    # The direct connection outlives the rendezvous link.
    assert a.send("still there?")
    await until(lambda: texts(b)[-1] == "still there?")


async def test_address_change_cancels_search(ready, hub, store, until):
    client = await ready()
    client.search()
    old = client.address
    await until(lambda: old in pool_addresses(store))
    client.endpoint.drop_signaling()
    # Somebody else takes the address while we are away.
    hub.endpoints[old] = object()
    await until(lambda: client.address != old)
    await until(lambda: client.phase is Phase.READY)
    assert old not in pool_addresses(store)
    await until(
        lambda: store.tables[PRESENCE][client.identity]["transport_address"]
        == client.address
    )


async def test_online_count(ready, until):
    a = await ready()
    events = Events(a)
    b = await ready()
    await until(lambda: a.online_count == 2)
    await b.close()
    await until(lambda: a.online_count == 1)
    counts = [
        e.count for e in events.events if isinstance(e, OnlineCountChanged)
    ]
    assert counts[-1] == 1


async def test_close_cleans_up(ready, store, until):
    client = await ready(identity="user_a")
    client.search()
    await until(lambda: client.address in pool_addresses(store))
    await until(lambda: "user_a" in store.tables[PRESENCE])
    await client.close()
    assert pool_addresses(store) == set()
    assert "user_a" not in store.tables[PRESENCE]
    assert not client.registry.heartbeating
    assert client.endpoint.destroyed


async def test_listener_failure_is_contained(ready):
    client = await ready()

    def broken(event):
        raise RuntimeError("boom")

    seen = []
    client.subscribe(broken)
    client.subscribe(seen.append)
    client.search()
    assert any(isinstance(e, MessageAdded) for e in seen)
    await client.cancel()


async def test_connection_rejected_while_about_to_dial(
    ready, client_config, hub, store, until
):
    config = strangers.config.merge(
        client_config, {"search": {"dial_delay": 0.2}}
    )
    counterpart = await raw_endpoint(hub, until)
    await WaitingPool(store).enqueue(counterpart.address, created_at=0)
    client = await ready(config=config)
    client.search()
    await until(lambda: Notice.FOUND in texts(client))

    intruder = await raw_endpoint(hub, until)
    channel = await intruder.dial(client.address)
    await until(lambda: channel.is_closed)
    assert client.session is None

    # The pending dial still goes through, to the claimed counterpart only.
    await until(lambda: client.phase is Phase.CONNECTED)
    await until(lambda: client.session.is_open)
    assert client.session.peer == counterpart.address
    assert not channel.is_open
    await intruder.destroy()
    await counterpart.destroy()


def test_module_compiles_cleanly():
    with open(strangers.client.__file__) as fp:
        source = fp.read()
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        compile(source, strangers.client.__file__, "exec")
