import asyncio

import pytest

import strangers.config
from strangers.client import ChatClient
from strangers.identity import MemoryIdentityStore
from strangers.store.memory import MemoryStore
from strangers.transport.loopback import LoopbackHub


@pytest.fixture
def strangersconf(mocker):
    """Mocks :func:`strangers.config.load` for a given profile.

    Usage to override the "strangers-store" profile with one "port" key::

        @pytest.fixture
        def myconf(strangersconf):
            strangersconf("strangers-store", port=1234)

        def test_something(myconf):
            ...
    """
    config_registry = {}

    def mocked_loader(profile):
        try:
            return config_registry[profile]
        except KeyError:
            raise KeyError(
                f"Application loads config profile '{profile}', which is not "
                f"configured in strangersconf fixture."
            ) from None

    def configure_func(profile, **kwargs):
        config_registry[profile] = kwargs

    config_load = mocker.patch("strangers.config.load")
    config_load.side_effect = mocked_loader
    yield configure_func
    config_load.stop()


class FakeClock:
    """Wall clock under test control."""

    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def hub():
    return LoopbackHub()


@pytest.fixture
def client_config():
    """Client configuration with timings shrunk to milliseconds."""
    return strangers.config.merge(
        strangers.config.DEFAULTS["strangers-client"],
        {
            "presence": {"count_interval": 0.05},
            "search": {
                "poll_interval": 0.01,
                "max_attempts": 20,
                "dial_delay": 0.005,
                "incoming_timeout": 0.3,
            },
            "transport": {
                "dial_timeout": 0.1,
                "open_timeout": 0.3,
                "recreate_delay": 0.01,
            },
        },
    )


@pytest.fixture
async def make_client(store, hub, client_config):
    """Builds started chat clients sharing one store and one hub."""
    clients = []

    async def factory(identity=None, config=None, start=True):
        client = ChatClient(
            store,
            hub.endpoint,
            MemoryIdentityStore(identity),
            config or client_config,
        )
        clients.append(client)
        if start:
            await client.start()
        return client

    yield factory
    for client in clients:
        await client.close()


@pytest.fixture
def until():
    """Waits for a condition to hold, failing after `timeout` seconds."""

    async def wait(condition, timeout=2):
        async def poll():
            while not condition():
                await asyncio.sleep(0.005)

        await asyncio.wait_for(poll(), timeout)

    return wait
