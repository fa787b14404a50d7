import pytest

from ircharness import HarnessConfig, TestIRCClient
from helpers import FakeConnection, FakeIRCServer, connect_registered


@pytest.fixture
def config():
    cfg = HarnessConfig(config_file=None)
    cfg.set('server', 'host', value='127.0.0.1')
    cfg.set('timeouts', 'connect', value=2.0)
    cfg.set('timeouts', 'wait', value=1.0)
    return cfg


@pytest.fixture
def fake_connection():
    return FakeConnection()


@pytest.fixture
async def client(fake_connection, config):
    """A registered client on a FakeConnection."""
    return await connect_registered(TestIRCClient(connection=fake_connection, config=config),
                                    fake_connection)


@pytest.fixture
async def irc_server():
    server = await FakeIRCServer().start()
    yield server
    await server.stop()


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    monkeypatch.delenv('IRC_HOST', raising=False)
    monkeypatch.delenv('IRC_PORT', raising=False)
