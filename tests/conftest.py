import pytest
import pytest_asyncio

from server.config import RelayConfig
from server.storage import InMemoryMessageLedger
from tests.support import SECRET


@pytest.fixture
def relay_config() -> RelayConfig:
    return RelayConfig(
        host="127.0.0.1",
        port=0,
        jwt_secret=SECRET,
        ledger_backend="memory",
        handshake_timeout=0.5,
    )


@pytest_asyncio.fixture
async def relay(relay_config):
    """A real relay listening on an ephemeral port."""
    from server.server import RelayServer

    server = RelayServer(relay_config, ledger=InMemoryMessageLedger())
    await server.start()
    try:
        yield server
    finally:
        await server.stop()


@pytest.fixture
def relay_url(relay) -> str:
    return f"ws://127.0.0.1:{relay.port}"
