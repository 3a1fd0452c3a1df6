import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from pagesync.core.config import RelayConfig
from pagesync.server.gateway import make_app
from pagesync.server.runtime import RelayRuntime


class FakeClock:
    """Callable epoch-ms clock that only moves when told to."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    # long timers so background loops never fire during a test
    return RelayConfig(
        inactivity_ttl_ms=60_000,
        cleanup_interval_ms=3_600_000,
        heartbeat_interval_ms=3_600_000,
    )


@pytest.fixture
def runtime(config, clock):
    return RelayRuntime(config, now=clock)


@pytest_asyncio.fixture
async def client(runtime):
    async with TestClient(TestServer(make_app(runtime))) as c:
        yield c
