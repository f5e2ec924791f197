import pytest


@pytest.fixture
def anyio_backend():
    # The application is built on asyncio (asyncio.to_thread, asyncio tasks).
    return "asyncio"
