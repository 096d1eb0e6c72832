"""Shared fixtures: an in-process mock OBS server and a client pointed at it."""

import pytest_asyncio

from mock_obs_server import MockOBSServer, make_client


@pytest_asyncio.fixture
async def mock_server():
    server = MockOBSServer()
    await server.start()
    yield server
    await server.stop()


@pytest_asyncio.fixture
async def client(mock_server):
    c = make_client(mock_server)
    yield c
    await c.disconnect()


@pytest_asyncio.fixture
async def connected_client(client):
    result = await client.connect()
    assert result.success, result.error
    return client
