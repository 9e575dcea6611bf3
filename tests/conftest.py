from __future__ import annotations

import asyncio

import pytest
from pytest_lazy_fixtures import lf

import aemcached
from aemcached.routing import KeyDistributor, ServerRegistry
from aemcached.types import normalize_locator
from tests.memcached_server import FakeMemcached


@pytest.fixture
async def memcached_1():
    server = await FakeMemcached().start()
    yield server
    await server.stop()


@pytest.fixture
async def memcached_2():
    server = await FakeMemcached().start()
    yield server
    await server.stop()


@pytest.fixture
async def memcached_cluster(memcached_1, memcached_2):
    yield (memcached_1, memcached_2)


@pytest.fixture
async def memcached_text_client(memcached_1):
    client = aemcached.Client(memcached_1.address)
    yield client
    client.close()


@pytest.fixture
async def memcached_binary_client(memcached_1):
    client = aemcached.Client(memcached_1.address, protocol=aemcached.ProtocolType.BINARY)
    yield client
    client.close()


@pytest.fixture
async def memcached_text_cluster_client(memcached_1, memcached_2):
    client = aemcached.Client([memcached_1.address, memcached_2.address])
    yield client
    client.close()


@pytest.fixture
async def memcached_binary_cluster_client(memcached_1, memcached_2):
    client = aemcached.Client([memcached_1.address, memcached_2.address], protocol="binary")
    yield client
    client.close()


def targets(*targets):
    return pytest.mark.parametrize(
        "client",
        [pytest.param(lf(target)) for target in targets],
    )


def keys_by_server(servers, count=4, prefix="key"):
    """
    Generate ``count`` keys for each server, grouped by the index
    the default distributor maps them to
    """
    distributor = KeyDistributor(ServerRegistry(normalize_locator(servers)))
    keys: dict[int, list[str]] = {index: [] for index in range(len(servers))}
    i = 0
    while any(len(batch) < count for batch in keys.values()):
        key = f"{prefix}-{i}"
        batch = keys[distributor.index(key)]
        if len(batch) < count:
            batch.append(key)
        i += 1
    return keys


@pytest.fixture(autouse=True)
async def wait_for_async_tasks():
    yield
    pending = {t for t in asyncio.all_tasks() if t is not asyncio.current_task() and not t.done()}
    [t.cancel() for t in pending]
    await asyncio.gather(*pending, return_exceptions=True)
