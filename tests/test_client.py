from __future__ import annotations

import asyncio
from contextlib import closing

import pytest

import aemcached
from aemcached.errors import ServerUnavailable
from tests.conftest import keys_by_server


class TestClient:
    async def test_construction_with_single_server(self, memcached_1):
        client = aemcached.Client(memcached_1.address)
        with closing(client):
            assert list(client.connection_pool.registry) == [
                aemcached.ServerAddress("127.0.0.1", memcached_1.port)
            ]
            assert isinstance(client.protocol, aemcached.TextProtocol)

    async def test_construction_with_multiple_servers(self, memcached_1, memcached_2):
        client = aemcached.Client([("127.0.0.1", memcached_1.port), memcached_2.address])
        with closing(client):
            assert len(client.connection_pool.registry) == 2
            assert await client.version()

    @pytest.mark.parametrize(
        "protocol, expected",
        [
            ("text", aemcached.TextProtocol),
            ("BINARY", aemcached.BinaryProtocol),
            (aemcached.ProtocolType.BINARY, aemcached.BinaryProtocol),
        ],
    )
    def test_protocol_selection(self, protocol, expected):
        client = aemcached.Client("localhost", protocol=protocol)
        assert isinstance(client.protocol, expected)

    def test_invalid_protocol(self):
        with pytest.raises(ValueError):
            aemcached.Client("localhost", protocol="meta")

    def test_duplicate_servers(self):
        with pytest.raises(ValueError, match="Duplicate"):
            aemcached.Client(["localhost", "localhost:11211"])

    async def test_custom_hasher(self, memcached_cluster):
        client = aemcached.Client(
            [server.address for server in memcached_cluster], hasher=lambda key: 1
        )
        with closing(client):
            assert await client.set("key", "value")
            assert await client.set("other", "value")
        assert not memcached_cluster[0].items
        assert set(memcached_cluster[1].items) == {b"key", b"other"}

    async def test_compression_config(self, memcached_1):
        client = aemcached.Client(
            memcached_1.address, compression=aemcached.CompressionConfig(enabled=False)
        )
        with closing(client):
            assert await client.set("key", "a" * 20_000)
        assert memcached_1.items[b"key"].flags == 0

    async def test_values_compressed_on_the_server(self, memcached_1):
        client = aemcached.Client(memcached_1.address)
        with closing(client):
            assert await client.set("key", "a" * 20_000)
            assert b"a" * 20_000 == await client.get("key")
        assert memcached_1.items[b"key"].flags == aemcached.ValuePipeline.F_COMPRESSED
        assert len(memcached_1.items[b"key"].value) < 20_000

    async def test_decode_responses(self, memcached_1):
        client = aemcached.Client(memcached_1.address, decode_responses=True)
        with closing(client):
            assert await client.set("key", "café")
            assert "café" == await client.get("key")

    @pytest.mark.parametrize("protocol", ["text", "binary"])
    async def test_non_default_encoding(self, memcached_1, protocol):
        client = aemcached.Client(memcached_1.address, protocol=protocol, encoding="latin-1")
        with closing(client):
            assert await client.set("café", b"value")
            assert b"value" == await client.get("café")
            assert {"café": b"value"} == await client.get_multi(["café", "thé"])
        assert set(memcached_1.items) == {"café".encode("latin-1")}

    async def test_bytes_keys(self, memcached_1):
        client = aemcached.Client(memcached_1.address)
        with closing(client):
            assert await client.set(b"key", "value")
            assert {"key": b"value"} == await client.get_multi([b"key"])

    async def test_empty_get_multi_sends_nothing(self, memcached_1):
        client = aemcached.Client(memcached_1.address)
        with closing(client):
            assert {} == await client.get_multi([])
        assert memcached_1.requests == []

    async def test_connects_on_first_command(self, memcached_1):
        client = aemcached.Client(memcached_1.address)
        with closing(client):
            await asyncio.sleep(0.01)
            assert memcached_1.connections == 0
            assert not client.connection_pool.connections
            assert await client.set("key", "value")
            assert len(client.connection_pool.connections) == 1

    async def test_close_fails_queued_commands(self, memcached_1):
        client = aemcached.Client(memcached_1.address)
        pending = client.set("key", "value")
        client.close()
        with pytest.raises(ConnectionAbortedError):
            await pending
        assert not memcached_1.items

    async def test_close_while_connecting(self, memcached_1):
        client = aemcached.Client(memcached_1.address)
        pending = client.get("key")
        await asyncio.sleep(0)
        assert client.queue.state is aemcached.DrainState.CONNECTING
        client.close()
        with pytest.raises(ConnectionAbortedError):
            await pending
        await asyncio.sleep(0.1)
        assert not client.connection_pool.connections


class TestUnavailableServers:
    async def test_failed_dial(self, memcached_1):
        servers = [memcached_1.address, "127.0.0.1:1"]
        keys = keys_by_server(servers, count=2)
        client = aemcached.Client(servers)
        with closing(client):
            assert await client.set(keys[0][0], "value")
            with pytest.raises(ServerUnavailable, match="127.0.0.1:1"):
                await client.set(keys[1][0], "value")
            assert {keys[0][0]: b"value"} == await client.get_multi(
                [keys[0][0], keys[1][0], keys[1][1]]
            )
            assert list(await client.version()) == [memcached_1.address]

    async def test_lost_server_stays_unavailable(self, memcached_1):
        client = aemcached.Client(memcached_1.address)
        with closing(client):
            assert await client.set("key", "value")
            memcached_1.drop_connections()
            while client.connection_pool.connections:
                await asyncio.sleep(0.01)
            with pytest.raises(ServerUnavailable):
                await client.set("key", "other")
            assert None is await client.get("key")
            client.reconnect()
            assert b"value" == await client.get("key")

    async def test_reconnect_on_failure(self, memcached_1):
        client = aemcached.Client(memcached_1.address, reconnect_on_failure=True)
        with closing(client):
            assert await client.set("key", "value")
            memcached_1.drop_connections()
            while client.connection_pool.connections:
                await asyncio.sleep(0.01)
            assert b"value" == await client.get("key")

    async def test_pending_requests_fail_on_disconnect(self, memcached_1):
        client = aemcached.Client(memcached_1.address)
        with closing(client):
            assert await client.set("key", "value")
            memcached_1.delay = 0.5
            pending = client.get("key")
            await asyncio.sleep(0.1)
            memcached_1.drop_connections()
            assert None is await pending
