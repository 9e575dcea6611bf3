from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping
from contextlib import suppress
from types import MappingProxyType
from typing import Unpack

from .barrier import JoinBarrier
from .connection import BaseConnection, ConnectionParams, TCPConnection
from .defaults import ENCODING
from .errors import AemcachedConnectionError, ServerUnavailable
from .routing import Hasher, KeyDistributor, ServerRegistry
from .types import KeyT, ServerAddress, ServerLocator, normalize_locator

logger = logging.getLogger(__name__)


class ConnectionPool:
    """
    Holds exactly one connection per memcached server.

    Connections are opened together by :meth:`connect_all` and become
    visible all at once when every dial has finished. A connection
    that fails is dropped and is not replaced until the next connect
    cycle.
    """

    def __init__(
        self,
        servers: ServerLocator,
        hasher: Hasher | None = None,
        on_connection_lost: Callable[[ServerAddress], None] | None = None,
        encoding: str = ENCODING,
        **connection_args: Unpack[ConnectionParams],
    ) -> None:
        """
        :param servers: The memcached server address(es). The order is significant
         as it determines which server each key is stored on.
        :param hasher: Hash function used to distribute keys. Defaults to
         :func:`~aemcached.routing.crc32_hash`
        :param on_connection_lost: Called with the server address whenever an
         established connection is lost
        :param encoding: Encoding used to turn ``str`` keys into the bytes that are hashed
        :param connection_args: Arguments to pass to the constructor of
         :class:`~aemcached.connection.TCPConnection`.
        """
        self.registry = ServerRegistry(normalize_locator(servers))
        self.distributor = KeyDistributor(self.registry, hasher, encoding)
        self.on_connection_lost = on_connection_lost
        self._connection_parameters: ConnectionParams = connection_args
        self._connections: Mapping[ServerAddress, BaseConnection] = MappingProxyType({})
        self._dials: set[asyncio.Task[None]] = set()
        #: Incremented by each connect cycle and by close. Only the latest
        #: cycle installs its connections.
        self._generation = 0

    @property
    def connections(self) -> Mapping[ServerAddress, BaseConnection]:
        return self._connections

    def connect_all(
        self, prepare: Callable[[BaseConnection], None] | None = None
    ) -> JoinBarrier:
        """
        Dial every server concurrently. The returned barrier fires once
        every dial has either succeeded or failed, by which time the
        successful connections have replaced any previous ones.

        :param prepare: Called with each connection as soon as it is established
        """
        handles: dict[ServerAddress, BaseConnection] = {}
        self._generation += 1
        generation = self._generation
        barrier = JoinBarrier()
        barrier.register(len(self.registry))
        barrier.on_done(lambda: self._established(handles, generation))
        for address in self.registry:
            task = asyncio.ensure_future(self._open(address, handles, prepare))
            self._dials.add(task)
            task.add_done_callback(lambda t: self._dialed(t, barrier))
        return barrier

    def connection_for(self, address: ServerAddress) -> BaseConnection:
        connection = self._connections.get(address)
        if connection is None or not connection.connected:
            raise ServerUnavailable(address)
        return connection

    def connection_for_key(self, key: KeyT) -> BaseConnection:
        return self.connection_for(self.distributor.server(key))

    def group(self, keys: Iterable[str]) -> dict[ServerAddress, list[str]]:
        """
        Split ``keys`` into one batch per server
        """
        return {
            self.registry[index]: batch for index, batch in self.distributor.group(keys).items()
        }

    def close(self) -> None:
        """
        Disconnects all established connections
        """
        self._generation += 1
        connections, self._connections = self._connections, MappingProxyType({})
        for connection in connections.values():
            connection.close()

    async def _open(
        self,
        address: ServerAddress,
        handles: dict[ServerAddress, BaseConnection],
        prepare: Callable[[BaseConnection], None] | None,
    ) -> None:
        connection = TCPConnection(
            address, on_disconnect=self._connection_lost, **self._connection_parameters
        )
        try:
            await connection.connect()
        except AemcachedConnectionError as e:
            logger.warning(f"Unable to connect to memcached server at {address}: {e}")
            return
        if prepare:
            try:
                prepare(connection)
            except Exception:
                connection.close()
                raise
        handles[address] = connection

    def _dialed(self, task: asyncio.Task[None], barrier: JoinBarrier) -> None:
        self._dials.discard(task)
        if not task.cancelled() and (error := task.exception()):
            logger.error("Unexpected error while connecting to memcached", exc_info=error)
        barrier.complete()

    def _established(self, handles: dict[ServerAddress, BaseConnection], generation: int) -> None:
        if generation != self._generation:
            logger.debug("Discarding connections of a superseded connect cycle")
            for connection in handles.values():
                connection.close()
            return
        stale, self._connections = self._connections, MappingProxyType(dict(handles))
        for connection in stale.values():
            connection.close()
        logger.debug(
            f"Connected to {len(handles)} of {len(self.registry)} memcached servers"
        )

    def _connection_lost(self, connection: BaseConnection) -> None:
        if self._connections.get(connection.address) is not connection:
            return
        self._connections = MappingProxyType(
            {
                address: established
                for address, established in self._connections.items()
                if established is not connection
            }
        )
        if self.on_connection_lost:
            self.on_connection_lost(connection.address)

    def __del__(self) -> None:
        with suppress(RuntimeError):
            self.close()
