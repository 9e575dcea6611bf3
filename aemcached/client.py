from __future__ import annotations

from asyncio import Future
from collections.abc import Callable, Iterable
from typing import Any

from .commands import Command, CommandKind
from .defaults import CONNECT_TIMEOUT, ENCODING, RECONNECT_ON_FAILURE
from .pool import ConnectionPool
from .protocol import MemcachedProtocol, ProtocolType, create_protocol
from .queue import CommandQueue
from .routing import Hasher
from .serialization import CompressionConfig, ValuePipeline
from .types import KeyT, MemcachedItem, ServerLocator, ValueT
from .utils import decodedstr

MAX_DELTA = 2**64 - 1

Callback = Callable[["Future[Any]"], None]


class Client:
    """
    asyncio memcached client.

    Every operation is queued as soon as it is called and returns an
    :class:`asyncio.Future` for its result. Operations execute one at a
    time in the order they were called, so awaiting them in any order
    (or not at all) never changes the order in which they reach the
    servers::

        client = Client(["10.0.0.1:11211", "10.0.0.2:11211"])
        client.set("counter", 1)
        assert await client.incr("counter") == 2

    A ``callback`` passed to any operation is attached to the returned
    future with :meth:`~asyncio.Future.add_done_callback`.
    """

    connection_pool: ConnectionPool
    protocol: MemcachedProtocol

    def __init__(
        self,
        servers: ServerLocator,
        protocol: ProtocolType | str = ProtocolType.TEXT,
        compression: CompressionConfig | None = None,
        hasher: Hasher | None = None,
        decode_responses: bool = False,
        encoding: str = ENCODING,
        connect_timeout: float | None = CONNECT_TIMEOUT,
        reconnect_on_failure: bool = RECONNECT_ON_FAILURE,
        socket_keepalive: bool | None = True,
        socket_keepalive_options: dict[int, int | bytes] | None = None,
    ) -> None:
        """
        :param servers: The memcached server address(es) as ``"host:port"``
         strings or ``(host, port)`` tuples. Keys are distributed by their
         position in this list.
        :param protocol: The wire protocol to use
        :param compression: Controls compression of stored values
        :param hasher: Hash function used to pick the server for a key
        :param decode_responses: Whether to decode raw values fetched from
         memcached to ``str`` using ``encoding``
        :param encoding: Encoding used for ``str`` keys and values
        :param connect_timeout: Maximum time (in seconds) to wait for each
         server connection to be established
        :param reconnect_on_failure: Start a new connect cycle as soon as an
         established connection is lost. By default lost servers stay
         unavailable until :meth:`reconnect` is called.
        """
        self.decode_responses = decode_responses
        self.encoding = encoding
        self.pipeline = ValuePipeline(
            compression, encoding=encoding, decode_responses=decode_responses
        )
        self.protocol = create_protocol(protocol, self.pipeline)
        self.connection_pool = ConnectionPool(
            servers,
            hasher=hasher,
            encoding=encoding,
            connect_timeout=connect_timeout,
            socket_keepalive=socket_keepalive,
            socket_keepalive_options=socket_keepalive_options,
        )
        self.queue = CommandQueue(
            self.connection_pool, self.protocol, reconnect_on_failure=reconnect_on_failure
        )

    def execute_command(self, command: Command, callback: Callback | None = None) -> Future[Any]:
        self.queue.push(command)
        if callback:
            command.response.add_done_callback(callback)
        return command.response

    def get(self, *keys: KeyT, callback: Callback | None = None) -> Future[Any]:
        """
        Fetch the value of one key, or the values of several keys as a
        list in the same order (``None`` for keys that were not found)
        """
        names = [decodedstr(key, self.encoding) for key in keys]
        if len(names) == 1:
            shape: Callable[[Any], Any] = lambda items: (
                items[names[0]].value if names[0] in items else None
            )
        else:
            shape = lambda items: [items[k].value if k in items else None for k in names]
        return self._enqueue(CommandKind.GET, *keys, callback=callback, shape=shape)

    def get_multi(
        self, keys: Iterable[KeyT], callback: Callback | None = None
    ) -> Future[dict[str, Any]]:
        """
        Fetch several keys, batching the keys of each server into one request
        """
        return self._enqueue(
            CommandKind.GET,
            *keys,
            callback=callback,
            shape=lambda items: {key: item.value for key, item in items.items()},
        )

    def gets(self, *keys: KeyT, callback: Callback | None = None) -> Future[dict[str, MemcachedItem]]:
        """
        Fetch items along with their cas values for use with :meth:`cas`
        """
        return self._enqueue(CommandKind.GETS, *keys, callback=callback)

    def set(
        self,
        key: KeyT,
        value: ValueT,
        exptime: int = 0,
        noreply: bool = False,
        callback: Callback | None = None,
    ) -> Future[bool | None]:
        return self._enqueue(
            CommandKind.SET, key, value=value, exptime=exptime, noreply=noreply, callback=callback
        )

    def add(
        self,
        key: KeyT,
        value: ValueT,
        exptime: int = 0,
        noreply: bool = False,
        callback: Callback | None = None,
    ) -> Future[bool | None]:
        return self._enqueue(
            CommandKind.ADD, key, value=value, exptime=exptime, noreply=noreply, callback=callback
        )

    def replace(
        self,
        key: KeyT,
        value: ValueT,
        exptime: int = 0,
        noreply: bool = False,
        callback: Callback | None = None,
    ) -> Future[bool | None]:
        return self._enqueue(
            CommandKind.REPLACE,
            key,
            value=value,
            exptime=exptime,
            noreply=noreply,
            callback=callback,
        )

    def cas(
        self,
        key: KeyT,
        value: ValueT,
        cas: int,
        exptime: int = 0,
        noreply: bool = False,
        callback: Callback | None = None,
    ) -> Future[bool | None]:
        return self._enqueue(
            CommandKind.CAS,
            key,
            value=value,
            cas=cas,
            exptime=exptime,
            noreply=noreply,
            callback=callback,
        )

    def append(
        self, key: KeyT, value: ValueT, noreply: bool = False, callback: Callback | None = None
    ) -> Future[bool | None]:
        self._check_concatenable(value)
        return self._enqueue(
            CommandKind.APPEND, key, value=value, noreply=noreply, callback=callback
        )

    def prepend(
        self, key: KeyT, value: ValueT, noreply: bool = False, callback: Callback | None = None
    ) -> Future[bool | None]:
        self._check_concatenable(value)
        return self._enqueue(
            CommandKind.PREPEND, key, value=value, noreply=noreply, callback=callback
        )

    def incr(
        self, key: KeyT, delta: int = 1, noreply: bool = False, callback: Callback | None = None
    ) -> Future[int | None]:
        self._check_delta(delta)
        return self._enqueue(
            CommandKind.INCR, key, delta=delta, noreply=noreply, callback=callback
        )

    def decr(
        self, key: KeyT, delta: int = 1, noreply: bool = False, callback: Callback | None = None
    ) -> Future[int | None]:
        self._check_delta(delta)
        return self._enqueue(
            CommandKind.DECR, key, delta=delta, noreply=noreply, callback=callback
        )

    def delete(
        self, key: KeyT, noreply: bool = False, callback: Callback | None = None
    ) -> Future[bool | None]:
        return self._enqueue(CommandKind.DELETE, key, noreply=noreply, callback=callback)

    remove = delete

    def stats(
        self, name: str | None = None, callback: Callback | None = None
    ) -> Future[dict[str, dict[str, str]]]:
        """
        Statistics of every server keyed by ``host:port``
        """
        return self._enqueue(CommandKind.STATS, argument=name, callback=callback)

    def flush_all(self, delay: int = 0, callback: Callback | None = None) -> Future[bool]:
        return self._enqueue(CommandKind.FLUSH_ALL, argument=delay, callback=callback)

    def version(self, callback: Callback | None = None) -> Future[dict[str, str]]:
        return self._enqueue(CommandKind.VERSION, callback=callback)

    def reconnect(self) -> None:
        """
        Open fresh connections to every server before the next
        queued command executes
        """
        self.queue.reconnect()

    def close(self) -> None:
        self.queue.close()

    def _enqueue(
        self, kind: CommandKind, *keys: KeyT, callback: Callback | None = None, **kwargs: Any
    ) -> Future[Any]:
        command = Command(kind, tuple(decodedstr(key, self.encoding) for key in keys), **kwargs)
        return self.execute_command(command, callback)

    @staticmethod
    def _check_delta(delta: int) -> None:
        if not 0 <= delta <= MAX_DELTA:
            raise ValueError(f"delta must be between 0 and {MAX_DELTA}, not {delta}")

    @staticmethod
    def _check_concatenable(value: ValueT) -> None:
        if not ValuePipeline.is_scalar(value):
            raise TypeError(
                f"Only bytes, str or int values can be appended or prepended, not {type(value).__name__}"
            )
