from __future__ import annotations

import asyncio
import dataclasses
import logging
import socket
import time
import weakref
from asyncio import BaseProtocol, BaseTransport, Future, Transport, get_running_loop
from collections import deque
from collections.abc import Callable
from io import BytesIO
from typing import Any, NotRequired, TypedDict, Unpack, cast

from .errors import AemcachedConnectionError, FramingError, MemcachedError, NotEnoughData
from .types import ServerAddress

logger = logging.getLogger(__name__)

#: Parses one complete response out of the read buffer, raising
#: :exc:`~aemcached.errors.NotEnoughData` if it isn't all there yet.
ResponseParser = Callable[[BytesIO], Any]


class ConnectionParams(TypedDict):
    connect_timeout: NotRequired[float | None]
    socket_keepalive: NotRequired[bool | None]
    socket_keepalive_options: NotRequired[dict[int, int | bytes] | None]


@dataclasses.dataclass
class Request:
    connection: weakref.ProxyType[BaseConnection]
    parser: ResponseParser
    future: Future = dataclasses.field(  # type: ignore[type-arg]
        default_factory=lambda: get_running_loop().create_future(),
    )
    created_at: float = dataclasses.field(default_factory=lambda: time.time())

    def __post_init__(self) -> None:
        self.connection.metrics.requests_pending += 1
        self.future.add_done_callback(self.cleanup)

    def cleanup(self, future: Future) -> None:  # type: ignore[type-arg]
        metrics = self.connection.metrics
        metrics.last_request_processed = time.time()
        metrics.requests_pending -= 1
        if future.done() and not future.cancelled():
            if not self.future.exception():
                metrics.requests_processed += 1
                metrics.average_response_time = (
                    (time.time() - self.created_at)
                    + metrics.average_response_time * (metrics.requests_processed - 1)
                ) / metrics.requests_processed
            else:
                metrics.requests_failed += 1


@dataclasses.dataclass
class ConnectionMetrics:
    created_at: float = dataclasses.field(default_factory=lambda: time.time())
    requests_processed: int = 0
    requests_failed: int = 0
    last_written: float = 0.0
    last_read: float = 0.0
    last_request_processed: float = 0.0
    average_response_time: float = 0.0
    requests_pending: int = 0


class BaseConnection(BaseProtocol):
    """Wraps an asyncio transport using a custom protocol.

    Requests are written as soon as they are created and their parsers
    are queued in the same order, so responses are matched to requests
    by position.
    """

    def __init__(
        self,
        address: ServerAddress,
        connect_timeout: float | None = None,
        socket_keepalive: bool | None = True,
        socket_keepalive_options: dict[int, int | bytes] | None = None,
        on_disconnect: Callable[[BaseConnection], None] | None = None,
    ) -> None:
        self.address = address
        self._connect_timeout: float | None = connect_timeout
        self._socket_keepalive: bool | None = socket_keepalive
        self._socket_keepalive_options: dict[int, int | bytes] = socket_keepalive_options or {}
        self._on_disconnect = on_disconnect
        self._last_error: Exception | None = None
        self._transport: Transport | None = None
        self._buffer = BytesIO()
        self._request_queue: deque[Request] = deque()
        self._closed = False
        self.metrics: ConnectionMetrics = ConnectionMetrics()

    async def connect(self) -> None:
        raise NotImplementedError

    @property
    def connected(self) -> bool:
        return self._transport is not None and not self._closed

    def request(self, data: bytes, parser: ResponseParser | None = None) -> Future[Any]:
        """
        Write ``data`` to the server. If a ``parser`` is given the
        returned future resolves with its result once the response
        arrives, otherwise it is already resolved with ``None``.
        """
        if not self.connected:
            raise AemcachedConnectionError(
                str(self._last_error or "Connection lost"), address=self.address
            )
        assert self._transport
        self._transport.write(data)
        self.metrics.last_written = time.time()
        if parser is None:
            future: Future[Any] = get_running_loop().create_future()
            future.set_result(None)
            return future
        request = Request(weakref.proxy(self), parser)
        self._request_queue.append(request)
        return request.future

    def close(self) -> None:
        self._last_error = self._last_error or ConnectionAbortedError("Connection closed")
        self.disconnect()

    def disconnect(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._transport:
            try:
                self._transport.close()
            except RuntimeError:  # noqa
                pass

        while True:
            try:
                request = self._request_queue.popleft()
                if not request.future.done():
                    request.future.set_exception(
                        AemcachedConnectionError(
                            str(self._last_error or "Connection lost"), address=self.address
                        )
                    )
            except IndexError:
                break
        if self._on_disconnect:
            self._on_disconnect(self)

    def connection_made(self, transport: BaseTransport) -> None:
        self._transport = cast(Transport, transport)
        if (sock := self._transport.get_extra_info("socket")) is not None:
            try:
                if self._socket_keepalive:
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
                    for k, v in self._socket_keepalive_options.items():
                        sock.setsockopt(socket.SOL_TCP, k, v)
            except (OSError, TypeError):
                transport.close()
                raise
        logger.debug(f"Connected to memcached server at {self.address}")

    def data_received(self, data: bytes) -> None:
        self.metrics.last_read = time.time()
        self._buffer = BytesIO(self._buffer.read() + data)
        while self._request_queue:
            request = self._request_queue.popleft()
            start = self._buffer.tell()
            try:
                response = request.parser(self._buffer)
                if not (request.future.cancelled() or request.future.done()):
                    request.future.set_result(response)
            except NotEnoughData:
                self._buffer.seek(start)
                self._request_queue.appendleft(request)
                break
            except FramingError as e:
                self._buffer = BytesIO()
                if not (request.future.cancelled() or request.future.done()):
                    request.future.set_exception(e)
                break
            except MemcachedError as e:
                if not (request.future.cancelled() or request.future.done()):
                    request.future.set_exception(e)

    def connection_lost(self, exc: Exception | None) -> None:
        if exc:
            self._last_error = exc
        if not self._closed:
            logger.warning(
                f"Lost connection to memcached server at {self.address}: {exc or 'connection closed'}"
            )
        self.disconnect()

    def eof_received(self) -> None:
        if not self._closed:
            logger.warning(f"Unexpected end of stream from memcached server at {self.address}")
        self.disconnect()


class TCPConnection(BaseConnection):
    def __init__(
        self,
        address: ServerAddress,
        on_disconnect: Callable[[BaseConnection], None] | None = None,
        **kwargs: Unpack[ConnectionParams],
    ) -> None:
        super().__init__(address, on_disconnect=on_disconnect, **kwargs)

    async def connect(self) -> None:
        if self._transport:
            return
        try:
            async with asyncio.timeout(self._connect_timeout):
                await get_running_loop().create_connection(
                    lambda: self, host=self.address.host, port=self.address.port
                )
        except TimeoutError:
            msg = f"Unable to establish a connection within {self._connect_timeout} seconds"
            raise AemcachedConnectionError(msg, address=self.address)
        except OSError as e:
            raise AemcachedConnectionError(
                f"Unable to establish a connection: {e}", address=self.address
            ) from e
