from __future__ import annotations

import asyncio
import enum
import logging
from asyncio import get_running_loop
from collections import deque

from .barrier import JoinBarrier
from .commands import Command
from .errors import MemcachedError
from .pool import ConnectionPool
from .protocol import MemcachedProtocol
from .types import ServerAddress

logger = logging.getLogger(__name__)


class DrainState(enum.Enum):
    #: No connections are open. Queued commands wait for the next drain.
    DISCONNECTED = enum.auto()
    #: Connections to every server are being opened
    CONNECTING = enum.auto()
    #: Connected with no command executing
    IDLE = enum.auto()
    #: A command is executing. Nothing else is popped until it completes.
    EXECUTING = enum.auto()


class CommandQueue:
    """
    FIFO of pending commands and the drain loop that executes them,
    one at a time, in the order they were pushed.

    A command is only popped once the previous one has fully completed,
    including every server it fanned out to, so responses from one
    command can never interleave with those of another.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        protocol: MemcachedProtocol,
        reconnect_on_failure: bool = False,
    ) -> None:
        self.pool = pool
        self.protocol = protocol
        self.reconnect_on_failure = reconnect_on_failure
        self.pool.on_connection_lost = self._connection_lost
        self._queue: deque[Command] = deque()
        self._connection_state = DrainState.DISCONNECTED
        self._active: Command | None = None
        self._task: asyncio.Task[None] | None = None
        self._barrier: JoinBarrier | None = None

    @property
    def state(self) -> DrainState:
        if self._connection_state is not DrainState.IDLE:
            return self._connection_state
        return DrainState.EXECUTING if self._active else DrainState.IDLE

    @property
    def active(self) -> Command | None:
        return self._active

    def __len__(self) -> int:
        return len(self._queue)

    def push(self, command: Command) -> None:
        self._queue.append(command)
        get_running_loop().call_soon(self.drain)

    def drain(self) -> None:
        match self._connection_state:
            case DrainState.CONNECTING:
                return
            case DrainState.DISCONNECTED:
                if self._active is None and self._queue:
                    self._connect()
                return
        if self._active is not None or not self._queue:
            return
        command = self._queue.popleft()
        self._active = command
        self._task = asyncio.ensure_future(self._execute(command))
        self._task.add_done_callback(self._finished)

    def reconnect(self) -> None:
        """
        Start a fresh connect cycle before the next command executes.
        The connections of the current cycle are closed once the new
        ones are established.
        """
        if self._connection_state is DrainState.CONNECTING:
            return
        self._connection_state = DrainState.DISCONNECTED
        get_running_loop().call_soon(self.drain)

    def close(self) -> None:
        """
        Close all connections and fail every command still waiting in
        the queue
        """
        self.pool.close()
        self._barrier = None
        self._connection_state = DrainState.DISCONNECTED
        while self._queue:
            self._queue.popleft().fail(ConnectionAbortedError("Client closed"))

    def _connect(self) -> None:
        self._connection_state = DrainState.CONNECTING
        logger.debug(f"Connecting to {len(self.pool.registry)} memcached server(s)")
        barrier = self._barrier = self.pool.connect_all(self.protocol.prepare_connection)
        barrier.on_done(lambda: self._connected(barrier))

    def _connected(self, barrier: JoinBarrier) -> None:
        if barrier is not self._barrier or self._connection_state is not DrainState.CONNECTING:
            return
        self._barrier = None
        self._connection_state = DrainState.IDLE
        self.drain()

    async def _execute(self, command: Command) -> None:
        try:
            command.settle(await self.protocol.execute(self.pool, command))
        except (MemcachedError, ConnectionError) as e:
            command.fail(e)
        except Exception as e:
            logger.exception(f"Unexpected error executing {command.kind.value}")
            command.fail(e)

    def _finished(self, task: asyncio.Task[None]) -> None:
        if task.cancelled() and self._active:
            self._active.response.cancel()
        self._active = None
        self._task = None
        self.drain()

    def _connection_lost(self, address: ServerAddress) -> None:
        if self.reconnect_on_failure:
            logger.info(f"Reconnecting after losing memcached server at {address}")
            self.reconnect()
