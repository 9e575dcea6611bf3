from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from asyncio import CancelledError, Future
from collections.abc import Callable
from functools import partial
from typing import TYPE_CHECKING, Any

from ..barrier import JoinBarrier
from ..commands import Command, CommandKind
from ..connection import BaseConnection, ResponseParser
from ..errors import AemcachedConnectionError, FramingError
from ..serialization import ValuePipeline
from ..types import MemcachedItem, ServerAddress

if TYPE_CHECKING:
    from ..pool import ConnectionPool

logger = logging.getLogger(__name__)

#: Request bytes and the parser for the response they elicit
Exchange = tuple[bytes, ResponseParser | None]


class MemcachedProtocol(ABC):
    """
    Base class for the wire protocol codecs.

    Subclasses encode each kind of command into request bytes paired
    with a parser for the response. This class routes those exchanges
    to the right connections and, for commands that span several
    servers, joins the per-server branches with a
    :class:`~aemcached.barrier.JoinBarrier`.
    """

    def __init__(self, pipeline: ValuePipeline | None = None) -> None:
        self.pipeline = pipeline or ValuePipeline()

    def prepare_connection(self, connection: BaseConnection) -> None:
        """
        Called with every newly established connection before it is
        made available to commands
        """
        pass

    async def execute(self, pool: ConnectionPool, command: Command) -> Any:
        match command.kind:
            case CommandKind.GET | CommandKind.GETS:
                return await self.fetch(pool, command.keys, with_cas=command.kind is CommandKind.GETS)
            case CommandKind.INCR | CommandKind.DECR:
                return await self._exchange(pool, command, self.arithmetic_request(command))
            case CommandKind.DELETE:
                return await self._exchange(pool, command, self.delete_request(command))
            case CommandKind.STATS:
                return await self.stats(pool, command.argument)
            case CommandKind.FLUSH_ALL:
                return await self.flush_all(pool, int(command.argument or 0))
            case CommandKind.VERSION:
                return await self.version(pool)
            case _:
                return await self._exchange(pool, command, self.store_request(command))

    async def fetch(
        self, pool: ConnectionPool, keys: tuple[str, ...], with_cas: bool = False
    ) -> dict[str, MemcachedItem]:
        """
        Fetch ``keys`` with one batched request per server
        """
        if not keys:
            return {}
        exchanges: dict[ServerAddress, Future[Any]] = {}
        for address, batch in pool.group(keys).items():
            try:
                connection = pool.connection_for(address)
            except AemcachedConnectionError as e:
                logger.warning(f"Skipping {len(batch)} key(s): {e}")
                continue
            exchanges[address] = connection.request(*self.fetch_request(batch, with_cas))
        items: dict[str, MemcachedItem] = {}
        for address, outcome in (await self._join(exchanges)).items():
            for key, item in (self._branch_result(address, outcome) or {}).items():
                try:
                    item.value = self.pipeline.decode(item.value, item.flags)
                except Exception as e:
                    logger.warning(f"Unable to decode value of {key!r} from {address}: {e}")
                    continue
                items[key] = item
        return items

    async def stats(
        self, pool: ConnectionPool, name: str | int | None = None
    ) -> dict[str, dict[str, str]]:
        results = await self._broadcast(pool, lambda: self.stats_request(name))
        return {str(address): stats for address, stats in results.items()}

    async def flush_all(self, pool: ConnectionPool, delay: int = 0) -> bool:
        results = await self._broadcast(pool, lambda: self.flush_all_request(delay))
        return bool(results) and all(results.values())

    async def version(self, pool: ConnectionPool) -> dict[str, str]:
        results = await self._broadcast(pool, self.version_request)
        return {str(address): version for address, version in results.items()}

    @abstractmethod
    def fetch_request(self, keys: list[str], with_cas: bool) -> Exchange: ...

    @abstractmethod
    def store_request(self, command: Command) -> Exchange: ...

    @abstractmethod
    def arithmetic_request(self, command: Command) -> Exchange: ...

    @abstractmethod
    def delete_request(self, command: Command) -> Exchange: ...

    @abstractmethod
    def stats_request(self, name: str | int | None) -> Exchange: ...

    @abstractmethod
    def flush_all_request(self, delay: int) -> Exchange: ...

    @abstractmethod
    def version_request(self) -> Exchange: ...

    async def _exchange(self, pool: ConnectionPool, command: Command, exchange: Exchange) -> Any:
        connection = pool.connection_for_key(command.key)
        future = connection.request(*exchange)
        if command.noreply:
            if not future.done():
                future.add_done_callback(partial(self._quiet_reply, connection.address))
            return None
        return await future

    async def _broadcast(
        self, pool: ConnectionPool, exchange: Callable[[], Exchange]
    ) -> dict[ServerAddress, Any]:
        """
        Send the same request to every connected server and collect the
        successful replies
        """
        exchanges: dict[ServerAddress, Future[Any]] = {}
        for address in pool.registry:
            try:
                connection = pool.connection_for(address)
            except AemcachedConnectionError as e:
                logger.warning(f"Skipping server: {e}")
                continue
            exchanges[address] = connection.request(*exchange())
        results = {}
        for address, outcome in (await self._join(exchanges)).items():
            result = self._branch_result(address, outcome)
            if result is not None:
                results[address] = result
        return results

    async def _join(
        self, exchanges: dict[ServerAddress, Future[Any]]
    ) -> dict[ServerAddress, Any]:
        """
        Wait for every branch of a fan-out. The outcome of each branch is
        either its result or the exception it failed with.
        """
        outcomes: dict[ServerAddress, Any] = {}
        if not exchanges:
            return outcomes
        barrier = JoinBarrier()
        barrier.register(len(exchanges))
        for address, future in exchanges.items():
            future.add_done_callback(partial(self._settle, barrier, outcomes, address))
        await barrier.wait()
        return outcomes

    @staticmethod
    def _settle(
        barrier: JoinBarrier,
        outcomes: dict[ServerAddress, Any],
        address: ServerAddress,
        future: Future[Any],
    ) -> None:
        if future.cancelled():
            outcomes[address] = CancelledError()
        else:
            outcomes[address] = future.exception() or future.result()
        barrier.complete()

    @staticmethod
    def _branch_result(address: ServerAddress, outcome: Any) -> Any:
        if isinstance(outcome, FramingError):
            raise outcome
        if isinstance(outcome, BaseException):
            logger.warning(f"Request to memcached server at {address} failed: {outcome}")
            return None
        return outcome

    @staticmethod
    def _quiet_reply(address: ServerAddress, future: Future[Any]) -> None:
        if not future.cancelled() and (error := future.exception()):
            logger.warning(f"Quiet request to memcached server at {address} failed: {error}")
