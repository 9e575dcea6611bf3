from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NamedTuple, Sequence, TypeGuard

from .defaults import DEFAULT_PORT

KeyT = str | bytes
ValueT = Any


class ServerAddress(NamedTuple):
    host: str
    port: int = DEFAULT_PORT

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


SingleServerLocator = str | ServerAddress | tuple[str, int]
ServerLocator = SingleServerLocator | Sequence[SingleServerLocator]


def is_single_server(locator: ServerLocator) -> TypeGuard[SingleServerLocator]:
    if isinstance(locator, (str, ServerAddress)):
        return True
    if (
        isinstance(locator, Sequence)
        and len(locator) == 2
        and isinstance(locator[0], str)
        and isinstance(locator[1], int)
    ):
        return True
    return False


def normalize_address(locator: SingleServerLocator) -> ServerAddress:
    """
    Convert ``"host:port"``, ``"host"`` or ``(host, port)`` into a
    :class:`ServerAddress`
    """
    if isinstance(locator, ServerAddress):
        return locator
    if isinstance(locator, str):
        host, _, port = locator.rpartition(":")
        if not host:
            return ServerAddress(port)
        return ServerAddress(host, int(port))
    host, port = locator
    return ServerAddress(host, int(port))


def normalize_locator(locator: ServerLocator) -> list[ServerAddress]:
    if is_single_server(locator):
        return [normalize_address(locator)]
    return [normalize_address(single) for single in locator]


@dataclass
class MemcachedItem:
    key: str
    flags: int
    size: int
    cas: int | None
    value: Any
