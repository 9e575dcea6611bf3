from __future__ import annotations

import importlib.util
import zlib
from collections.abc import Iterable, Iterator, Sequence
from typing import Protocol

from .defaults import ENCODING
from .types import KeyT, ServerAddress
from .utils import bytestr

MMH3_AVAILABLE = importlib.util.find_spec("mmh3") is not None


class Hasher(Protocol):
    def __call__(self, key: bytes) -> int: ...


def crc32_hash(key: KeyT) -> int:
    """
    Upper 15 bits of the key's CRC32. This is the hash used by
    ``Cache::Memcached`` and friends, so keys land on the same servers
    as in those clients.
    """
    return (zlib.crc32(bytestr(key)) >> 16) & 0x7FFF


class Murmur3Hasher:
    """
    Unsigned 32 bit murmur3 hash of the key. Requires the
    ``mmh3`` package (``pip install aemcached[mmh3]``).
    """

    def __init__(self, seed: int = 0) -> None:
        if not MMH3_AVAILABLE:
            raise RuntimeError("Murmur3Hasher requires the mmh3 package to be installed")
        import mmh3

        self._mmh3 = mmh3
        self.seed = seed

    def __call__(self, key: KeyT) -> int:
        return self._mmh3.hash(bytestr(key), self.seed, signed=False)


class ServerRegistry(Sequence[ServerAddress]):
    """
    Immutable, ordered list of memcached servers. The position of a
    server is its identity: it is the target of the modulo in
    :class:`KeyDistributor` so the order must never change for the
    lifetime of a client.
    """

    def __init__(self, addresses: Iterable[ServerAddress]) -> None:
        self._addresses: tuple[ServerAddress, ...] = tuple(addresses)
        if not self._addresses:
            raise ValueError("At least one memcached server is required")
        if len(set(self._addresses)) != len(self._addresses):
            raise ValueError(f"Duplicate servers in {[str(a) for a in self._addresses]}")

    def __getitem__(self, index):  # type: ignore[no-untyped-def]
        return self._addresses[index]

    def __len__(self) -> int:
        return len(self._addresses)

    def __iter__(self) -> Iterator[ServerAddress]:
        return iter(self._addresses)

    def __repr__(self) -> str:
        return f"ServerRegistry([{', '.join(str(a) for a in self._addresses)}])"


class KeyDistributor:
    """
    Static modulo sharding: ``hash(key) % len(registry)``. Keys are
    hashed as the bytes sent on the wire, encoded with ``encoding``.

    Unlike consistent hashing, changing the number of servers remaps
    almost every key.
    """

    def __init__(
        self, registry: ServerRegistry, hasher: Hasher | None = None, encoding: str = ENCODING
    ) -> None:
        self.registry = registry
        self.encoding = encoding
        self._hasher: Hasher = hasher or crc32_hash

    def index(self, key: KeyT) -> int:
        return self._hasher(bytestr(key, self.encoding)) % len(self.registry)

    def server(self, key: KeyT) -> ServerAddress:
        return self.registry[self.index(key)]

    def group(self, keys: Iterable[str]) -> dict[int, list[str]]:
        """
        Group keys by the index of the server they map to, preserving
        the order in which servers and keys are first seen.
        """
        groups: dict[int, list[str]] = {}
        seen: set[str] = set()
        for key in keys:
            if key in seen:
                continue
            seen.add(key)
            groups.setdefault(self.index(key), []).append(key)
        return groups
