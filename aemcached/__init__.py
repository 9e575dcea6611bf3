"""aemcached

asyncio memcached client with a sequenced command queue
"""

from __future__ import annotations

from . import defaults, errors
from .barrier import JoinBarrier
from .client import Client
from .commands import Command, CommandKind
from .connection import BaseConnection, ConnectionMetrics, ConnectionParams, TCPConnection
from .pool import ConnectionPool
from .protocol import BinaryProtocol, MemcachedProtocol, ProtocolType, TextProtocol, create_protocol
from .queue import CommandQueue, DrainState
from .routing import KeyDistributor, Murmur3Hasher, ServerRegistry, crc32_hash
from .serialization import (
    CompressionConfig,
    ValuePipeline,
    ZlibCompressor,
    ZstdCompressor,
)
from .types import MemcachedItem, ServerAddress

__all__ = [
    "BaseConnection",
    "BinaryProtocol",
    "Client",
    "Command",
    "CommandKind",
    "CommandQueue",
    "CompressionConfig",
    "ConnectionMetrics",
    "ConnectionParams",
    "ConnectionPool",
    "DrainState",
    "JoinBarrier",
    "KeyDistributor",
    "MemcachedItem",
    "MemcachedProtocol",
    "Murmur3Hasher",
    "ProtocolType",
    "ServerAddress",
    "ServerRegistry",
    "TCPConnection",
    "TextProtocol",
    "ValuePipeline",
    "ZlibCompressor",
    "ZstdCompressor",
    "crc32_hash",
    "create_protocol",
    "defaults",
    "errors",
]
__version__ = "0.1.0"
