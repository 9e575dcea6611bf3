from __future__ import annotations

import enum

from ..serialization import ValuePipeline
from .base import MemcachedProtocol
from .binary import BinaryProtocol
from .text import TextProtocol


class ProtocolType(enum.Enum):
    """
    Wire protocol used to talk to the memcached servers
    """

    #: The line oriented text protocol
    TEXT = "text"
    #: The fixed header binary protocol
    BINARY = "binary"


def create_protocol(
    protocol: ProtocolType | str, pipeline: ValuePipeline | None = None
) -> MemcachedProtocol:
    """
    Build the codec for ``protocol``. Strings are matched case
    insensitively against the :class:`ProtocolType` values.
    """
    kind = protocol if isinstance(protocol, ProtocolType) else ProtocolType(protocol.lower())
    match kind:
        case ProtocolType.TEXT:
            return TextProtocol(pipeline)
        case ProtocolType.BINARY:
            return BinaryProtocol(pipeline)


__all__ = [
    "BinaryProtocol",
    "MemcachedProtocol",
    "ProtocolType",
    "TextProtocol",
    "create_protocol",
]
