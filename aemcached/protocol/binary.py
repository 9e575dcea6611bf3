from __future__ import annotations

import dataclasses
import enum
import logging
import struct
from collections.abc import Callable
from io import BytesIO
from typing import Any

from ..commands import Command, CommandKind
from ..errors import FramingError, NotEnoughData, StatusError
from ..serialization import ValuePipeline
from ..types import MemcachedItem
from ..utils import bytestr, decodedstr
from .base import Exchange, MemcachedProtocol

logger = logging.getLogger(__name__)

REQUEST_MAGIC = 0x80
RESPONSE_MAGIC = 0x81

# magic, opcode, key length, extras length, data type,
# reserved (status in responses), total body length, opaque, cas (high, low)
HEADER_FORMAT = ">BBHBBHIIII"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)

# flags, expiry
STORE_EXTRAS_FORMAT = ">II"
# delta, initial value, expiry
ARITHMETIC_EXTRAS_FORMAT = ">QQI"
# expiry of 0xffffffff makes incr/decr fail instead of creating the key
ARITHMETIC_NO_CREATE = 0xFFFFFFFF
ARITHMETIC_RESPONSE_FORMAT = ">Q"
FLUSH_EXTRAS_FORMAT = ">I"
# flags
GET_RESPONSE_EXTRAS_FORMAT = ">I"

MAX_OPAQUE = 0xFFFFFFFF
MAX_CAS = 0xFFFFFFFFFFFFFFFF


class Opcode(enum.IntEnum):
    GET = 0x00
    SET = 0x01
    ADD = 0x02
    REPLACE = 0x03
    DELETE = 0x04
    INCREMENT = 0x05
    DECREMENT = 0x06
    QUIT = 0x07
    FLUSH = 0x08
    GETQ = 0x09
    NOOP = 0x0A
    VERSION = 0x0B
    GETK = 0x0C
    GETKQ = 0x0D
    APPEND = 0x0E
    PREPEND = 0x0F
    STAT = 0x10
    SETQ = 0x11
    ADDQ = 0x12
    REPLACEQ = 0x13
    DELETEQ = 0x14
    INCREMENTQ = 0x15
    DECREMENTQ = 0x16
    QUITQ = 0x17
    FLUSHQ = 0x18
    APPENDQ = 0x19
    PREPENDQ = 0x1A


QUIET = {
    Opcode.SET: Opcode.SETQ,
    Opcode.ADD: Opcode.ADDQ,
    Opcode.REPLACE: Opcode.REPLACEQ,
    Opcode.DELETE: Opcode.DELETEQ,
    Opcode.INCREMENT: Opcode.INCREMENTQ,
    Opcode.DECREMENT: Opcode.DECREMENTQ,
    Opcode.QUIT: Opcode.QUITQ,
    Opcode.FLUSH: Opcode.FLUSHQ,
    Opcode.APPEND: Opcode.APPENDQ,
    Opcode.PREPEND: Opcode.PREPENDQ,
    Opcode.GET: Opcode.GETQ,
    Opcode.GETK: Opcode.GETKQ,
}

OPCODES = {
    CommandKind.SET: Opcode.SET,
    CommandKind.CAS: Opcode.SET,
    CommandKind.ADD: Opcode.ADD,
    CommandKind.REPLACE: Opcode.REPLACE,
    CommandKind.APPEND: Opcode.APPEND,
    CommandKind.PREPEND: Opcode.PREPEND,
    CommandKind.INCR: Opcode.INCREMENT,
    CommandKind.DECR: Opcode.DECREMENT,
    CommandKind.DELETE: Opcode.DELETE,
}


class Status(enum.IntEnum):
    NO_ERROR = 0x0000
    KEY_NOT_FOUND = 0x0001
    KEY_EXISTS = 0x0002
    VALUE_TOO_LARGE = 0x0003
    INVALID_ARGUMENTS = 0x0004
    ITEM_NOT_STORED = 0x0005
    NON_NUMERIC = 0x0006
    UNKNOWN_COMMAND = 0x0081
    OUT_OF_MEMORY = 0x0082


STATUS_REASONS = {
    Status.NO_ERROR: "No error",
    Status.KEY_NOT_FOUND: "Key not found",
    Status.KEY_EXISTS: "Key exists",
    Status.VALUE_TOO_LARGE: "Value too large",
    Status.INVALID_ARGUMENTS: "Invalid arguments",
    Status.ITEM_NOT_STORED: "Item not stored",
    Status.NON_NUMERIC: "Incr/Decr on non-numeric value",
    Status.UNKNOWN_COMMAND: "Unknown command",
    Status.OUT_OF_MEMORY: "Out of memory",
}


def status_reason(status: int) -> str:
    try:
        return STATUS_REASONS[Status(status)]
    except ValueError:
        return f"Unknown status {status:#06x}"


def split_cas(cas: int) -> tuple[int, int]:
    """
    Split a 64 bit cas value into its high and low 32 bit halves
    """
    if not 0 <= cas <= MAX_CAS:
        raise ValueError(f"cas {cas} does not fit in 64 bits")
    return cas >> 32, cas & 0xFFFFFFFF


def join_cas(high: int, low: int) -> int:
    return (high << 32) | low


@dataclasses.dataclass(frozen=True)
class PacketHeader:
    magic: int
    opcode: int
    key_length: int = 0
    extras_length: int = 0
    data_type: int = 0
    #: vbucket id in requests (always 0 here), status in responses
    status: int = 0
    body_length: int = 0
    opaque: int = 0
    cas: int = 0

    def pack(self) -> bytes:
        return struct.pack(
            HEADER_FORMAT,
            self.magic,
            self.opcode,
            self.key_length,
            self.extras_length,
            self.data_type,
            self.status,
            self.body_length,
            self.opaque,
            *split_cas(self.cas),
        )

    @classmethod
    def unpack(cls, data: bytes) -> PacketHeader:
        if len(data) < HEADER_SIZE:
            raise NotEnoughData()
        (
            magic,
            opcode,
            key_length,
            extras_length,
            data_type,
            status,
            body_length,
            opaque,
            cas_high,
            cas_low,
        ) = struct.unpack(HEADER_FORMAT, data[:HEADER_SIZE])
        return cls(
            magic,
            opcode,
            key_length,
            extras_length,
            data_type,
            status,
            body_length,
            opaque,
            join_cas(cas_high, cas_low),
        )


@dataclasses.dataclass
class Packet:
    header: PacketHeader
    extras: bytes = b""
    key: bytes = b""
    value: bytes = b""

    @property
    def status(self) -> int:
        return self.header.status

    @property
    def ok(self) -> bool:
        return self.header.status == Status.NO_ERROR

    @property
    def reason(self) -> str:
        return status_reason(self.header.status)


def read_packet(data: BytesIO) -> Packet:
    """
    Read one complete response packet, raising :exc:`NotEnoughData`
    if the buffer doesn't hold all of it yet
    """
    header = PacketHeader.unpack(data.read(HEADER_SIZE))
    if header.magic != RESPONSE_MAGIC:
        raise FramingError(
            f"Response magic {header.magic:#04x} is not of expected value {RESPONSE_MAGIC:#04x}"
        )
    if header.extras_length + header.key_length > header.body_length:
        raise FramingError(
            f"Body length {header.body_length} is shorter than "
            f"extras ({header.extras_length}) and key ({header.key_length})"
        )
    body = data.read(header.body_length)
    if len(body) != header.body_length:
        raise NotEnoughData()
    key_end = header.extras_length + header.key_length
    return Packet(
        header,
        extras=body[: header.extras_length],
        key=body[header.extras_length : key_end],
        value=body[key_end:],
    )


class BinaryProtocol(MemcachedProtocol):
    """
    The memcached binary protocol: 24 byte headers followed by extras,
    key and value.

    Requests on a connection are answered in order, so the opaque
    value is not used to correlate responses.
    """

    def __init__(self, pipeline: ValuePipeline | None = None) -> None:
        super().__init__(pipeline)
        self._opaque = 0

    def next_opaque(self) -> int:
        opaque = self._opaque
        self._opaque = 0 if opaque >= MAX_OPAQUE else opaque + 1
        return opaque

    def packet(
        self,
        opcode: Opcode,
        key: bytes = b"",
        extras: bytes = b"",
        value: bytes = b"",
        cas: int = 0,
    ) -> bytes:
        header = PacketHeader(
            REQUEST_MAGIC,
            opcode,
            key_length=len(key),
            extras_length=len(extras),
            body_length=len(extras) + len(key) + len(value),
            opaque=self.next_opaque(),
            cas=cas,
        )
        return header.pack() + extras + key + value

    def fetch_request(self, keys: list[str], with_cas: bool) -> Exchange:
        encoding = self.pipeline.encoding
        request = b"".join(
            self.packet(Opcode.GETK, key=bytestr(key, encoding)) for key in keys
        )
        return request + self.packet(Opcode.NOOP), self.parse_values

    def store_request(self, command: Command) -> Exchange:
        opcode = OPCODES[command.kind]
        if command.kind in (CommandKind.APPEND, CommandKind.PREPEND):
            encoded = self.pipeline.encode_raw(command.value)
            extras = b""
        else:
            encoded = self.pipeline.encode(command.value)
            extras = struct.pack(STORE_EXTRAS_FORMAT, encoded.flags, command.exptime)
        return self._request(
            command,
            opcode,
            extras=extras,
            value=encoded.data,
            cas=command.cas or 0,
            parser=self._success,
        )

    def arithmetic_request(self, command: Command) -> Exchange:
        extras = struct.pack(ARITHMETIC_EXTRAS_FORMAT, command.delta, 0, ARITHMETIC_NO_CREATE)
        return self._request(
            command, OPCODES[command.kind], extras=extras, parser=self.parse_arithmetic
        )

    def delete_request(self, command: Command) -> Exchange:
        return self._request(command, Opcode.DELETE, parser=self._success)

    def stats_request(self, name: str | int | None) -> Exchange:
        key = bytestr(name) if name else b""
        return self.packet(Opcode.STAT, key=key), self.parse_stats

    def flush_all_request(self, delay: int) -> Exchange:
        extras = struct.pack(FLUSH_EXTRAS_FORMAT, delay) if delay else b""
        return self.packet(Opcode.FLUSH, extras=extras), self._expect(lambda packet: True)

    def version_request(self) -> Exchange:
        return self.packet(Opcode.VERSION), self._expect(
            lambda packet: decodedstr(packet.value)
        )

    def parse_values(self, data: BytesIO) -> dict[str, MemcachedItem]:
        items: dict[str, MemcachedItem] = {}
        while True:
            packet = read_packet(data)
            if packet.header.opcode == Opcode.NOOP:
                return items
            if packet.header.opcode not in (Opcode.GETK, Opcode.GETKQ):
                raise FramingError(f"Unexpected opcode {packet.header.opcode:#04x} in get response")
            if not packet.ok:
                if packet.status != Status.KEY_NOT_FOUND:
                    logger.warning(
                        f"Fetching {decodedstr(packet.key, 'latin-1')!r} failed: {packet.reason}"
                    )
                continue
            if len(packet.extras) != struct.calcsize(GET_RESPONSE_EXTRAS_FORMAT):
                raise FramingError(f"Unexpected extras length {len(packet.extras)} in get response")
            (flags,) = struct.unpack(GET_RESPONSE_EXTRAS_FORMAT, packet.extras)
            key = decodedstr(packet.key, self.pipeline.encoding)
            items[key] = MemcachedItem(
                key, flags, len(packet.value), packet.header.cas, packet.value
            )

    def parse_arithmetic(self, data: BytesIO) -> int | None:
        packet = read_packet(data)
        if not packet.ok:
            self._log_status(packet)
            return None
        if len(packet.value) != struct.calcsize(ARITHMETIC_RESPONSE_FORMAT):
            raise FramingError(f"Unexpected incr/decr value length {len(packet.value)}")
        return struct.unpack(ARITHMETIC_RESPONSE_FORMAT, packet.value)[0]

    def parse_stats(self, data: BytesIO) -> dict[str, str]:
        stats = {}
        while True:
            packet = read_packet(data)
            if not packet.ok:
                raise StatusError(packet.status, packet.reason)
            if not packet.key:
                return stats
            stats[decodedstr(packet.key)] = decodedstr(packet.value)

    def _request(
        self,
        command: Command,
        opcode: Opcode,
        parser: Callable[[BytesIO], Any],
        extras: bytes = b"",
        value: bytes = b"",
        cas: int = 0,
    ) -> Exchange:
        key = bytestr(command.key, self.pipeline.encoding)
        if command.noreply:
            # quiet commands only reply on failure, the noop marks the end
            request = self.packet(QUIET[opcode], key, extras, value, cas)
            return request + self.packet(Opcode.NOOP), self._drain_quiet
        return self.packet(opcode, key, extras, value, cas), parser

    def _success(self, data: BytesIO) -> bool:
        packet = read_packet(data)
        if not packet.ok:
            self._log_status(packet)
        return packet.ok

    def _drain_quiet(self, data: BytesIO) -> None:
        while True:
            packet = read_packet(data)
            if packet.header.opcode == Opcode.NOOP:
                return None
            if not packet.ok:
                self._log_status(packet)

    @staticmethod
    def _expect(result: Callable[[Packet], Any]) -> Callable[[BytesIO], Any]:
        def parse(data: BytesIO) -> Any:
            packet = read_packet(data)
            if not packet.ok:
                raise StatusError(packet.status, packet.reason)
            return result(packet)

        return parse

    @staticmethod
    def _log_status(packet: Packet) -> None:
        if packet.status in (Status.KEY_NOT_FOUND, Status.KEY_EXISTS, Status.ITEM_NOT_STORED):
            logger.debug(f"memcached returned status {packet.status:#06x}: {packet.reason}")
        else:
            logger.warning(f"memcached returned status {packet.status:#06x}: {packet.reason}")
