from __future__ import annotations

import struct
from io import BytesIO

import pytest

from aemcached import BinaryProtocol, Command, CommandKind
from aemcached.errors import FramingError, NotEnoughData, StatusError
from aemcached.protocol.binary import (
    HEADER_SIZE,
    MAX_OPAQUE,
    Opcode,
    PacketHeader,
    Status,
    join_cas,
    read_packet,
    split_cas,
    status_reason,
)


def response(
    opcode: Opcode,
    status: int = 0,
    extras: bytes = b"",
    key: bytes = b"",
    value: bytes = b"",
    cas: int = 0,
) -> bytes:
    header = PacketHeader(
        0x81,
        opcode,
        key_length=len(key),
        extras_length=len(extras),
        status=status,
        body_length=len(extras) + len(key) + len(value),
        cas=cas,
    )
    return header.pack() + extras + key + value


def requests(data: bytes) -> list[tuple[PacketHeader, bytes]]:
    packets = []
    while data:
        header = PacketHeader.unpack(data)
        end = HEADER_SIZE + header.body_length
        packets.append((header, data[HEADER_SIZE:end]))
        data = data[end:]
    return packets


@pytest.fixture
def protocol():
    return BinaryProtocol()


class TestHeader:
    @pytest.mark.parametrize("opcode", list(Opcode))
    @pytest.mark.parametrize("cas", [0, 1, 2**32 - 1, 2**32, 2**32 + 1, 2**64 - 1])
    def test_round_trip(self, opcode, cas):
        header = PacketHeader(
            0x80,
            opcode,
            key_length=3,
            extras_length=8,
            body_length=16,
            opaque=MAX_OPAQUE,
            cas=cas,
        )
        packed = header.pack()
        assert len(packed) == HEADER_SIZE == 24
        assert PacketHeader.unpack(packed) == header

    def test_cas_halves(self):
        assert split_cas(2**32 + 5) == (1, 5)
        assert join_cas(1, 5) == 2**32 + 5
        assert split_cas(2**64 - 1) == (2**32 - 1, 2**32 - 1)
        with pytest.raises(ValueError):
            split_cas(2**64)
        with pytest.raises(ValueError):
            split_cas(-1)

    def test_layout(self):
        packed = PacketHeader(0x80, Opcode.GETK, key_length=3, body_length=3, opaque=7).pack()
        assert packed[:2] == b"\x80\x0c"
        assert struct.unpack(">H", packed[2:4]) == (3,)
        assert struct.unpack(">I", packed[12:16]) == (7,)

    def test_short_header(self):
        with pytest.raises(NotEnoughData):
            PacketHeader.unpack(b"\x81" * (HEADER_SIZE - 1))

    def test_status_reason(self):
        assert status_reason(Status.UNKNOWN_COMMAND) == "Unknown command"
        assert status_reason(0x99) == "Unknown status 0x0099"


class TestReadPacket:
    def test_packet(self):
        packet = read_packet(BytesIO(response(Opcode.GETK, extras=b"\0\0\0\1", key=b"k", value=b"v")))
        assert (packet.extras, packet.key, packet.value) == (b"\0\0\0\1", b"k", b"v")
        assert packet.ok

    def test_request_magic(self):
        data = PacketHeader(0x80, Opcode.NOOP).pack()
        with pytest.raises(FramingError, match="magic 0x80"):
            read_packet(BytesIO(data))

    def test_incomplete_body(self):
        with pytest.raises(NotEnoughData):
            read_packet(BytesIO(response(Opcode.GET, value=b"value")[:-1]))

    def test_inconsistent_lengths(self):
        data = PacketHeader(0x81, Opcode.GET, key_length=4, body_length=2).pack() + b"ab"
        with pytest.raises(FramingError):
            read_packet(BytesIO(data))


class TestRequests:
    def test_opaque_wraps(self, protocol):
        protocol._opaque = MAX_OPAQUE
        assert protocol.next_opaque() == MAX_OPAQUE
        assert protocol.next_opaque() == 0
        assert protocol.next_opaque() == 1

    def test_fetch(self, protocol):
        request, parser = protocol.fetch_request(["a", "bb"], with_cas=False)
        packets = requests(request)
        assert [header.opcode for header, _ in packets] == [Opcode.GETK, Opcode.GETK, Opcode.NOOP]
        assert [body for _, body in packets] == [b"a", b"bb", b""]
        assert {header.magic for header, _ in packets} == {0x80}
        assert parser == protocol.parse_values

    async def test_store(self, protocol):
        request, parser = protocol.store_request(
            Command(CommandKind.SET, ("key",), value=[1], exptime=60)
        )
        ((header, body),) = requests(request)
        assert header.opcode == Opcode.SET
        assert header.extras_length == 8
        assert struct.unpack(">II", body[:8]) == (1, 60)
        assert body[8:11] == b"key"
        assert parser == protocol._success

    async def test_cas(self, protocol):
        request, _ = protocol.store_request(
            Command(CommandKind.CAS, ("key",), value=b"v", cas=2**40 + 3)
        )
        ((header, _),) = requests(request)
        assert header.opcode == Opcode.SET
        assert header.cas == 2**40 + 3

    async def test_append_has_no_extras(self, protocol):
        request, _ = protocol.store_request(Command(CommandKind.APPEND, ("key",), value="tail"))
        ((header, body),) = requests(request)
        assert header.opcode == Opcode.APPEND
        assert header.extras_length == 0
        assert body == b"keytail"

    async def test_noreply_uses_quiet_opcode(self, protocol):
        request, parser = protocol.store_request(
            Command(CommandKind.SET, ("key",), value=b"v", noreply=True)
        )
        assert [header.opcode for header, _ in requests(request)] == [Opcode.SETQ, Opcode.NOOP]
        assert parser == protocol._drain_quiet
        request, _ = protocol.delete_request(Command(CommandKind.DELETE, ("key",), noreply=True))
        assert [header.opcode for header, _ in requests(request)] == [Opcode.DELETEQ, Opcode.NOOP]

    async def test_arithmetic(self, protocol):
        request, _ = protocol.arithmetic_request(
            Command(CommandKind.INCR, ("counter",), delta=5)
        )
        ((header, body),) = requests(request)
        assert header.opcode == Opcode.INCREMENT
        assert struct.unpack(">QQI", body[:20]) == (5, 0, 0xFFFFFFFF)

    def test_stats(self, protocol):
        ((header, body),) = requests(protocol.stats_request("slabs")[0])
        assert header.opcode == Opcode.STAT
        assert body == b"slabs"


class TestParse:
    def test_values(self, protocol):
        data = (
            response(Opcode.GETK, Status.KEY_NOT_FOUND, key=b"miss", value=b"Not found")
            + response(Opcode.GETK, extras=struct.pack(">I", 3), key=b"hit", value=b"v", cas=2**33)
            + response(Opcode.NOOP)
        )
        items = protocol.parse_values(BytesIO(data))
        assert list(items) == ["hit"]
        assert (items["hit"].flags, items["hit"].cas, items["hit"].value) == (3, 2**33, b"v")

    def test_values_incomplete(self, protocol):
        data = response(Opcode.GETK, extras=struct.pack(">I", 0), key=b"k", value=b"v")
        with pytest.raises(NotEnoughData):
            protocol.parse_values(BytesIO(data))

    def test_values_unexpected_opcode(self, protocol):
        with pytest.raises(FramingError):
            protocol.parse_values(BytesIO(response(Opcode.SET)))

    def test_success(self, protocol):
        assert protocol._success(BytesIO(response(Opcode.SET)))
        assert not protocol._success(BytesIO(response(Opcode.ADD, Status.KEY_EXISTS)))

    def test_arithmetic(self, protocol):
        data = response(Opcode.INCREMENT, value=struct.pack(">Q", 2**64 - 1))
        assert protocol.parse_arithmetic(BytesIO(data)) == 2**64 - 1
        for status in (Status.KEY_NOT_FOUND, Status.NON_NUMERIC):
            assert protocol.parse_arithmetic(BytesIO(response(Opcode.INCREMENT, status))) is None

    def test_stats(self, protocol):
        data = (
            response(Opcode.STAT, key=b"pid", value=b"1")
            + response(Opcode.STAT, key=b"uptime", value=b"10")
            + response(Opcode.STAT)
        )
        assert protocol.parse_stats(BytesIO(data)) == {"pid": "1", "uptime": "10"}

    def test_drain_quiet(self, protocol):
        data = response(Opcode.SETQ, Status.OUT_OF_MEMORY) + response(Opcode.NOOP)
        assert protocol._drain_quiet(BytesIO(data)) is None

    def test_version(self, protocol):
        _, parser = protocol.version_request()
        assert parser(BytesIO(response(Opcode.VERSION, value=b"1.6.21"))) == "1.6.21"
        with pytest.raises(StatusError, match="Unknown command") as error:
            parser(BytesIO(response(Opcode.VERSION, Status.UNKNOWN_COMMAND)))
        assert error.value.status == Status.UNKNOWN_COMMAND
