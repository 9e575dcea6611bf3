from __future__ import annotations

import logging
from io import BytesIO

from ..commands import Command, CommandKind
from ..constants import LINE_END, Commands, Responses
from ..errors import ClientError, FramingError, MemcachedError, NotEnoughData, ServerError
from ..types import MemcachedItem
from ..utils import bytestr, decodedstr
from .base import Exchange, MemcachedProtocol

logger = logging.getLogger(__name__)


class TextProtocol(MemcachedProtocol):
    """
    The line oriented memcached protocol
    """

    def fetch_request(self, keys: list[str], with_cas: bool) -> Exchange:
        name = Commands.GETS if with_cas else Commands.GET
        return self._line(name, " ".join(keys)), self.parse_values

    def store_request(self, command: Command) -> Exchange:
        if command.kind in (CommandKind.APPEND, CommandKind.PREPEND):
            encoded = self.pipeline.encode_raw(command.value)
        else:
            encoded = self.pipeline.encode(command.value)
        header = f"{command.key} {encoded.flags} {command.exptime} {len(encoded.data)}"
        if command.kind is CommandKind.CAS:
            header += f" {command.cas}"
        if command.noreply:
            header += " noreply"
        request = self._line(Commands(bytestr(command.kind.value)), header)
        request += encoded.data + LINE_END
        return request, None if command.noreply else self.parse_store

    def arithmetic_request(self, command: Command) -> Exchange:
        name = Commands.INCR if command.kind is CommandKind.INCR else Commands.DECR
        request = f"{command.key} {command.delta}"
        if command.noreply:
            request += " noreply"
        return self._line(name, request), None if command.noreply else self.parse_arithmetic

    def delete_request(self, command: Command) -> Exchange:
        request = command.key
        if command.noreply:
            request += " noreply"
        return self._line(Commands.DELETE, request), None if command.noreply else self.parse_delete

    def stats_request(self, name: str | int | None) -> Exchange:
        return self._line(Commands.STATS, decodedstr(bytestr(name)) if name else ""), self.parse_stats

    def flush_all_request(self, delay: int) -> Exchange:
        return self._line(Commands.FLUSH_ALL, str(delay) if delay else ""), self.parse_ok

    def version_request(self) -> Exchange:
        return self._line(Commands.VERSION, ""), self.parse_version

    def parse_values(self, data: BytesIO) -> dict[str, MemcachedItem]:
        items: dict[str, MemcachedItem] = {}
        while True:
            header = self._readline(data)
            if header == Responses.END:
                return items
            parts = header.split()
            if len(parts) not in (4, 5) or parts[0] != Responses.VALUE:
                raise self._unexpected(header)
            try:
                flags, size = int(parts[2]), int(parts[3])
                cas = int(parts[4]) if len(parts) == 5 else None
            except ValueError:
                raise FramingError(f"Malformed value header: {decodedstr(header)!r}")
            value = data.read(size)
            if len(value) != size:
                raise NotEnoughData()
            terminator = data.read(len(LINE_END))
            if len(terminator) != len(LINE_END):
                raise NotEnoughData()
            if terminator != LINE_END:
                raise FramingError(f"Value for {decodedstr(parts[1])!r} is not terminated by CRLF")
            key = decodedstr(parts[1], self.pipeline.encoding)
            items[key] = MemcachedItem(key, flags, size, cas, value)

    def parse_store(self, data: BytesIO) -> bool:
        response = self._readline(data)
        if response == Responses.STORED:
            return True
        if response in (Responses.NOT_STORED, Responses.EXISTS, Responses.NOT_FOUND):
            return False
        self._status(response)
        return False

    def parse_arithmetic(self, data: BytesIO) -> int | None:
        response = self._readline(data)
        if response.isdigit():
            return int(response)
        if response == Responses.NOT_FOUND:
            return None
        self._status(response)
        return None

    def parse_delete(self, data: BytesIO) -> bool:
        response = self._readline(data)
        if response == Responses.DELETED:
            return True
        if response == Responses.NOT_FOUND:
            return False
        self._status(response)
        return False

    def parse_stats(self, data: BytesIO) -> dict[str, str]:
        stats = {}
        while True:
            line = self._readline(data)
            if line == Responses.END:
                return stats
            parts = line.split(b" ", 2)
            if parts[0] != Responses.STAT or len(parts) < 2:
                raise self._unexpected(line)
            stats[decodedstr(parts[1])] = decodedstr(parts[2]) if len(parts) == 3 else ""

    def parse_ok(self, data: BytesIO) -> bool:
        response = self._readline(data)
        if response != Responses.OK:
            raise self._unexpected(response)
        return True

    def parse_version(self, data: BytesIO) -> str:
        response = self._readline(data)
        if not response.startswith(Responses.VERSION + b" "):
            raise self._unexpected(response)
        return decodedstr(response.partition(b" ")[-1]).strip()

    def _line(self, name: Commands, parameters: str) -> bytes:
        request = name.value
        if parameters:
            request += b" " + parameters.encode(self.pipeline.encoding)
        return request + LINE_END

    @staticmethod
    def _readline(data: BytesIO) -> bytes:
        line = data.readline()
        if not line.endswith(LINE_END):
            raise NotEnoughData()
        return line[: -len(LINE_END)]

    @staticmethod
    def _unexpected(line: bytes) -> MemcachedError:
        if line.startswith(Responses.CLIENT_ERROR):
            return ClientError(decodedstr(line[len(Responses.CLIENT_ERROR) :]).strip())
        if line.startswith(Responses.SERVER_ERROR):
            return ServerError(decodedstr(line[len(Responses.SERVER_ERROR) :]).strip())
        return FramingError(f"Unexpected response: {decodedstr(line, 'latin-1')!r}")

    def _status(self, response: bytes) -> None:
        """
        Log a ``CLIENT_ERROR``/``SERVER_ERROR`` status for commands
        that report failure with a falsy result, raise anything else
        """
        error = self._unexpected(response)
        if isinstance(error, FramingError):
            raise error
        logger.warning(f"memcached reported {type(error).__name__}: {error}")
