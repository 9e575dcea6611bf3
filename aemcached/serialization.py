from __future__ import annotations

import dataclasses
import importlib.util
import pickle  # noqa: S403
import zlib
from abc import ABC, abstractmethod
from typing import Any, NamedTuple

from .defaults import COMPRESS_ENABLED, COMPRESS_SAVINGS, COMPRESS_THRESHOLD, ENCODING

ZSTD_AVAILABLE = importlib.util.find_spec("zstandard") is not None


class BaseCompressor(ABC):
    @abstractmethod
    def compress(self, data: bytes) -> bytes: ...

    @abstractmethod
    def decompress(self, data: bytes) -> bytes: ...


class ZlibCompressor(BaseCompressor):
    def __init__(self, level: int = zlib.Z_DEFAULT_COMPRESSION) -> None:
        self.level = level

    def compress(self, data: bytes) -> bytes:
        return zlib.compress(data, self.level)

    def decompress(self, data: bytes) -> bytes:
        return zlib.decompress(data)


class ZstdCompressor(BaseCompressor):
    """
    zstd compression. Requires the ``zstandard`` package
    (``pip install aemcached[zstd]``).

    Values compressed with it carry the same flag bit as zlib compressed
    ones, so every client sharing a server has to use the same compressor.
    """

    def __init__(self, level: int = 3) -> None:
        if not ZSTD_AVAILABLE:
            raise RuntimeError("ZstdCompressor requires the zstandard package to be installed")
        import zstandard as zstd

        self.level = level
        self._compressor = zstd.ZstdCompressor(level=level)
        self._decompressor = zstd.ZstdDecompressor()

    def compress(self, data: bytes) -> bytes:
        return self._compressor.compress(data)

    def decompress(self, data: bytes) -> bytes:
        return self._decompressor.decompress(data)


@dataclasses.dataclass
class CompressionConfig:
    #: Whether values may be stored compressed
    enabled: bool = COMPRESS_ENABLED
    #: Minimum payload size (in bytes) before compression is attempted
    threshold: int = COMPRESS_THRESHOLD
    #: Minimum fraction of the payload that compression has to save
    #: for the compressed form to be stored
    savings: float = COMPRESS_SAVINGS
    #: The compressor to use
    compressor: BaseCompressor = dataclasses.field(default_factory=ZlibCompressor)


class EncodedValue(NamedTuple):
    data: bytes
    flags: int


class ValuePipeline:
    """
    Converts values to the bytes and flags stored in memcached and back.

    ``bytes``, ``str`` and ``int`` values are stored as they are (``str``
    and ``int`` as encoded text) so the server can operate on them with
    ``incr``/``append`` etc. Anything else is pickled and marked with
    :attr:`F_SERIALIZED`. Payloads at or above the compression threshold
    are compressed, and marked with :attr:`F_COMPRESSED`, if that saves
    enough space.
    """

    F_SERIALIZED = 1
    F_COMPRESSED = 2

    def __init__(
        self,
        compression: CompressionConfig | None = None,
        encoding: str = ENCODING,
        decode_responses: bool = False,
        pickle_protocol: int = pickle.HIGHEST_PROTOCOL,
    ) -> None:
        self.compression = compression or CompressionConfig()
        self.encoding = encoding
        self.decode_responses = decode_responses
        self._pickle_protocol = pickle_protocol

    def encode(self, value: Any, *, compress: bool = True) -> EncodedValue:
        flags = 0
        if self.is_scalar(value):
            data = self._scalar_bytes(value)
        else:
            data = pickle.dumps(value, protocol=self._pickle_protocol)
            flags |= self.F_SERIALIZED

        if compress and self._should_compress(data):
            compressed = self.compression.compressor.compress(data)
            if len(compressed) <= len(data) * (1 - self.compression.savings):
                data = compressed
                flags |= self.F_COMPRESSED
        return EncodedValue(data=data, flags=flags)

    def encode_raw(self, value: Any) -> EncodedValue:
        """
        Encode a value for ``append``/``prepend``, which concatenate bytes
        on the server and so can't be serialized or compressed.
        """
        if not self.is_scalar(value):
            raise TypeError(
                f"Only bytes, str or int values can be appended or prepended, not {type(value).__name__}"
            )
        return EncodedValue(data=self._scalar_bytes(value), flags=0)

    def decode(self, data: bytes, flags: int) -> Any:
        if flags & self.F_COMPRESSED:
            data = self.compression.compressor.decompress(data)
        if flags & self.F_SERIALIZED:
            return pickle.loads(data)  # noqa: S301
        if self.decode_responses:
            return data.decode(self.encoding)
        return bytes(data)

    @staticmethod
    def is_scalar(value: Any) -> bool:
        if isinstance(value, bool):
            return False
        return isinstance(value, (bytes, str, int))

    def _scalar_bytes(self, value: bytes | str | int) -> bytes:
        if isinstance(value, bytes):
            return value
        if isinstance(value, str):
            return value.encode(self.encoding)
        return str(value).encode("ascii")

    def _should_compress(self, data: bytes) -> bool:
        return self.compression.enabled and len(data) >= self.compression.threshold
